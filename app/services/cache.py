import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class CacheEntry:
    """TTL付きキャッシュエントリ"""
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """注入可能なTTLキャッシュ

    時計関数を差し替えられるので、テストから時間経過を制御できる。
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def expire(self, key: Optional[str] = None):
        """指定キー、またはキー省略時は全エントリを破棄"""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return len([e for e in self._entries.values() if not e.is_expired(now)])
