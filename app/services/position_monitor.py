from typing import Dict, Any, Callable, List, Optional
import logging
import threading

from sqlalchemy.orm import Session

from app.core.config import settings
from app.services.order_executor import TokenLockRegistry
from app.services.position_manager import create_position_manager
from app.services.price_oracle import PriceOracle
from app.services.wallet_service import WalletClient

logger = logging.getLogger(__name__)


class PositionMonitor:
    """価格監視と残高履歴記録の定期実行

    スレッドごと、ティックごとに新しいセッションを開く。
    """

    def __init__(self,
                 session_factory: Callable[[], Session],
                 oracle: PriceOracle,
                 wallet: Optional[WalletClient],
                 locks: Optional[TokenLockRegistry] = None,
                 price_check_interval: float = None,
                 balance_history_interval: float = None):
        self.session_factory = session_factory
        self.oracle = oracle
        self.wallet = wallet
        self.locks = locks or TokenLockRegistry()
        self.price_check_interval = price_check_interval or settings.price_check_interval_seconds
        self.balance_history_interval = balance_history_interval or settings.balance_history_interval_seconds

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def run_once(self) -> Dict[str, Any]:
        """監視パスを1回実行"""
        db = self.session_factory()
        try:
            manager = create_position_manager(db, self.oracle, self.wallet, self.locks)
            result = manager.update_prices_and_profit_loss()
        finally:
            db.close()
        self.last_result = result
        return result

    def record_balance_once(self):
        db = self.session_factory()
        try:
            manager = create_position_manager(db, self.oracle, self.wallet, self.locks)
            return manager.record_balance_history()
        finally:
            db.close()

    def start(self) -> bool:
        """監視開始。既に稼働中ならFalse"""
        if self.is_running:
            logger.warning("ポジション監視は既に稼働中です")
            return False

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=(self.run_once, self.price_check_interval, "価格監視"),
                name="position-price-monitor",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(self.record_balance_once, self.balance_history_interval, "残高履歴"),
                name="position-balance-history",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

        logger.info(
            f"ポジション監視開始: 価格 {self.price_check_interval}秒間隔, "
            f"残高履歴 {self.balance_history_interval}秒間隔"
        )
        return True

    def stop(self, timeout: float = 10.0):
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("ポジション監視停止")

    def _loop(self, task: Callable[[], Any], interval: float, label: str):
        # 初回は即時実行
        while not self._stop_event.is_set():
            try:
                task()
            except Exception as e:
                logger.error(f"{label}ティックでエラー: {str(e)}", exc_info=True)
            if self._stop_event.wait(interval):
                break
