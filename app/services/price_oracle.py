import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from app.core.config import settings
from app.services.cache import TTLCache

logger = logging.getLogger(__name__)

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


@dataclass
class SwapQuote:
    """スワップ見積もり"""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SwapResult:
    """スワップ実行結果"""
    txid: str
    input_amount: int
    output_amount: int


@dataclass
class TokenInfo:
    """トークン情報"""
    address: str
    symbol: str
    decimals: int
    name: str = ""
    price: Optional[float] = None


class PriceOracle(ABC):
    """価格・見積もり・スワップ実行サービスの基底クラス

    いずれもNone返却は一時的な失敗として扱い、0に読み替えない。
    """

    @abstractmethod
    def get_current_price(self, token_address: str) -> Optional[float]:
        pass

    @abstractmethod
    def get_quote(self,
                  input_mint: str,
                  output_mint: str,
                  amount: int,
                  slippage_bps: Optional[int] = None) -> Optional[SwapQuote]:
        pass

    @abstractmethod
    def execute_swap(self, quote: SwapQuote, wallet) -> Optional[SwapResult]:
        pass

    @abstractmethod
    def get_token_info(self, token_address: str) -> Optional[TokenInfo]:
        pass


class JupiterPriceOracle(PriceOracle):
    """Jupiter API 実装"""

    def __init__(self,
                 http_client: Optional[httpx.Client] = None,
                 price_cache: Optional[TTLCache] = None,
                 token_cache: Optional[TTLCache] = None,
                 swap_api: str = None,
                 price_api: str = None,
                 token_api: str = None,
                 slippage_bps: int = None,
                 retries: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self.http_client = http_client or httpx.Client(timeout=settings.http_timeout_seconds)
        self.price_cache = price_cache if price_cache is not None else TTLCache(settings.price_cache_ttl_seconds)
        self.token_cache = token_cache if token_cache is not None else TTLCache(settings.token_info_cache_ttl_seconds)
        self.swap_api = (swap_api or settings.jupiter_swap_api).rstrip("/")
        self.price_api = price_api or settings.jupiter_price_api
        self.token_api = (token_api or settings.jupiter_token_api).rstrip("/")
        self.slippage_bps = slippage_bps if slippage_bps is not None else settings.slippage_bps
        self.retries = retries
        self._sleep = sleep

    def _fetch_with_retry(self, method: str, url: str, **kwargs) -> Any:
        """指数バックオフ付きHTTP呼び出し（1秒, 2秒, ...）"""
        last_error = None
        headers = {"Accept": "application/json", **kwargs.pop("headers", {})}

        for attempt in range(self.retries):
            try:
                response = self.http_client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"HTTPエラー {url} (試行 {attempt + 1}/{self.retries}): {str(e)}")
                if attempt < self.retries - 1:
                    self._sleep(2 ** attempt)

        raise last_error

    def get_current_price(self, token_address: str) -> Optional[float]:
        cached = self.price_cache.get(token_address)
        if cached is not None:
            return cached

        try:
            data = self._fetch_with_retry("GET", self.price_api, params={"ids": token_address})
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"価格取得エラー {token_address}: {str(e)}")
            return None

        entry = ((data or {}).get("data") or {}).get(token_address) or {}
        raw_price = entry.get("price")
        if raw_price is None:
            logger.warning(f"価格データなし: {token_address}")
            return None

        try:
            price = float(raw_price)
        except (TypeError, ValueError):
            logger.warning(f"価格データ不正: {token_address} {raw_price!r}")
            return None

        if price <= 0:
            logger.warning(f"価格が0以下: {token_address}")
            return None

        self.price_cache.put(token_address, price)
        return price

    def get_quote(self,
                  input_mint: str,
                  output_mint: str,
                  amount: int,
                  slippage_bps: Optional[int] = None) -> Optional[SwapQuote]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": int(amount),
            "slippageBps": slippage_bps if slippage_bps is not None else self.slippage_bps,
        }
        try:
            data = self._fetch_with_retry("GET", f"{self.swap_api}/quote", params=params)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"見積もり取得エラー {input_mint} -> {output_mint}: {str(e)}")
            return None

        if not data or "outAmount" not in data:
            logger.warning(f"見積もりなし: {input_mint} -> {output_mint}")
            return None

        return SwapQuote(
            input_mint=data.get("inputMint", input_mint),
            output_mint=data.get("outputMint", output_mint),
            in_amount=int(data.get("inAmount", amount)),
            out_amount=int(data["outAmount"]),
            price_impact_pct=float(data.get("priceImpactPct") or 0.0),
            raw=data,
        )

    def execute_swap(self, quote: SwapQuote, wallet) -> Optional[SwapResult]:
        """スワップトランザクションを取得しウォレットで送信

        トランザクション構築の失敗はNone、送信時のエラーは呼び出し側へ送出する。
        """
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": wallet.get_address(),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        try:
            data = self._fetch_with_retry("POST", f"{self.swap_api}/swap", json=payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"スワップトランザクション取得エラー: {str(e)}")
            return None

        swap_transaction = (data or {}).get("swapTransaction")
        if not swap_transaction:
            logger.error("スワップトランザクションが返されませんでした")
            return None

        sent = wallet.send_transaction(swap_transaction)
        return SwapResult(
            txid=sent["hash"],
            input_amount=quote.in_amount,
            output_amount=quote.out_amount,
        )

    def get_token_info(self, token_address: str) -> Optional[TokenInfo]:
        cached = self.token_cache.get(token_address)
        if cached is not None:
            return cached

        try:
            data = self._fetch_with_retry("GET", f"{self.token_api}/token/{token_address}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"トークン情報取得エラー {token_address}: {str(e)}")
            return None

        if not data or "decimals" not in data:
            logger.warning(f"トークン情報なし: {token_address}")
            return None

        info = TokenInfo(
            address=data.get("address", token_address),
            symbol=data.get("symbol", ""),
            name=data.get("name", ""),
            decimals=int(data["decimals"]),
        )
        self.token_cache.put(token_address, info)
        return info

    def close(self):
        self.http_client.close()
