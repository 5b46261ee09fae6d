from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """注文失敗理由"""
    PRICE_UNAVAILABLE = "PriceUnavailable"
    QUOTE_UNAVAILABLE = "QuoteUnavailable"
    BALANCE_UNAVAILABLE = "BalanceUnavailable"
    INSUFFICIENT_ON_CHAIN_BALANCE = "InsufficientOnChainBalance"
    SWAP_EXECUTION_FAILURE = "SwapExecutionFailure"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    NOTHING_TO_CLOSE = "NothingToClose"
    SIGNAL_REJECTED = "SignalRejected"
    POSITION_EXISTS = "PositionExists"


class TradingError(Exception):
    """取引コアの基底例外"""
    reason: Optional[FailureReason] = None

    def __init__(self, message: str = "", reason: Optional[FailureReason] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class TransientAPIFailure(TradingError):
    """価格・見積もり・残高の一時的な取得失敗（次サイクルで再試行）"""


class PriceUnavailable(TransientAPIFailure):
    reason = FailureReason.PRICE_UNAVAILABLE


class InsufficientOnChainBalance(TradingError):
    reason = FailureReason.INSUFFICIENT_ON_CHAIN_BALANCE


class SwapExecutionFailure(TradingError):
    """リトライ上限までスワップが失敗した"""
    reason = FailureReason.SWAP_EXECUTION_FAILURE


class PersistenceFailure(TradingError):
    """トランザクションがロールバックされた"""
    reason = FailureReason.PERSISTENCE_FAILURE


class PositionNotActive(TradingError):
    reason = FailureReason.NOTHING_TO_CLOSE


class StaleTransactionError(Exception):
    """ブロックハッシュ失効などトランザクション参照が古い"""


class WalletRPCError(Exception):
    """Solana RPCがエラーを返した"""


class WalletConfigurationError(Exception):
    """ウォレット秘密鍵の読み込み失敗"""
