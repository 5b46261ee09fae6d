from typing import Any, Dict, Optional, Union, Tuple, Callable
from dataclasses import dataclass
from enum import Enum
import logging
import threading
import time

from app.core.config import settings
from app.core.exceptions import (
    FailureReason, TradingError, TransientAPIFailure, PriceUnavailable,
    InsufficientOnChainBalance, SwapExecutionFailure, PersistenceFailure,
    PositionNotActive,
)
from app.core.timeutils import now_ms
from app.models.positions import Position
from app.models.trades import TradeStatus
from app.services.position_store import PositionStore, PositionCloseUpdate, TradeRecord
from app.services.price_oracle import PriceOracle, SwapQuote, SwapResult, WRAPPED_SOL_MINT
from app.services.risk_evaluator import (
    calculate_position_size, validate_position_size, LAMPORTS_PER_SOL,
)
from app.services.wallet_service import WalletClient, is_stale_transaction_error

logger = logging.getLogger(__name__)


class SignalType(str, Enum):
    """シグナルタイプ"""
    BUY = "BUY"
    SELL = "SELL"


@dataclass
class TradeSignal:
    """上流（シグナル抽出）から渡される売買シグナル"""
    id: str
    token_address: str
    type: SignalType = SignalType.BUY
    price: Optional[float] = None
    risk_level: Optional[str] = None
    confidence: float = 0.0


@dataclass
class OrderResult:
    """注文結果"""
    success: bool
    message: str = ""
    error: Optional[FailureReason] = None
    position_id: Optional[str] = None
    trade_id: Optional[str] = None
    tx_id: Optional[str] = None
    execution_price: Optional[float] = None
    profit_loss: Optional[float] = None
    attempts: int = 0


class TokenLockRegistry:
    """トークン単位のロック

    監視ループと手動クローズなど、複数スレッドから同じトークンを
    同時に売却しないようにする。プロセス内で1つを共有する。
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, token_address: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(token_address)
            if lock is None:
                lock = threading.Lock()
                self._locks[token_address] = lock
            return lock


class OrderExecutor:
    """売買執行サービス"""

    def __init__(self,
                 store: PositionStore,
                 oracle: PriceOracle,
                 wallet: WalletClient,
                 locks: Optional[TokenLockRegistry] = None,
                 max_retries: int = None,
                 retry_delay_seconds: float = None,
                 stale_retry_delay_seconds: float = None,
                 sleep: Callable[[float], None] = time.sleep,
                 base_mint: str = WRAPPED_SOL_MINT):
        self.store = store
        self.oracle = oracle
        self.wallet = wallet
        self.locks = locks or TokenLockRegistry()
        self.base_mint = base_mint
        self._sleep = sleep

        self.config = {
            'max_retries': max_retries or settings.swap_max_retries,
            'retry_delay_seconds': (
                settings.swap_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
            ),
            'stale_retry_delay_seconds': (
                settings.stale_swap_retry_delay_seconds
                if stale_retry_delay_seconds is None else stale_retry_delay_seconds
            ),
            'min_signal_confidence': settings.min_signal_confidence,
            'max_position_size_percent': settings.max_position_size_percent,
            'trailing_stop_percentage': settings.default_trailing_stop_percentage,
        }

    # === 売却 ===

    def close_position(self, position: Union[Position, str], reason: str = "Manual close") -> OrderResult:
        """ポジションクローズ（オンチェーン残高を全量売却）

        失敗時はポジションをACTIVEのまま残す。既に終了済みなら何もしない。
        """
        position_id = position if isinstance(position, str) else position.id

        current = self.store.reload_position(position_id)
        if current is None or not current.is_active:
            return self._nothing_to_close(position_id)

        with self.locks.lock_for(current.token_address):
            # ロック待ちの間に他スレッドがクローズしている可能性がある
            current = self.store.reload_position(position_id)
            if current is None or not current.is_active:
                return self._nothing_to_close(position_id)

            try:
                return self._close_locked(current, reason)
            except PositionNotActive:
                logger.critical(
                    f"スワップ後にポジションが既に終了済みでした: {position_id}（手動確認が必要）"
                )
                return self._nothing_to_close(position_id)
            except TradingError as e:
                return self._failure(e, position_id=position_id)

    def close_position_by_token(self, token_address: str, reason: str = "Manual close") -> OrderResult:
        position = self.store.get_position_by_token(token_address)
        if position is None:
            return OrderResult(
                success=False,
                error=FailureReason.NOTHING_TO_CLOSE,
                message=f"トークン {token_address} のポジションはありません"
            )
        return self.close_position(position, reason)

    def _close_locked(self, position: Position, reason: str) -> OrderResult:
        token_address = position.token_address
        logger.info(f"ポジションクローズ開始: {position.id} ({reason})")

        # 1. 現在価格
        price = self.oracle.get_current_price(token_address)
        if price is None:
            raise PriceUnavailable(f"価格を取得できません: {token_address}")

        # 2. オンチェーン残高（記録上の数量ではなく実残高を正とする）
        balance = self.wallet.get_token_balance(token_address, self.wallet.get_address())
        if balance is None:
            raise TransientAPIFailure(
                f"オンチェーン残高を取得できません: {token_address}",
                reason=FailureReason.BALANCE_UNAVAILABLE,
            )
        if balance <= 0:
            raise InsufficientOnChainBalance(f"オンチェーン残高がありません: {token_address}")

        if balance != position.amount:
            logger.warning(
                f"記録数量とオンチェーン残高が不一致: {position.id} 記録={position.amount} 実残高={balance}"
            )

        # 3. 売却見積もり
        quote = self.oracle.get_quote(token_address, self.base_mint, balance)
        if quote is None:
            raise TransientAPIFailure(
                f"売却見積もりを取得できません: {token_address}",
                reason=FailureReason.QUOTE_UNAVAILABLE,
            )

        # 4. スワップ実行（リトライ付き）
        swap_result, attempts = self._execute_swap_with_retry(quote)

        # 5. 取引記録とクローズを単一トランザクションで
        profit_loss = swap_result.output_amount - (balance * position.entry_price)
        exit_time = now_ms()
        self.store.close_position_atomically(
            PositionCloseUpdate(
                position_id=position.id,
                current_price=price,
                profit_loss=profit_loss,
                amount=balance,
                exit_time=exit_time,
            ),
            TradeRecord(
                token_address=token_address,
                entry_price=position.entry_price,
                exit_price=price,
                position_size=balance,
                profit_loss=profit_loss,
                tx_id=swap_result.txid,
                exit_time=exit_time,
                status=TradeStatus.CLOSED,
            ),
        )

        logger.info(f"ポジションクローズ完了: {position.id} 損益={profit_loss} tx={swap_result.txid}")
        return OrderResult(
            success=True,
            message="ポジションをクローズしました",
            position_id=position.id,
            tx_id=swap_result.txid,
            execution_price=price,
            profit_loss=profit_loss,
            attempts=attempts,
        )

    def _execute_swap_with_retry(self, quote: SwapQuote) -> Tuple[SwapResult, int]:
        """スワップ実行

        ブロックハッシュ失効系は 5秒×試行回数、それ以外は 2秒×試行回数 待って再試行する。
        """
        max_retries = self.config['max_retries']
        last_error = None

        for attempt in range(1, max_retries + 1):
            stale = False
            try:
                result = self.oracle.execute_swap(quote, self.wallet)
                if result is not None:
                    return result, attempt
                last_error = "スワップ結果なし"
            except Exception as e:
                last_error = e
                stale = is_stale_transaction_error(e)

            if attempt < max_retries:
                base_delay = (
                    self.config['stale_retry_delay_seconds'] if stale
                    else self.config['retry_delay_seconds']
                )
                delay = base_delay * attempt
                logger.warning(
                    f"スワップ失敗 (試行 {attempt}/{max_retries}, {'失効' if stale else '一般'}): "
                    f"{last_error} - {delay}秒後に再試行"
                )
                self._sleep(delay)

        raise SwapExecutionFailure(f"スワップが{max_retries}回失敗しました: {last_error}")

    # === 購入 ===

    def execute_signal(self, signal: TradeSignal) -> OrderResult:
        """シグナルに基づく取引実行"""
        if signal.type == SignalType.SELL:
            return self.close_position_by_token(signal.token_address, reason=f"Sell signal {signal.id}")
        return self.execute_buy(signal)

    def execute_buy(self, signal: TradeSignal) -> OrderResult:
        """購入してACTIVEポジションを作成"""
        if signal.confidence < self.config['min_signal_confidence']:
            return OrderResult(
                success=False,
                error=FailureReason.SIGNAL_REJECTED,
                message=(
                    f"シグナル信頼度 {signal.confidence} が閾値 "
                    f"{self.config['min_signal_confidence']} 未満です"
                )
            )

        if self.store.get_position_by_token(signal.token_address) is not None:
            return self._position_exists(signal.token_address)

        with self.locks.lock_for(signal.token_address):
            # ロック待ちの間に他スレッドが購入している可能性がある
            if self.store.get_position_by_token(signal.token_address) is not None:
                return self._position_exists(signal.token_address)
            try:
                return self._buy_locked(signal)
            except TradingError as e:
                return self._failure(e)

    def _buy_locked(self, signal: TradeSignal) -> OrderResult:
        token_address = signal.token_address
        logger.info(f"購入実行: {token_address} (シグナル {signal.id})")

        balance_lamports = self.wallet.get_native_balance()
        if balance_lamports is None:
            raise TransientAPIFailure(
                "SOL残高を取得できません",
                reason=FailureReason.BALANCE_UNAVAILABLE,
            )

        size = calculate_position_size(
            balance_lamports,
            signal.confidence,
            self.config['max_position_size_percent'],
        )
        sizing = validate_position_size(size, balance_lamports)
        if not sizing.is_valid:
            return OrderResult(
                success=False,
                error=FailureReason.SIGNAL_REJECTED,
                message=f"ポジションサイズ検証失敗: {', '.join(sizing.errors)}"
            )

        quote = self.oracle.get_quote(self.base_mint, token_address, size)
        if quote is None:
            raise TransientAPIFailure(
                f"購入見積もりを取得できません: {token_address}",
                reason=FailureReason.QUOTE_UNAVAILABLE,
            )

        trade = self.store.create_trade(
            token_address=token_address,
            entry_price=signal.price or 0.0,
            position_size=size / LAMPORTS_PER_SOL,
            signal_id=signal.id,
            status=TradeStatus.PENDING,
        )

        try:
            swap_result, attempts = self._execute_swap_with_retry(quote)
        except SwapExecutionFailure:
            self.store.update_trade_status(trade.id, TradeStatus.FAILED)
            raise

        execution_price = self.oracle.get_current_price(token_address) or signal.price
        if execution_price is None:
            logger.warning(f"約定価格を取得できません、取得価格0で記録します: {token_address}")
            execution_price = 0.0

        self._remember_token(token_address)

        position = self.store.create_position(
            token_address=token_address,
            amount=swap_result.output_amount,
            entry_price=execution_price,
            trailing_stop_percentage=self.config['trailing_stop_percentage'],
        )
        self.store.update_trade_status(
            trade.id, TradeStatus.EXECUTED, tx_id=swap_result.txid, entry_price=execution_price
        )

        logger.info(f"購入完了: {token_address} 数量={swap_result.output_amount} tx={swap_result.txid}")
        return OrderResult(
            success=True,
            message="購入を実行しました",
            position_id=position.id,
            trade_id=trade.id,
            tx_id=swap_result.txid,
            execution_price=execution_price,
            attempts=attempts,
        )

    def _remember_token(self, token_address: str):
        """集計用にdecimalsを保存"""
        info = self.oracle.get_token_info(token_address)
        if info is None:
            return
        try:
            self.store.upsert_token(token_address, info.symbol, info.decimals)
        except PersistenceFailure as e:
            logger.warning(f"トークン情報を保存できません {token_address}: {str(e)}")

    # === 帳簿上のクローズ ===

    def liquidate_position(self, position_id: str) -> Position:
        """スワップせずに清算済みにする（売却中ならその完了を待つ）"""
        current = self.store.reload_position(position_id)
        if current is None or not current.is_active:
            raise PositionNotActive(f"清算対象のポジションがありません: {position_id}")

        with self.locks.lock_for(current.token_address):
            return self.store.liquidate_position(position_id)

    def write_off_position(self, position_id: str) -> Dict[str, Any]:
        """スワップせずにクローズ扱いにする（売却中ならその完了を待つ）"""
        current = self.store.reload_position(position_id)
        if current is None or not current.is_active:
            raise PositionNotActive(f"削除対象のポジションがありません: {position_id}")

        with self.locks.lock_for(current.token_address):
            return self.store.write_off_position(position_id)

    # === 結果生成 ===

    def _position_exists(self, token_address: str) -> OrderResult:
        return OrderResult(
            success=False,
            error=FailureReason.POSITION_EXISTS,
            message=f"トークン {token_address} のポジションは既に存在します"
        )

    def _nothing_to_close(self, position_id: str) -> OrderResult:
        logger.info(f"クローズ対象なし: {position_id}")
        return OrderResult(
            success=False,
            error=FailureReason.NOTHING_TO_CLOSE,
            position_id=position_id,
            message="クローズ対象のポジションがありません（nothing to close）"
        )

    def _failure(self, error: TradingError, position_id: Optional[str] = None) -> OrderResult:
        label = error.reason.value if error.reason else type(error).__name__
        if isinstance(error, (TransientAPIFailure, InsufficientOnChainBalance)):
            logger.warning(f"注文中止 [{label}]: {str(error)}")
        else:
            logger.error(f"注文失敗 [{label}]: {str(error)}")
        return OrderResult(
            success=False,
            error=error.reason,
            position_id=position_id,
            message=str(error)
        )
