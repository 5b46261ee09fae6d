from typing import Dict, Any, List, Optional
import logging
import uuid

from sqlalchemy.orm import Session

from app.core.timeutils import now_ms
from app.models.positions import Position
from app.services.order_executor import OrderExecutor, TokenLockRegistry
from app.services.position_store import PositionStore, BalanceHistoryRecord
from app.services.price_oracle import PriceOracle, WRAPPED_SOL_MINT
from app.services.risk_evaluator import (
    compute_trigger, compute_profit_loss, partition_by_priority,
    last_known_percentage, is_approaching_stop_loss, is_approaching_take_profit,
    normalize_token_amount, LAMPORTS_PER_SOL,
)
from app.services.wallet_service import WalletClient

logger = logging.getLogger(__name__)


class PositionManager:
    """ポジション監視サービス

    1回のパスで価格を取得し、損益と最高値を更新し、トリガー発火時に売却する。
    """

    def __init__(self,
                 store: PositionStore,
                 oracle: PriceOracle,
                 executor: OrderExecutor,
                 wallet: Optional[WalletClient] = None,
                 native_mint: str = WRAPPED_SOL_MINT):
        self.store = store
        self.oracle = oracle
        self.executor = executor
        self.wallet = wallet
        self.native_mint = native_mint

    def update_prices_and_profit_loss(self) -> Dict[str, Any]:
        """全ACTIVEポジションの価格更新とエグジット判定"""
        positions = self.store.get_all_active_positions()
        high_priority, regular = partition_by_priority(positions)

        result = {
            'total_positions': len(positions),
            'high_priority': len(high_priority),
            'updated': 0,
            'skipped': 0,
            'actions_taken': [],
            'warnings': [],
            'errors': [],
        }

        for position in high_priority + regular:
            # 例外は位置ごとに記録して次へ進む
            try:
                self._update_position_price(position, result)
            except Exception as e:
                logger.error(f"ポジション {position.id} の監視エラー: {str(e)}")
                result['errors'].append(f"ポジション {position.id} の監視エラー: {str(e)}")

        result['warnings'].extend(self._threshold_warnings())

        logger.info(
            f"監視完了: 対象={result['total_positions']} 更新={result['updated']} "
            f"スキップ={result['skipped']} 決済={len(result['actions_taken'])}"
        )
        return result

    def _update_position_price(self, position: Position, result: Dict[str, Any]):
        price = self.oracle.get_current_price(position.token_address)
        if price is None:
            logger.warning(f"価格未取得のためスキップ: {position.token_address}")
            result['skipped'] += 1
            return

        decision = compute_trigger(position, price)

        updated = self.store.update_position(
            position.id,
            current_price=price,
            highest_price=decision.highest_price,
            profit_loss=decision.profit_loss.absolute,
            last_updated=now_ms(),
        )
        if updated is None:
            # 他スレッドで既にクローズ済み
            result['skipped'] += 1
            return
        result['updated'] += 1

        if not decision.fired:
            return

        logger.info(
            f"{decision.trigger.value} 発火: {position.id} 損益率={decision.profit_loss.percentage:.2f}% "
            f"最高値からの下落={decision.drop_percentage:.2f}%"
        )
        close_result = self.executor.close_position(position.id, reason=decision.trigger.value)
        if close_result.success:
            result['actions_taken'].append(
                f"ポジション {position.id} を{decision.trigger.value}でクローズしました"
            )
        else:
            reason = close_result.error.value if close_result.error else "unknown"
            result['errors'].append(
                f"ポジション {position.id} のクローズ失敗 [{reason}]: {close_result.message}"
            )

    def _threshold_warnings(self) -> List[str]:
        warnings = []
        for position in self.store.get_all_active_positions():
            percentage = last_known_percentage(position)
            if is_approaching_stop_loss(percentage):
                warnings.append(
                    f"ポジション {position.id} がストップロスに接近しています ({percentage:.2f}%)"
                )
            elif is_approaching_take_profit(percentage):
                warnings.append(
                    f"ポジション {position.id} が利確水準に接近しています ({percentage:.2f}%)"
                )
        return warnings

    # === 集計 ===

    def get_portfolio_metrics(self) -> Dict[str, float]:
        """ACTIVEポジションの評価額と損益"""
        total_value = 0.0
        entry_value = 0.0
        profit_loss = 0.0

        for position in self.store.get_all_active_positions():
            if not position.current_price:
                continue
            decimals = self.store.get_token_decimals(position.token_address)
            amount = normalize_token_amount(position.amount, decimals)
            pnl = compute_profit_loss(amount, position.entry_price, position.current_price)
            total_value += amount * position.current_price
            entry_value += amount * position.entry_price
            profit_loss += pnl.absolute

        percentage = (profit_loss / entry_value) * 100 if entry_value > 0 else 0.0
        return {
            'total_value': total_value,
            'entry_value': entry_value,
            'profit_loss': profit_loss,
            'profit_loss_percentage': percentage,
        }

    def get_total_trades_pnl(self) -> float:
        """クローズ済み取引の損益合計"""
        total = 0.0
        for trade in self.store.get_closed_trades():
            if trade.exit_price is None or trade.entry_price is None:
                continue
            decimals = self.store.get_token_decimals(trade.token_address)
            size = normalize_token_amount(trade.position_size or 0.0, decimals)
            total += size * (trade.exit_price - trade.entry_price)
        return total

    def get_comprehensive_pnl(self) -> Dict[str, float]:
        metrics = self.get_portfolio_metrics()
        trades_pnl = self.get_total_trades_pnl()
        return {
            'active_profit_loss': metrics['profit_loss'],
            'trades_profit_loss': trades_pnl,
            'closed_positions_profit_loss': self.store.get_total_closed_positions_pnl(),
            'total_profit_loss': metrics['profit_loss'] + trades_pnl,
        }

    def get_native_value(self) -> float:
        """SOL残高の評価額。取得失敗時は0"""
        if self.wallet is None:
            return 0.0
        try:
            lamports = self.wallet.get_native_balance()
            price = self.oracle.get_current_price(self.native_mint)
        except Exception as e:
            logger.error(f"SOL評価額の取得エラー: {str(e)}")
            return 0.0

        if lamports is None or price is None:
            logger.warning("SOL残高または価格を取得できないため0として扱います")
            return 0.0
        return lamports / LAMPORTS_PER_SOL * price

    def record_balance_history(self) -> BalanceHistoryRecord:
        """残高スナップショットを記録"""
        metrics = self.get_portfolio_metrics()
        native_value = self.get_native_value()
        trades_pnl = self.get_total_trades_pnl()

        record = BalanceHistoryRecord(
            id=str(uuid.uuid4()),
            timestamp=now_ms(),
            total_value=metrics['total_value'] + native_value,
            active_positions_value=metrics['total_value'],
            profit_loss=metrics['profit_loss'] + trades_pnl,
            profit_loss_percentage=metrics['profit_loss_percentage'],
        )
        self.store.record_balance_history(record)
        logger.info(f"残高履歴記録: 合計={record.total_value:.4f} 損益={record.profit_loss:.4f}")
        return record


def create_position_manager(db: Session,
                            oracle: PriceOracle,
                            wallet: Optional[WalletClient],
                            locks: Optional[TokenLockRegistry] = None) -> PositionManager:
    """セッションごとのサービス一式を組み立てる"""
    store = PositionStore(db)
    executor = OrderExecutor(store=store, oracle=oracle, wallet=wallet, locks=locks)
    return PositionManager(store=store, oracle=oracle, executor=executor, wallet=wallet)
