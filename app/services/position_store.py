"""ポジション・取引・残高履歴の永続化境界

ポジションのクローズは単一トランザクションで行い、途中で失敗した場合は
取引レコードの挿入もステータス変更もすべてロールバックする。
"""
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
import logging

import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.exceptions import PersistenceFailure, PositionNotActive
from app.core.timeutils import now_ms
from app.models.balance_history import BalanceHistory
from app.models.positions import Position, PositionStatus, DEFAULT_TRAILING_STOP_PERCENTAGE
from app.models.tokens import Token
from app.models.trades import Trade, TradeStatus
from app.services.risk_evaluator import compute_profit_loss, normalize_token_amount

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_DECIMALS = 9
MANUAL_DELETE_TX_ID = "manual_delete"

BALANCE_HISTORY_INTERVALS_MS = {
    "hour": 3_600_000,
    "day": 86_400_000,
    "week": 604_800_000,
}

UPDATABLE_POSITION_FIELDS = {
    "amount",
    "current_price",
    "highest_price",
    "profit_loss",
    "trailing_stop_percentage",
    "last_updated",
}


@dataclass
class PositionCloseUpdate:
    """クローズ時のポジション更新内容"""
    position_id: str
    current_price: float
    profit_loss: float
    amount: Optional[float] = None
    exit_time: Optional[int] = None
    status: PositionStatus = PositionStatus.CLOSED


@dataclass
class TradeRecord:
    """クローズ時に記録する取引"""
    token_address: str
    entry_price: float
    exit_price: float
    position_size: float
    profit_loss: float
    tx_id: Optional[str] = None
    signal_id: Optional[str] = None
    entry_time: Optional[int] = None
    exit_time: Optional[int] = None
    status: TradeStatus = TradeStatus.CLOSED


@dataclass
class BalanceHistoryRecord:
    """残高スナップショット"""
    id: str
    timestamp: int
    total_value: float
    active_positions_value: float
    profit_loss: float
    profit_loss_percentage: float

    @classmethod
    def from_model(cls, row: BalanceHistory) -> "BalanceHistoryRecord":
        return cls(
            id=row.id,
            timestamp=row.timestamp,
            total_value=row.total_value,
            active_positions_value=row.active_positions_value,
            profit_loss=row.profit_loss,
            profit_loss_percentage=row.profit_loss_percentage,
        )


class PositionStore:
    """ポジションリポジトリ"""

    def __init__(self, db: Session):
        self.db = db

    # === ポジション ===

    def create_position(self,
                        token_address: str,
                        amount: float,
                        entry_price: float,
                        trailing_stop_percentage: Optional[float] = None) -> Position:
        """ACTIVEポジション作成"""
        logger.info(f"ポジション作成: {token_address} 数量={amount} 取得価格={entry_price}")

        position = Position(
            token_address=token_address,
            amount=amount,
            entry_price=entry_price,
            current_price=entry_price,
            highest_price=entry_price,
            last_updated=now_ms(),
            profit_loss=0.0,
            status=PositionStatus.ACTIVE,
            trailing_stop_percentage=trailing_stop_percentage or DEFAULT_TRAILING_STOP_PERCENTAGE,
        )
        try:
            self.db.add(position)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"ポジション作成失敗: {str(e)}") from e

        self.db.refresh(position)
        return position

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.db.query(Position).filter(Position.id == position_id).first()

    def reload_position(self, position_id: str) -> Optional[Position]:
        """他セッションの更新を反映して再取得"""
        return self.db.query(Position).populate_existing().filter(Position.id == position_id).first()

    def get_position_by_token(self, token_address: str) -> Optional[Position]:
        """トークンのACTIVEポジション（1トークン1件は呼び出し側で保証）"""
        return self.db.query(Position).filter(
            Position.token_address == token_address,
            Position.status == PositionStatus.ACTIVE
        ).first()

    def get_all_active_positions(self) -> List[Position]:
        return self.db.query(Position).filter(
            Position.status == PositionStatus.ACTIVE
        ).order_by(Position.last_updated.asc()).all()

    def get_positions(self, status: Optional[PositionStatus] = None, limit: int = 50) -> List[Position]:
        query = self.db.query(Position)
        if status:
            query = query.filter(Position.status == status)
        return query.order_by(Position.last_updated.desc()).limit(limit).all()

    def update_position(self, position_id: str, **fields) -> Optional[Position]:
        """部分更新

        ステータス変更はクローズ系の操作でのみ行う。最高値は下がらない。
        終了済みポジションは更新しない。
        """
        unknown = set(fields) - UPDATABLE_POSITION_FIELDS
        if unknown:
            raise ValueError(f"更新できないフィールド: {', '.join(sorted(unknown))}")

        position = self.get_position(position_id)
        if position is None:
            return None
        if not position.is_active:
            logger.warning(f"終了済みポジションは更新しません: {position_id} ({position.status.value})")
            return None

        for name, value in fields.items():
            if name == "highest_price" and value is not None:
                value = max(value, position.highest_price or 0.0, position.entry_price)
            setattr(position, name, value)
        position.last_updated = fields.get("last_updated") or now_ms()

        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"ポジション更新失敗 {position_id}: {str(e)}") from e

        return position

    def close_position_atomically(self,
                                  position_update: PositionCloseUpdate,
                                  trade_record: TradeRecord) -> Position:
        """取引記録とポジションクローズを単一トランザクションで実行"""
        try:
            position = self.db.query(Position).filter(
                Position.id == position_update.position_id
            ).with_for_update().populate_existing().first()

            if position is None or not position.is_active:
                self.db.rollback()
                raise PositionNotActive(f"クローズ対象のポジションがありません: {position_update.position_id}")

            exit_time = position_update.exit_time or now_ms()

            trade = Trade(
                token_address=trade_record.token_address,
                signal_id=trade_record.signal_id,
                entry_price=trade_record.entry_price,
                exit_price=trade_record.exit_price,
                position_size=trade_record.position_size,
                entry_time=trade_record.entry_time,
                exit_time=trade_record.exit_time or exit_time,
                profit_loss=trade_record.profit_loss,
                status=trade_record.status,
                tx_id=trade_record.tx_id,
            )
            self.db.add(trade)

            position.status = position_update.status
            position.exit_time = exit_time
            position.last_updated = exit_time
            position.current_price = position_update.current_price
            position.profit_loss = position_update.profit_loss
            if position_update.amount is not None:
                position.amount = position_update.amount

            self.db.flush()
            self.db.commit()

        except PositionNotActive:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"クローズのトランザクションをロールバック {position_update.position_id}: {str(e)}")
            raise PersistenceFailure(f"クローズ記録失敗: {str(e)}") from e

        logger.info(f"ポジションクローズ記録: {position.id} 損益={position.profit_loss}")
        return position

    def liquidate_position(self, position_id: str) -> Position:
        """ACTIVE → LIQUIDATED（取引レコードなし）"""
        try:
            position = self.db.query(Position).filter(
                Position.id == position_id
            ).with_for_update().populate_existing().first()
            if position is None or not position.is_active:
                self.db.rollback()
                raise PositionNotActive(f"清算対象のポジションがありません: {position_id}")

            timestamp = now_ms()
            position.status = PositionStatus.LIQUIDATED
            position.exit_time = timestamp
            position.last_updated = timestamp
            self.db.commit()

        except PositionNotActive:
            raise
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"清算記録失敗: {str(e)}") from e

        logger.info(f"ポジション清算: {position_id}")
        return position

    def write_off_position(self, position_id: str) -> Dict[str, Any]:
        """スワップせずにクローズ扱いにする（帳簿上の削除）"""
        try:
            position = self.db.query(Position).filter(
                Position.id == position_id
            ).with_for_update().populate_existing().first()
            if position is None or not position.is_active:
                self.db.rollback()
                raise PositionNotActive(f"削除対象のポジションがありません: {position_id}")

            profit_loss = 0.0
            timestamp = now_ms()
            if position.current_price:
                decimals = self.get_token_decimals(position.token_address)
                normalized = normalize_token_amount(position.amount, decimals)
                profit_loss = compute_profit_loss(
                    normalized, position.entry_price, position.current_price
                ).absolute

                self.db.add(Trade(
                    token_address=position.token_address,
                    entry_price=position.entry_price,
                    exit_price=position.current_price,
                    position_size=position.amount,
                    exit_time=timestamp,
                    profit_loss=profit_loss,
                    status=TradeStatus.CLOSED,
                    tx_id=MANUAL_DELETE_TX_ID,
                ))

            position.status = PositionStatus.CLOSED
            position.exit_time = timestamp
            position.last_updated = timestamp
            self.db.commit()

        except PositionNotActive:
            raise
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"ポジション削除失敗: {str(e)}") from e

        logger.info(f"ポジションを手動削除: {position_id} 損益={profit_loss}")
        return {"position_id": position_id, "profit_loss": profit_loss}

    def get_total_closed_positions_pnl(self) -> float:
        total = self.db.query(func.sum(Position.profit_loss)).filter(
            Position.status == PositionStatus.CLOSED
        ).scalar()
        return float(total or 0.0)

    # === 取引 ===

    def create_trade(self,
                     token_address: str,
                     entry_price: float,
                     position_size: float,
                     signal_id: Optional[str] = None,
                     status: TradeStatus = TradeStatus.PENDING) -> Trade:
        trade = Trade(
            token_address=token_address,
            signal_id=signal_id,
            entry_price=entry_price,
            position_size=position_size,
            entry_time=now_ms(),
            status=status,
        )
        try:
            self.db.add(trade)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"取引記録失敗: {str(e)}") from e
        return trade

    def update_trade_status(self,
                            trade_id: str,
                            status: TradeStatus,
                            tx_id: Optional[str] = None,
                            entry_price: Optional[float] = None) -> Optional[Trade]:
        trade = self.db.query(Trade).filter(Trade.id == trade_id).first()
        if trade is None:
            return None
        trade.status = status
        trade.tx_id = tx_id
        if entry_price is not None:
            trade.entry_price = entry_price
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"取引状態更新失敗 {trade_id}: {str(e)}") from e
        return trade

    def get_trades(self, status: Optional[TradeStatus] = None, limit: int = 50) -> List[Trade]:
        query = self.db.query(Trade)
        if status:
            query = query.filter(Trade.status == status)
        return query.order_by(Trade.exit_time.desc(), Trade.entry_time.desc()).limit(limit).all()

    def get_closed_trades(self) -> List[Trade]:
        return self.db.query(Trade).filter(Trade.status == TradeStatus.CLOSED).all()

    # === トークン ===

    def get_token_decimals(self, token_address: str, default: int = DEFAULT_TOKEN_DECIMALS) -> int:
        token = self.db.query(Token).filter(Token.address == token_address).first()
        if token is None or not token.decimals:
            return default
        return token.decimals

    def upsert_token(self, address: str, symbol: Optional[str], decimals: Optional[int]) -> Token:
        token = self.db.query(Token).filter(Token.address == address).first()
        if token is None:
            token = Token(address=address)
            self.db.add(token)
        token.symbol = symbol
        token.decimals = decimals
        token.last_updated = now_ms()
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"トークン情報保存失敗 {address}: {str(e)}") from e
        return token

    # === 残高履歴 ===

    def record_balance_history(self, record: BalanceHistoryRecord) -> BalanceHistoryRecord:
        row = BalanceHistory(**asdict(record))
        try:
            self.db.add(row)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            raise PersistenceFailure(f"残高履歴記録失敗: {str(e)}") from e
        return record

    def get_balance_history(self,
                            limit: int = 100,
                            time_range_ms: Optional[int] = None,
                            interval: Optional[str] = None) -> List[BalanceHistoryRecord]:
        """残高履歴（新しい順）

        interval指定時は区間ごとに最新の1件を残し、timestampを区間開始に揃える。
        """
        if interval is not None and interval not in BALANCE_HISTORY_INTERVALS_MS:
            raise ValueError(f"不正な集計間隔: {interval}")

        query = self.db.query(BalanceHistory)
        if time_range_ms:
            query = query.filter(BalanceHistory.timestamp >= now_ms() - time_range_ms)
        rows = query.order_by(BalanceHistory.timestamp.desc()).limit(limit).all()
        records = [BalanceHistoryRecord.from_model(row) for row in rows]

        if interval and records:
            return self._aggregate_balance_history(records, interval)
        return records

    def _aggregate_balance_history(self,
                                   records: List[BalanceHistoryRecord],
                                   interval: str) -> List[BalanceHistoryRecord]:
        size = BALANCE_HISTORY_INTERVALS_MS[interval]

        df = pd.DataFrame([asdict(r) for r in records])
        df["bucket"] = (df["timestamp"] // size) * size
        latest = df.sort_values("timestamp").groupby("bucket", sort=False).tail(1).copy()
        latest["timestamp"] = latest["bucket"]
        latest = latest.sort_values("timestamp", ascending=False).drop(columns=["bucket"])

        return [
            BalanceHistoryRecord(
                id=row["id"],
                timestamp=int(row["timestamp"]),
                total_value=float(row["total_value"]),
                active_positions_value=float(row["active_positions_value"]),
                profit_loss=float(row["profit_loss"]),
                profit_loss_percentage=float(row["profit_loss_percentage"]),
            )
            for row in latest.to_dict("records")
        ]

    def get_daily_balance_history(self, days: int = 30) -> Dict[str, List]:
        """グラフ用の日次残高（古い順）"""
        records = self.get_balance_history(
            limit=days * 24,
            time_range_ms=days * BALANCE_HISTORY_INTERVALS_MS["day"],
            interval="day",
        )

        dates, total_values, profit_loss_values = [], [], []
        for record in reversed(records):
            date = datetime.fromtimestamp(record.timestamp / 1000, tz=timezone.utc).date()
            dates.append(date.isoformat())
            total_values.append(record.total_value)
            profit_loss_values.append(record.profit_loss)

        return {
            "dates": dates,
            "total_values": total_values,
            "profit_loss_values": profit_loss_values,
        }
