import uuid
from enum import Enum

from sqlalchemy import Column, String, Float, BigInteger, Enum as SQLEnum

from app.core.database import Base
from app.core.timeutils import now_ms


DEFAULT_TRAILING_STOP_PERCENTAGE = 20.0


class PositionStatus(str, Enum):
    """ポジション状態"""
    ACTIVE = "ACTIVE"          # 保有中
    CLOSED = "CLOSED"          # 売却済み
    LIQUIDATED = "LIQUIDATED"  # 清算済み


TERMINAL_STATUSES = (PositionStatus.CLOSED, PositionStatus.LIQUIDATED)


class Position(Base):
    """ポジション管理テーブル"""
    __tablename__ = "positions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    token_address = Column(String(64), nullable=False, index=True)

    # 数量はオンチェーンの生単位（decimals未正規化）
    amount = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=True)
    highest_price = Column(Float, nullable=True)

    profit_loss = Column(Float, nullable=True, default=0.0)
    status = Column(SQLEnum(PositionStatus), default=PositionStatus.ACTIVE, nullable=False, index=True)
    trailing_stop_percentage = Column(Float, nullable=False, default=DEFAULT_TRAILING_STOP_PERCENTAGE)

    # エポックミリ秒
    last_updated = Column(BigInteger, nullable=False, default=now_ms)
    exit_time = Column(BigInteger, nullable=True)

    def __repr__(self):
        return f"<Position(id={self.id}, token={self.token_address}, status={self.status}, amount={self.amount})>"

    @property
    def is_active(self) -> bool:
        """保有中か"""
        return self.status == PositionStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        """終了済み（売却・清算）か"""
        return self.status in TERMINAL_STATUSES

    @property
    def entry_value(self) -> float:
        if self.amount is None or self.entry_price is None:
            return 0.0
        return self.amount * self.entry_price

    @property
    def last_known_profit_loss_percentage(self) -> float:
        """直近に保存された損益率（APIコールなし）"""
        entry_value = self.entry_value
        if entry_value <= 0:
            return 0.0
        return (self.profit_loss or 0.0) / entry_value * 100

    @property
    def effective_trailing_stop_percentage(self) -> float:
        return self.trailing_stop_percentage or DEFAULT_TRAILING_STOP_PERCENTAGE
