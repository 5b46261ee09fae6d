import uuid
from enum import Enum

from sqlalchemy import Column, String, Float, BigInteger, Enum as SQLEnum

from app.core.database import Base


class TradeStatus(str, Enum):
    """取引状態"""
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    CLOSED = "CLOSED"


class Trade(Base):
    __tablename__ = "trades"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    token_address = Column(String(64), nullable=False, index=True)
    entry_price = Column(Float)
    exit_price = Column(Float)
    position_size = Column(Float)
    signal_id = Column(String(64), nullable=True)
    entry_time = Column(BigInteger)
    exit_time = Column(BigInteger)
    profit_loss = Column(Float)
    status = Column(SQLEnum(TradeStatus), nullable=False, index=True)
    tx_id = Column(String(128), nullable=True)

    def __repr__(self):
        return f"<Trade(id={self.id}, token={self.token_address}, status={self.status}, tx={self.tx_id})>"
