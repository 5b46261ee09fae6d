import uuid

from sqlalchemy import Column, String, Float, BigInteger

from app.core.database import Base


class BalanceHistory(Base):
    """残高スナップショット（追記のみ）"""
    __tablename__ = "balance_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp = Column(BigInteger, nullable=False, index=True)
    total_value = Column(Float, nullable=False, default=0.0)
    active_positions_value = Column(Float, nullable=False, default=0.0)
    profit_loss = Column(Float, nullable=False, default=0.0)
    profit_loss_percentage = Column(Float, nullable=False, default=0.0)

    def __repr__(self):
        return f"<BalanceHistory(timestamp={self.timestamp}, total_value={self.total_value})>"
