from sqlalchemy import Column, String, Integer, BigInteger

from app.core.database import Base
from app.core.timeutils import now_ms


class Token(Base):
    """トークンメタデータ（集計時のdecimals正規化用）"""
    __tablename__ = "tokens"

    address = Column(String(64), primary_key=True)
    symbol = Column(String(32), nullable=True)
    decimals = Column(Integer, nullable=True)
    last_updated = Column(BigInteger, default=now_ms, onupdate=now_ms)
