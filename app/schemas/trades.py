from pydantic import BaseModel
from typing import Optional

from app.models.trades import TradeStatus
from app.services.order_executor import SignalType


class TradeResponse(BaseModel):
    id: str
    token_address: str
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    position_size: Optional[float] = None
    signal_id: Optional[str] = None
    entry_time: Optional[int] = None
    exit_time: Optional[int] = None
    profit_loss: Optional[float] = None
    status: TradeStatus
    tx_id: Optional[str] = None

    model_config = {"from_attributes": True}


class SignalRequest(BaseModel):
    id: str
    token_address: str
    type: SignalType = SignalType.BUY
    price: Optional[float] = None
    risk_level: Optional[str] = None
    confidence: float


class OrderResultResponse(BaseModel):
    success: bool
    message: str
    error: Optional[str] = None
    position_id: Optional[str] = None
    trade_id: Optional[str] = None
    tx_id: Optional[str] = None
    execution_price: Optional[float] = None
    profit_loss: Optional[float] = None
    attempts: int = 0
