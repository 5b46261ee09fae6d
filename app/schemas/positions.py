from pydantic import BaseModel
from typing import Optional

from app.models.positions import PositionStatus


class PositionBase(BaseModel):
    token_address: str
    amount: float
    entry_price: float
    trailing_stop_percentage: Optional[float] = None


class PositionResponse(PositionBase):
    id: str
    current_price: Optional[float] = None
    highest_price: Optional[float] = None
    profit_loss: Optional[float] = None
    status: PositionStatus
    last_updated: Optional[int] = None
    exit_time: Optional[int] = None

    model_config = {"from_attributes": True}


class ClosePositionRequest(BaseModel):
    reason: Optional[str] = "Manual close"


class WriteOffResponse(BaseModel):
    position_id: str
    profit_loss: float
