from pydantic import BaseModel
from typing import List


class BalanceHistoryResponse(BaseModel):
    id: str
    timestamp: int
    total_value: float
    active_positions_value: float
    profit_loss: float
    profit_loss_percentage: float

    model_config = {"from_attributes": True}


class DailyBalanceResponse(BaseModel):
    dates: List[str]
    total_values: List[float]
    profit_loss_values: List[float]
