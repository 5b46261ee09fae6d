from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional

from app.api.deps import get_position_manager, get_position_store
from app.core.exceptions import PersistenceFailure
from app.schemas.balance import BalanceHistoryResponse, DailyBalanceResponse
from app.services.position_manager import PositionManager
from app.services.position_store import PositionStore, BALANCE_HISTORY_INTERVALS_MS

router = APIRouter()


@router.get("/history", response_model=List[BalanceHistoryResponse])
async def get_balance_history(
    limit: int = Query(100, ge=1, le=10000),
    time_range_hours: Optional[int] = Query(None, ge=1),
    interval: Optional[str] = None,
    store: PositionStore = Depends(get_position_store)
):
    """残高履歴取得（新しい順）"""
    if interval is not None and interval not in BALANCE_HISTORY_INTERVALS_MS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"集計間隔は {', '.join(BALANCE_HISTORY_INTERVALS_MS)} のいずれかです"
        )
    time_range_ms = time_range_hours * BALANCE_HISTORY_INTERVALS_MS["hour"] if time_range_hours else None
    return store.get_balance_history(limit=limit, time_range_ms=time_range_ms, interval=interval)


@router.get("/daily", response_model=DailyBalanceResponse)
async def get_daily_balance_history(
    days: int = Query(30, ge=1, le=365),
    store: PositionStore = Depends(get_position_store)
):
    """日次残高（グラフ用）"""
    return store.get_daily_balance_history(days=days)


@router.get("/metrics")
def get_metrics(
    manager: PositionManager = Depends(get_position_manager)
):
    """ポートフォリオ指標"""
    metrics = manager.get_portfolio_metrics()
    native_value = manager.get_native_value()
    return {
        "portfolio": metrics,
        "native_value": native_value,
        "total_value": metrics["total_value"] + native_value,
        "pnl": manager.get_comprehensive_pnl(),
    }


@router.post("/snapshot", response_model=BalanceHistoryResponse)
def record_snapshot(
    manager: PositionManager = Depends(get_position_manager)
):
    """残高スナップショットを即時記録"""
    try:
        return manager.record_balance_history()
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
