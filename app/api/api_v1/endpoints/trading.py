from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
from datetime import datetime

from app.api.deps import (
    get_monitor, get_order_executor, get_position_manager, get_position_store,
)
from app.api.errors import raise_for_order_result
from app.models.positions import PositionStatus
from app.models.trades import TradeStatus
from app.schemas.trades import TradeResponse, SignalRequest, OrderResultResponse
from app.services.order_executor import OrderExecutor, TradeSignal
from app.services.position_manager import PositionManager
from app.services.position_monitor import PositionMonitor
from app.services.position_store import PositionStore

router = APIRouter()


def _require_monitor(monitor: Optional[PositionMonitor]) -> PositionMonitor:
    if monitor is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ポジション監視が初期化されていません"
        )
    return monitor


@router.get("/status")
async def get_trading_status(
    store: PositionStore = Depends(get_position_store),
    monitor: Optional[PositionMonitor] = Depends(get_monitor)
):
    """監視状態取得"""
    active_positions = store.get_positions(status=PositionStatus.ACTIVE, limit=1000)
    return {
        "monitor_running": bool(monitor and monitor.is_running),
        "active_positions": len(active_positions),
        "last_result": monitor.last_result if monitor else None,
        "last_update": datetime.now().isoformat(),
    }


@router.post("/monitor/run")
def run_monitor(
    manager: PositionManager = Depends(get_position_manager)
):
    """監視パスを即時実行"""
    return manager.update_prices_and_profit_loss()


@router.post("/monitor/start")
async def start_monitor(
    monitor: Optional[PositionMonitor] = Depends(get_monitor)
):
    """定期監視開始"""
    started = _require_monitor(monitor).start()
    return {
        "message": "ポジション監視を開始しました" if started else "ポジション監視は既に稼働中です",
        "running": True,
    }


@router.post("/monitor/stop")
def stop_monitor(
    monitor: Optional[PositionMonitor] = Depends(get_monitor)
):
    """定期監視停止"""
    _require_monitor(monitor).stop()
    return {"message": "ポジション監視を停止しました", "running": False}


@router.post("/signals/execute", response_model=OrderResultResponse)
def execute_signal(
    request: SignalRequest,
    executor: OrderExecutor = Depends(get_order_executor)
):
    """シグナル実行"""
    signal = TradeSignal(
        id=request.id,
        token_address=request.token_address,
        type=request.type,
        price=request.price,
        risk_level=request.risk_level,
        confidence=request.confidence,
    )
    result = executor.execute_signal(signal)
    raise_for_order_result(result)
    return OrderResultResponse(
        success=result.success,
        message=result.message,
        position_id=result.position_id,
        trade_id=result.trade_id,
        tx_id=result.tx_id,
        execution_price=result.execution_price,
        profit_loss=result.profit_loss,
        attempts=result.attempts,
    )


@router.get("/trades", response_model=List[TradeResponse])
async def get_trades(
    status_filter: Optional[TradeStatus] = Query(None, alias="status"),
    limit: int = 50,
    store: PositionStore = Depends(get_position_store)
):
    """取引履歴取得"""
    return store.get_trades(status=status_filter, limit=limit)
