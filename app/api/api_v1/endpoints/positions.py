from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional

from app.api.deps import get_position_store, get_order_executor, get_ledger_executor
from app.api.errors import raise_for_order_result
from app.core.exceptions import PositionNotActive, PersistenceFailure
from app.models.positions import PositionStatus
from app.schemas.positions import PositionResponse, ClosePositionRequest, WriteOffResponse
from app.schemas.trades import OrderResultResponse
from app.services.order_executor import OrderExecutor
from app.services.position_store import PositionStore

router = APIRouter()


@router.get("/", response_model=List[PositionResponse])
async def get_positions(
    status_filter: Optional[PositionStatus] = Query(None, alias="status"),
    limit: int = 50,
    store: PositionStore = Depends(get_position_store)
):
    """ポジション一覧取得"""
    return store.get_positions(status=status_filter, limit=limit)


@router.get("/{position_id}", response_model=PositionResponse)
async def get_position(
    position_id: str,
    store: PositionStore = Depends(get_position_store)
):
    """ポジション詳細取得"""
    position = store.get_position(position_id)
    if position is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="ポジションが見つかりません"
        )
    return position


@router.post("/{position_id}/close", response_model=OrderResultResponse)
def close_position(
    position_id: str,
    request: Optional[ClosePositionRequest] = None,
    store: PositionStore = Depends(get_position_store),
    executor: OrderExecutor = Depends(get_order_executor)
):
    """ポジションを売却してクローズ"""
    if store.get_position(position_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="ポジションが見つかりません"
        )

    reason = request.reason if request else "Manual close"
    result = executor.close_position(position_id, reason=reason)
    raise_for_order_result(result)
    return OrderResultResponse(
        success=result.success,
        message=result.message,
        position_id=result.position_id,
        tx_id=result.tx_id,
        execution_price=result.execution_price,
        profit_loss=result.profit_loss,
        attempts=result.attempts,
    )


@router.post("/{position_id}/liquidate", response_model=PositionResponse)
def liquidate_position(
    position_id: str,
    store: PositionStore = Depends(get_position_store),
    executor: OrderExecutor = Depends(get_ledger_executor)
):
    """ポジションを清算済みにする"""
    if store.get_position(position_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="ポジションが見つかりません"
        )
    try:
        return executor.liquidate_position(position_id)
    except PositionNotActive as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.post("/{position_id}/delete", response_model=WriteOffResponse)
def delete_position(
    position_id: str,
    store: PositionStore = Depends(get_position_store),
    executor: OrderExecutor = Depends(get_ledger_executor)
):
    """スワップせずにポジションを削除（帳簿上のクローズ）"""
    if store.get_position(position_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="ポジションが見つかりません"
        )
    try:
        return executor.write_off_position(position_id)
    except PositionNotActive as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
