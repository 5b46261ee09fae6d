from fastapi import HTTPException, status

from app.core.exceptions import FailureReason
from app.services.order_executor import OrderResult


FAILURE_STATUS_CODES = {
    FailureReason.NOTHING_TO_CLOSE: status.HTTP_409_CONFLICT,
    FailureReason.POSITION_EXISTS: status.HTTP_409_CONFLICT,
    FailureReason.SIGNAL_REJECTED: status.HTTP_400_BAD_REQUEST,
    FailureReason.INSUFFICIENT_ON_CHAIN_BALANCE: status.HTTP_400_BAD_REQUEST,
}


def raise_for_order_result(result: OrderResult):
    """失敗した注文結果をHTTPエラーに変換"""
    if result.success:
        return
    status_code = FAILURE_STATUS_CODES.get(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(
        status_code=status_code,
        detail={
            "error": result.error.value if result.error else None,
            "message": result.message,
        }
    )
