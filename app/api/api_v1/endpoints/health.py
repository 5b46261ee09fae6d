from fastapi import APIRouter, Depends
from typing import Optional
from datetime import datetime

from app.api.deps import get_wallet
from app.services.wallet_service import WalletClient

router = APIRouter()


@router.get("/")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "Token Position Monitor"
    }


@router.get("/rpc")
def rpc_health(wallet: Optional[WalletClient] = Depends(get_wallet)):
    if wallet is None:
        return {
            "status": "unhealthy",
            "message": "ウォレットが設定されていません"
        }

    get_slot = getattr(wallet, "get_slot", None)
    slot = get_slot() if get_slot else None
    if slot is None:
        return {
            "status": "unhealthy",
            "address": wallet.get_address(),
            "message": "Solana RPCに接続できません"
        }

    return {
        "status": "healthy",
        "address": wallet.get_address(),
        "slot": slot,
        "message": "Solana RPC接続正常"
    }
