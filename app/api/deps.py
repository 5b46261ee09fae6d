from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.services.order_executor import OrderExecutor, TokenLockRegistry
from app.services.position_manager import PositionManager, create_position_manager
from app.services.position_monitor import PositionMonitor
from app.services.position_store import PositionStore
from app.services.price_oracle import PriceOracle
from app.services.wallet_service import WalletClient


# アプリケーション起動時に app.state に登録したサービスを取得
def get_price_oracle(request: Request) -> PriceOracle:
    oracle = getattr(request.app.state, "price_oracle", None)
    if oracle is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="価格サービスが初期化されていません"
        )
    return oracle


def get_wallet(request: Request) -> Optional[WalletClient]:
    return getattr(request.app.state, "wallet", None)


def require_wallet(wallet: Optional[WalletClient] = Depends(get_wallet)) -> WalletClient:
    if wallet is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ウォレットが設定されていません"
        )
    return wallet


def get_lock_registry(request: Request) -> TokenLockRegistry:
    locks = getattr(request.app.state, "locks", None)
    if locks is None:
        locks = TokenLockRegistry()
        request.app.state.locks = locks
    return locks


def get_monitor(request: Request) -> Optional[PositionMonitor]:
    return getattr(request.app.state, "monitor", None)


def get_position_store(db: Session = Depends(get_db)) -> PositionStore:
    return PositionStore(db)


def get_order_executor(
    store: PositionStore = Depends(get_position_store),
    oracle: PriceOracle = Depends(get_price_oracle),
    wallet: WalletClient = Depends(require_wallet),
    locks: TokenLockRegistry = Depends(get_lock_registry),
) -> OrderExecutor:
    return OrderExecutor(store=store, oracle=oracle, wallet=wallet, locks=locks)


def get_position_manager(
    db: Session = Depends(get_db),
    oracle: PriceOracle = Depends(get_price_oracle),
    wallet: Optional[WalletClient] = Depends(get_wallet),
    locks: TokenLockRegistry = Depends(get_lock_registry),
) -> PositionManager:
    return create_position_manager(db, oracle, wallet, locks)


def get_ledger_executor(
    store: PositionStore = Depends(get_position_store),
    oracle: PriceOracle = Depends(get_price_oracle),
    wallet: Optional[WalletClient] = Depends(get_wallet),
    locks: TokenLockRegistry = Depends(get_lock_registry),
) -> OrderExecutor:
    """清算・手動削除用（ウォレット不要、売却と同じロックを使う）"""
    return OrderExecutor(store=store, oracle=oracle, wallet=wallet, locks=locks)
