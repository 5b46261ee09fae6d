from fastapi import APIRouter
from app.api.api_v1.endpoints import balance, health, positions, trading

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(positions.router, prefix="/positions", tags=["positions"])
api_router.include_router(trading.router, prefix="/trading", tags=["trading"])
api_router.include_router(balance.router, prefix="/balance", tags=["balance"])
