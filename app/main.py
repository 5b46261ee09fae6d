from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.database import SessionLocal, init_db
from app.core.exceptions import WalletConfigurationError
from app.api.api_v1.api import api_router
from app.services.order_executor import TokenLockRegistry
from app.services.position_monitor import PositionMonitor
from app.services.price_oracle import JupiterPriceOracle
from app.services.wallet_service import initialize_wallet

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    app.state.price_oracle = JupiterPriceOracle()
    app.state.locks = TokenLockRegistry()
    try:
        app.state.wallet = initialize_wallet()
    except WalletConfigurationError as e:
        # ウォレットなしでも参照系APIは利用できる
        logger.warning(f"ウォレット未設定のため売買は無効です: {str(e)}")
        app.state.wallet = None

    app.state.monitor = PositionMonitor(
        session_factory=SessionLocal,
        oracle=app.state.price_oracle,
        wallet=app.state.wallet,
        locks=app.state.locks,
    )
    if settings.monitor_enabled and app.state.wallet is not None:
        app.state.monitor.start()

    yield

    app.state.monitor.stop()
    app.state.price_oracle.close()
    if app.state.wallet is not None:
        app.state.wallet.close()


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="トークンポジションのストップロス・トレーリングストップ監視システム",
    lifespan=lifespan
)

# CORS設定
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 本番環境では適切に制限
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API ルーターの登録
app.include_router(api_router, prefix=settings.api_v1_str)


@app.get("/")
async def root():
    return {
        "message": f"Welcome to {settings.app_name}",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
