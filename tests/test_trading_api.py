import pytest
from unittest.mock import Mock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.database import get_db, Base
from app.models.trades import TradeStatus
from app.services.order_executor import TokenLockRegistry
from app.services.position_store import PositionStore
from app.services.price_oracle import SwapQuote, SwapResult, TokenInfo, WRAPPED_SOL_MINT

engine = create_engine(
    "sqlite:///:memory:",
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """テスト用データベース接続オーバーライド"""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def oracle():
    mock = Mock()
    mock.get_current_price.return_value = 0.0021
    mock.get_quote.return_value = SwapQuote(
        input_mint=WRAPPED_SOL_MINT, output_mint="TokenA", in_amount=15_920_000, out_amount=5_000
    )
    mock.execute_swap.return_value = SwapResult(txid="sig-buy", input_amount=15_920_000, output_amount=5_000)
    mock.get_token_info.return_value = TokenInfo(address="TokenA", symbol="TKA", decimals=6)
    return mock


@pytest.fixture
def wallet():
    mock = Mock()
    mock.get_address.return_value = "WalletAddress111"
    mock.get_native_balance.return_value = 1_000_000_000
    return mock


@pytest.fixture
def monitor():
    mock = Mock()
    mock.is_running = False
    mock.last_result = None
    mock.start.return_value = True
    return mock


@pytest.fixture(autouse=True)
def setup_app(oracle, wallet, monitor):
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_db] = override_get_db
    app.state.price_oracle = oracle
    app.state.wallet = wallet
    app.state.locks = TokenLockRegistry()
    app.state.monitor = monitor
    yield
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


def create_position(token_address="TokenA", entry_price=1.0):
    session = TestingSessionLocal()
    try:
        return PositionStore(session).create_position(token_address, amount=100.0, entry_price=entry_price)
    finally:
        session.close()


client = TestClient(app)


def signal_payload(**overrides):
    payload = {
        "id": "signal-1",
        "token_address": "TokenA",
        "type": "BUY",
        "price": 0.002,
        "risk_level": "medium",
        "confidence": 80.0,
    }
    payload.update(overrides)
    return payload


def test_get_trading_status():
    """監視状態取得テスト"""
    create_position()
    
    response = client.get("/api/v1/trading/status")
    
    assert response.status_code == 200
    data = response.json()
    assert data["monitor_running"] is False
    assert data["active_positions"] == 1
    assert "last_update" in data


def test_run_monitor(oracle):
    """監視パス即時実行テスト"""
    create_position(entry_price=0.002)
    
    response = client.post("/api/v1/trading/monitor/run")
    
    assert response.status_code == 200
    data = response.json()
    assert data["total_positions"] == 1
    assert data["updated"] == 1
    assert data["actions_taken"] == []


def test_start_monitor(monitor):
    """定期監視開始テスト"""
    response = client.post("/api/v1/trading/monitor/start")
    
    assert response.status_code == 200
    assert response.json()["running"] is True
    monitor.start.assert_called_once()


def test_stop_monitor(monitor):
    """定期監視停止テスト"""
    response = client.post("/api/v1/trading/monitor/stop")
    
    assert response.status_code == 200
    assert response.json()["running"] is False
    monitor.stop.assert_called_once()


def test_start_monitor_not_initialized():
    app.state.monitor = None
    
    response = client.post("/api/v1/trading/monitor/start")
    
    assert response.status_code == 500


def test_execute_buy_signal():
    """買いシグナル実行テスト"""
    response = client.post("/api/v1/trading/signals/execute", json=signal_payload())
    
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["tx_id"] == "sig-buy"
    assert data["execution_price"] == 0.0021
    assert data["position_id"] is not None
    
    trades = client.get("/api/v1/trading/trades").json()
    assert len(trades) == 1
    assert trades[0]["status"] == TradeStatus.EXECUTED.value
    assert trades[0]["signal_id"] == "signal-1"


def test_execute_signal_low_confidence(oracle):
    """信頼度不足は400"""
    response = client.post("/api/v1/trading/signals/execute", json=signal_payload(confidence=50.0))
    
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "SignalRejected"
    oracle.get_quote.assert_not_called()


def test_execute_signal_existing_position():
    """既存ポジションは409"""
    create_position()
    
    response = client.post("/api/v1/trading/signals/execute", json=signal_payload())
    
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "PositionExists"


def test_execute_signal_invalid_payload():
    """必須項目欠落は422"""
    response = client.post("/api/v1/trading/signals/execute", json={"id": "signal-1"})
    
    assert response.status_code == 422


def test_get_trades_status_filter():
    """取引履歴の絞り込み"""
    client.post("/api/v1/trading/signals/execute", json=signal_payload())
    
    executed = client.get("/api/v1/trading/trades", params={"status": "EXECUTED"})
    failed = client.get("/api/v1/trading/trades", params={"status": "FAILED"})
    
    assert len(executed.json()) == 1
    assert failed.json() == []
