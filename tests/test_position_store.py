import pytest
from unittest.mock import patch
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.core.exceptions import PersistenceFailure, PositionNotActive
from app.core.timeutils import now_ms
from app.models.positions import Position, PositionStatus
from app.models.trades import Trade, TradeStatus
from app.services.position_store import (
    PositionStore, PositionCloseUpdate, TradeRecord, BalanceHistoryRecord,
    MANUAL_DELETE_TX_ID,
)

HOUR_MS = 3_600_000
DAY_MS = 86_400_000


@pytest.fixture
def db_session():
    """テスト用データベースセッション"""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    return PositionStore(db_session)


def close_request(position, price=1.5, profit_loss=50.0, tx_id="sig-close"):
    return (
        PositionCloseUpdate(
            position_id=position.id,
            current_price=price,
            profit_loss=profit_loss,
            amount=position.amount,
        ),
        TradeRecord(
            token_address=position.token_address,
            entry_price=position.entry_price,
            exit_price=price,
            position_size=position.amount,
            profit_loss=profit_loss,
            tx_id=tx_id,
        ),
    )


def balance_record(record_id, timestamp, total_value, profit_loss=0.0):
    return BalanceHistoryRecord(
        id=record_id,
        timestamp=timestamp,
        total_value=total_value,
        active_positions_value=total_value,
        profit_loss=profit_loss,
        profit_loss_percentage=0.0,
    )


def test_create_position(store):
    """ポジション作成テスト"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=2.0)
    
    assert position.id is not None
    assert position.status == PositionStatus.ACTIVE
    assert position.current_price == 2.0
    assert position.highest_price == 2.0
    assert position.profit_loss == 0.0
    assert position.trailing_stop_percentage == 20.0
    assert position.exit_time is None


def test_get_position_by_token_returns_active_only(store):
    """トークン検索はACTIVEのみ"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=2.0)
    assert store.get_position_by_token("TokenMint111").id == position.id
    
    store.liquidate_position(position.id)
    
    assert store.get_position_by_token("TokenMint111") is None
    assert store.get_position(position.id).status == PositionStatus.LIQUIDATED


def test_get_all_active_positions(store):
    """ACTIVEポジション一覧"""
    first = store.create_position("TokenA", amount=1.0, entry_price=1.0)
    second = store.create_position("TokenB", amount=1.0, entry_price=1.0)
    store.liquidate_position(first.id)
    
    active = store.get_all_active_positions()
    
    assert [p.id for p in active] == [second.id]
    assert len(store.get_positions()) == 2
    assert len(store.get_positions(status=PositionStatus.LIQUIDATED)) == 1


def test_update_position(store):
    """部分更新テスト"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=2.0)
    
    updated = store.update_position(
        position.id, current_price=2.5, highest_price=2.5, profit_loss=50.0
    )
    
    assert updated.current_price == 2.5
    assert updated.highest_price == 2.5
    assert updated.profit_loss == 50.0
    assert updated.status == PositionStatus.ACTIVE


def test_update_position_highest_price_never_decreases(store):
    """最高値は下がらない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=2.0)
    store.update_position(position.id, highest_price=3.0)
    
    updated = store.update_position(position.id, highest_price=2.2)
    
    assert updated.highest_price == 3.0


def test_update_position_rejects_status_change(store):
    """ステータスは部分更新できない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=2.0)
    
    with pytest.raises(ValueError):
        store.update_position(position.id, status=PositionStatus.CLOSED)


def test_update_position_ignores_terminal_position(store):
    """終了済みポジションは更新しない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=2.0)
    store.liquidate_position(position.id)
    
    assert store.update_position(position.id, current_price=9.9) is None
    assert store.get_position(position.id).current_price == 2.0


def test_close_position_atomically(store, db_session):
    """取引記録とクローズの一括実行"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=1.0)
    
    closed = store.close_position_atomically(*close_request(position))
    
    assert closed.status == PositionStatus.CLOSED
    assert closed.exit_time is not None
    assert closed.current_price == 1.5
    assert closed.profit_loss == 50.0
    
    trades = db_session.query(Trade).all()
    assert len(trades) == 1
    assert trades[0].status == TradeStatus.CLOSED
    assert trades[0].tx_id == "sig-close"
    assert trades[0].exit_price == 1.5


def test_close_position_twice_is_rejected(store, db_session):
    """2回目のクローズは何も書き込まない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=1.0)
    store.close_position_atomically(*close_request(position))
    
    with pytest.raises(PositionNotActive):
        store.close_position_atomically(*close_request(position, tx_id="sig-second"))
    
    assert db_session.query(Trade).count() == 1


def test_close_position_rolls_back_on_failure(store, db_session):
    """コミット失敗時はロールバックされ取引も残らない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=1.0)
    
    with patch.object(db_session, "commit", side_effect=SQLAlchemyError("disk I/O error")):
        with pytest.raises(PersistenceFailure):
            store.close_position_atomically(*close_request(position))
    
    assert db_session.query(Trade).count() == 0
    reloaded = store.reload_position(position.id)
    assert reloaded.status == PositionStatus.ACTIVE
    assert reloaded.exit_time is None


def test_liquidate_position(store, db_session):
    """清算は取引レコードを作らない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=1.0)
    
    liquidated = store.liquidate_position(position.id)
    
    assert liquidated.status == PositionStatus.LIQUIDATED
    assert liquidated.exit_time is not None
    assert db_session.query(Trade).count() == 0
    
    with pytest.raises(PositionNotActive):
        store.liquidate_position(position.id)


def test_write_off_position(store, db_session):
    """手動削除は manual_delete 取引を記録"""
    position = store.create_position("TokenMint111", amount=2_000_000_000, entry_price=1.0)
    store.update_position(position.id, current_price=1.5)
    
    result = store.write_off_position(position.id)
    
    assert result["position_id"] == position.id
    assert result["profit_loss"] == pytest.approx(1.0)  # 2.0トークン × 0.5
    assert store.get_position(position.id).status == PositionStatus.CLOSED
    
    trade = db_session.query(Trade).one()
    assert trade.tx_id == MANUAL_DELETE_TX_ID
    assert trade.status == TradeStatus.CLOSED


def test_write_off_position_uses_token_decimals(store):
    """登録済みdecimalsで正規化"""
    store.upsert_token("TokenMint111", "TKN", 6)
    position = store.create_position("TokenMint111", amount=3_000_000, entry_price=1.0)
    store.update_position(position.id, current_price=2.0)
    
    result = store.write_off_position(position.id)
    
    assert result["profit_loss"] == pytest.approx(3.0)


def test_write_off_position_without_price(store, db_session):
    """価格未取得なら取引を記録しない"""
    position = store.create_position("TokenMint111", amount=100.0, entry_price=1.0)
    store.update_position(position.id, current_price=None)
    
    result = store.write_off_position(position.id)
    
    assert result["profit_loss"] == 0.0
    assert db_session.query(Trade).count() == 0


def test_get_total_closed_positions_pnl(store):
    """クローズ済みポジションの損益合計"""
    first = store.create_position("TokenA", amount=100.0, entry_price=1.0)
    second = store.create_position("TokenB", amount=100.0, entry_price=1.0)
    store.close_position_atomically(*close_request(first, profit_loss=10.0))
    store.close_position_atomically(*close_request(second, profit_loss=-4.0))
    
    assert store.get_total_closed_positions_pnl() == pytest.approx(6.0)


def test_trade_status_transitions(store):
    """取引状態の遷移"""
    trade = store.create_trade("TokenMint111", entry_price=1.0, position_size=0.5, signal_id="sig-1")
    assert trade.status == TradeStatus.PENDING
    assert trade.entry_time is not None
    
    updated = store.update_trade_status(trade.id, TradeStatus.EXECUTED, tx_id="tx-1")
    
    assert updated.status == TradeStatus.EXECUTED
    assert updated.tx_id == "tx-1"
    assert store.update_trade_status("missing", TradeStatus.FAILED) is None


def test_token_decimals(store):
    """decimals取得と更新"""
    assert store.get_token_decimals("Unknown") == 9
    
    store.upsert_token("TokenMint111", "TKN", 6)
    assert store.get_token_decimals("TokenMint111") == 6
    
    store.upsert_token("TokenMint111", "TKN2", 8)
    assert store.get_token_decimals("TokenMint111") == 8


def test_balance_history_newest_first(store):
    """残高履歴は新しい順"""
    store.record_balance_history(balance_record("a", 1_000, 10.0))
    store.record_balance_history(balance_record("b", 3_000, 30.0))
    store.record_balance_history(balance_record("c", 2_000, 20.0))
    
    records = store.get_balance_history()
    
    assert [r.id for r in records] == ["b", "c", "a"]
    assert len(store.get_balance_history(limit=2)) == 2


def test_balance_history_aggregated_by_interval(store):
    """区間ごとに最新の1件、timestampは区間開始"""
    base = 10 * HOUR_MS
    store.record_balance_history(balance_record("early", base + 1_000, 10.0))
    store.record_balance_history(balance_record("late", base + 2_000, 12.0))
    store.record_balance_history(balance_record("next", base + HOUR_MS + 500, 15.0))
    
    records = store.get_balance_history(interval="hour")
    
    assert [r.id for r in records] == ["next", "late"]
    assert records[0].timestamp == base + HOUR_MS
    assert records[1].timestamp == base
    assert records[1].total_value == 12.0


def test_balance_history_time_range(store):
    """時間範囲で絞り込み"""
    now = now_ms()
    store.record_balance_history(balance_record("old", now - 3 * DAY_MS, 1.0))
    store.record_balance_history(balance_record("recent", now - HOUR_MS, 2.0))
    
    records = store.get_balance_history(time_range_ms=DAY_MS)
    
    assert [r.id for r in records] == ["recent"]


def test_balance_history_invalid_interval(store):
    with pytest.raises(ValueError):
        store.get_balance_history(interval="minute")


def test_daily_balance_history(store):
    """日次残高は古い順"""
    now = now_ms()
    store.record_balance_history(balance_record("yesterday", now - DAY_MS, 10.0, profit_loss=1.0))
    store.record_balance_history(balance_record("today", now, 20.0, profit_loss=2.0))
    
    daily = store.get_daily_balance_history(days=7)
    
    assert len(daily["dates"]) == 2
    assert daily["dates"][0] < daily["dates"][1]
    assert daily["total_values"] == [10.0, 20.0]
    assert daily["profit_loss_values"] == [1.0, 2.0]
