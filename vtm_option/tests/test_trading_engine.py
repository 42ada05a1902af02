from datetime import timedelta

import pytest

from vtm_option.models.trading_models import (Direction, RiskState,
                                              SessionStatus, TradeInstruction,
                                              TradeStatus)
from vtm_option.persistence.db import trades, trading_sessions, user_settings
from vtm_option.providers.broker_rest import BrokerError, BrokerTimeout
from vtm_option.risk.money_management import MartingaleStake
from vtm_option.services.trading_engine import (FixedDirectionEntry,
                                                TradingEngine)


def _call(user_id, signal_id=None):
    return TradeInstruction(user_id=user_id, direction=Direction.CALL, asset="R_100", signal_id=signal_id)


@pytest.mark.asyncio
async def test_daily_reset_runs_before_risk_evaluation(engine, make_user, fetch_settings, clock):
    # Yesterday's profit is above target but the roll-over clears it first
    user_id = await make_user(daily_profit=120.0, daily_loss=10.0, reset_date=clock.today)

    stats = await engine.process_trading_loop()

    row = await fetch_settings(user_id)
    assert row['daily_profit'] == 0.0
    assert row['daily_loss'] == 0.0
    assert row['reset_date'] == clock.today + timedelta(days=1)
    assert row['is_bot_active'] is True
    assert stats.resets == 1
    assert stats.disabled == 0


@pytest.mark.asyncio
async def test_reset_not_applied_before_reset_date(engine, make_user, fetch_settings, clock):
    user_id = await make_user(daily_profit=10.0, reset_date=clock.today + timedelta(days=1))
    await engine.process_trading_loop()
    row = await fetch_settings(user_id)
    assert row['daily_profit'] == 10.0
    assert row['reset_date'] == clock.today + timedelta(days=1)


@pytest.mark.asyncio
async def test_target_reached_disables_bot_and_closes_session(engine, make_user, fetch_settings, db):
    user_id = await make_user(daily_profit=40.0, target=50.0)
    await engine.process_trading_loop()
    assert len(await engine.active_sessions()) == 1

    await db.update(user_settings, {'daily_profit': 50.0}, user_settings.c.user_id == user_id)
    stats = await engine.process_trading_loop()

    row = await fetch_settings(user_id)
    assert row['is_bot_active'] is False
    assert stats.disabled == 1
    assert await engine.risk_state(user_id) is RiskState.TARGET_REACHED
    assert await engine.active_sessions() == []


@pytest.mark.asyncio
async def test_stop_loss_reached_disables_bot(engine, make_user, fetch_settings):
    user_id = await make_user(daily_loss=50.0, stop_limit=50.0)
    await engine.process_trading_loop()
    row = await fetch_settings(user_id)
    assert row['is_bot_active'] is False
    assert await engine.risk_state(user_id) is RiskState.STOP_LOSS_REACHED


@pytest.mark.asyncio
async def test_place_trade_opens_trade_on_acknowledgment(engine, make_user, broker, db):
    user_id = await make_user(stake=2.5)
    result = await engine.place_trade(_call(user_id, signal_id=None))

    assert result.placed is True
    assert result.contract_id == "C1"
    assert broker.orders[0]["stake"] == 2.5
    trade = await db.fetch_one(trades, trades.c.id == result.trade_id)
    assert trade['status'] == TradeStatus.OPEN.value
    assert trade['contract_id'] == "C1"
    assert trade['direction'] == "CALL"
    assert trade['pnl'] is None


@pytest.mark.asyncio
async def test_single_open_trade_per_user(engine, make_user, broker, db):
    user_id = await make_user()
    first = await engine.place_trade(_call(user_id))
    second = await engine.place_trade(_call(user_id))

    assert first.placed is True
    assert second.placed is False
    assert second.reason == "trade_already_open"
    assert len(broker.orders) == 1
    assert await db.count(trades, trades.c.user_id == user_id) == 1


@pytest.mark.asyncio
async def test_pending_reservation_blocks_placement(engine, make_user, make_trade, broker):
    user_id = await make_user()
    await make_trade(user_id, status="pending")
    result = await engine.place_trade(_call(user_id))
    assert result.reason == "trade_already_open"
    assert broker.orders == []


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [BrokerTimeout("deadline exceeded"), BrokerError("rejected")])
async def test_broker_failure_leaves_no_trade_and_retries(engine, make_user, broker, db, error):
    user_id = await make_user()
    broker.place_error = error

    result = await engine.place_trade(_call(user_id))
    assert result.placed is False
    assert result.reason == "broker_error"
    assert await db.count(trades) == 0

    broker.place_error = None
    retry = await engine.place_trade(_call(user_id))
    assert retry.placed is True
    assert await db.count(trades) == 1


@pytest.mark.asyncio
async def test_unexpected_broker_exception_releases_reservation(engine, make_user, broker, db):
    user_id = await make_user()
    broker.place_error = RuntimeError("bug")
    with pytest.raises(RuntimeError):
        await engine.place_trade(_call(user_id))
    assert await db.count(trades) == 0


@pytest.mark.asyncio
async def test_inactive_user_is_not_traded(engine, make_user, broker):
    user_id = await make_user(active=False)
    result = await engine.place_trade(_call(user_id))
    assert result.placed is False
    assert result.reason == "bot_inactive"
    assert broker.orders == []


@pytest.mark.asyncio
async def test_unknown_user(engine, broker):
    result = await engine.place_trade(_call(999))
    assert result.reason == "unknown_user"
    assert broker.orders == []


@pytest.mark.asyncio
async def test_trading_loop_without_entry_strategy_places_nothing(engine, make_user, broker):
    await make_user()
    stats = await engine.process_trading_loop()
    assert stats.users == 1
    assert stats.placed == 0
    assert broker.orders == []


@pytest.mark.asyncio
async def test_trading_loop_with_fixed_entry_places_one_order_per_user(db, broker, cfg, clock, make_user):
    engine = TradingEngine(db, broker, entry_strategy=FixedDirectionEntry(Direction.PUT, "R_50"), cfg=cfg, clock=clock)
    await make_user()
    await make_user()

    first = await engine.process_trading_loop()
    second = await engine.process_trading_loop()

    assert first.placed == 2
    assert second.placed == 0
    assert len(broker.orders) == 2
    assert {o["asset"] for o in broker.orders} == {"R_50"}


@pytest.mark.asyncio
async def test_martingale_stake_after_losses(db, broker, cfg, clock, make_user, make_trade):
    engine = TradingEngine(db, broker, stake_strategy=MartingaleStake(2.0, 3), cfg=cfg, clock=clock)
    user_id = await make_user(stake=1.0)
    for status in ("won", "lost", "lost"):
        trade_id = await make_trade(user_id, status=status, contract_id="X")
        clock.advance(seconds=1)
        await db.update(trades, {'closed_at': clock()}, trades.c.id == trade_id)

    result = await engine.place_trade(_call(user_id))
    assert result.stake == 4.0
    assert broker.orders[0]["stake"] == 4.0


@pytest.mark.asyncio
async def test_heartbeat_creates_then_renews_session(engine, make_user, db, clock):
    user_id = await make_user()
    await engine.process_trading_loop()
    sessions = await engine.active_sessions()
    assert len(sessions) == 1
    started = sessions[0]['started_at']

    clock.advance(seconds=60)
    await engine.process_trading_loop()
    sessions = await db.fetch_all(trading_sessions, trading_sessions.c.user_id == user_id)
    assert len(sessions) == 1
    assert sessions[0]['started_at'] == started
    assert sessions[0]['last_heartbeat'] == clock()


@pytest.mark.asyncio
async def test_cleanup_stale_sessions_closes_only_expired(engine, make_user, db, clock):
    stale_user = await make_user()
    live_user = await make_user()
    await db.insert(trading_sessions, user_id=stale_user, started_at=clock() - timedelta(hours=1),
                    last_heartbeat=clock() - timedelta(seconds=301), status="active")
    await db.insert(trading_sessions, user_id=live_user, started_at=clock() - timedelta(hours=1),
                    last_heartbeat=clock() - timedelta(seconds=30), status="active")

    closed = await engine.cleanup_stale_sessions()

    assert closed == 1
    active_ids = [s['user_id'] for s in await engine.active_sessions()]
    assert active_ids == [live_user]
    stale = await db.fetch_one(trading_sessions, trading_sessions.c.user_id == stale_user)
    assert stale['status'] == SessionStatus.CLOSED.value
    assert stale['closed_at'] == clock()


@pytest.mark.asyncio
async def test_health_check_marks_lagging_sessions_and_reports_overdue(engine, make_user, make_trade, db, clock):
    user_id = await make_user()
    await db.insert(trading_sessions, user_id=user_id, started_at=clock() - timedelta(minutes=10),
                    last_heartbeat=clock() - timedelta(seconds=150), status="active")
    await make_trade(user_id, contract_id="C9", opened_at=clock() - timedelta(seconds=1000))

    report = await engine.perform_health_check()

    assert report['status'] == 'degraded'
    assert report['checks']['overdue_trades'] == 1
    assert report['checks']['stale_sessions'] == 1
    session = await db.fetch_one(trading_sessions, trading_sessions.c.user_id == user_id)
    assert session['status'] == SessionStatus.STALE.value

    # A heartbeat brings a lagging session back
    await engine.heartbeat(user_id)
    session = await db.fetch_one(trading_sessions, trading_sessions.c.user_id == user_id)
    assert session['status'] == SessionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_health_check_never_raises(db, cfg, clock):
    class ExplodingBroker:
        async def ping(self):
            raise RuntimeError("socket closed")

    engine = TradingEngine(db, ExplodingBroker(), cfg=cfg, clock=clock)
    report = await engine.perform_health_check()
    assert report['status'] == 'degraded'
    assert report['checks']['broker'].startswith('error')
    assert report['checks']['database'] == 'ok'


@pytest.mark.asyncio
async def test_health_check_healthy(engine):
    report = await engine.perform_health_check()
    assert report == {'status': 'healthy', 'checks': {'broker': 'ok', 'database': 'ok',
                                                      'overdue_trades': 0, 'stale_sessions': 0}}
