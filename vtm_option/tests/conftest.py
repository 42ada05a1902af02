from datetime import timedelta
from itertools import count

import pytest

from vtm_option.config import Settings
from vtm_option.models.trading_models import ContractResult
from vtm_option.persistence.db import (Database, signals, trades, user_settings,
                                       users)
from vtm_option.providers.broker_rest import BrokerGateway
from vtm_option.services.trading_engine import TradingEngine
from vtm_option.utils.time_utils import utcnow

_emails = count(1)


class FakeClock:
    def __init__(self, now=None):
        self.now = now or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    @property
    def today(self):
        return self.now.date()


class FakeBroker(BrokerGateway):
    """Scripted gateway: contract ids C1, C2, ... and settable statuses."""

    def __init__(self):
        self.orders = []
        self.statuses = {}
        self.place_error = None
        self.status_errors = {}
        self.reachable = True

    async def place_order(self, stake, direction, asset):
        if self.place_error is not None:
            raise self.place_error
        contract_id = f"C{len(self.orders) + 1}"
        self.orders.append({"stake": stake, "direction": direction, "asset": asset, "contract_id": contract_id})
        return contract_id

    async def get_contract_status(self, contract_id):
        if contract_id in self.status_errors:
            raise self.status_errors[contract_id]
        return self.statuses.get(contract_id, ContractResult(status="pending"))

    async def ping(self):
        return self.reachable


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        APP_TIMEZONE="UTC",
        SCHEDULER_TICK_SECONDS=10,
        STALE_SESSION_TICK_MULTIPLE=30,
        TRADING_LOOP_INTERVAL=60,
        MAX_OPEN_TRADE_SECONDS=900,
        SIGNAL_BATCH_SIZE=10,
        SIGNAL_RETENTION_DAYS=30,
        DEFAULT_ASSET="R_100",
        MONEY_MANAGEMENT="flat",
        BROKER_MODE="paper",
    )


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'vtm_test.db'}")
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def engine(db, broker, cfg, clock):
    return TradingEngine(db, broker, cfg=cfg, clock=clock)


@pytest.fixture
def make_user(db, clock):
    async def _make(stake=1.0, target=100.0, stop_limit=50.0, active=True,
                    daily_profit=0.0, daily_loss=0.0, reset_date=None):
        user_id = await db.insert(users, email=f"user{next(_emails)}@example.com", created_at=clock())
        await db.insert(
            user_settings,
            user_id=user_id,
            stake=stake,
            target=target,
            stop_limit=stop_limit,
            is_bot_active=active,
            daily_profit=daily_profit,
            daily_loss=daily_loss,
            reset_date=reset_date or clock.today + timedelta(days=1),
        )
        return user_id
    return _make


@pytest.fixture
def make_trade(db, clock):
    async def _make(user_id, status="open", contract_id=None, stake=1.0, opened_at=None,
                    direction="CALL", asset="R_100", signal_id=None):
        return await db.insert(
            trades,
            user_id=user_id,
            signal_id=signal_id,
            contract_id=contract_id,
            asset=asset,
            stake=stake,
            direction=direction,
            status=status,
            opened_at=opened_at or clock(),
        )
    return _make


@pytest.fixture
def make_signal(db, clock):
    async def _make(payload=None, created_at=None, processed_at=None):
        return await db.insert(
            signals,
            payload=payload if payload is not None else {"direction": "CALL"},
            created_at=created_at or clock(),
            processed_at=processed_at,
        )
    return _make


@pytest.fixture
def fetch_settings(db):
    async def _fetch(user_id):
        return await db.fetch_one(user_settings, user_settings.c.user_id == user_id)
    return _fetch
