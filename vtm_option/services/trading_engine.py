"""
Per-user trading loop: daily reset, risk-limit state machine, order placement
and trading-session liveness.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from vtm_option.config import Settings, settings as default_settings
from vtm_option.models.trading_models import (Direction, PlacementResult,
                                              RiskState, SessionStatus,
                                              TradeInstruction, TradeStatus)
from vtm_option.persistence.db import (Database, UnitOfWork, trades,
                                       trading_sessions, user_settings)
from vtm_option.providers.broker_rest import BrokerError, BrokerGateway
from vtm_option.risk.money_management import FlatStake, StakeStrategy
from vtm_option.services.metrics import order_failures_counter, orders_counter
from vtm_option.services.risk_manager import (daily_reset_values,
                                              evaluate_risk_state)
from vtm_option.state.health_events import record_health_event
from vtm_option.utils.time_utils import local_today, utcnow

logger = logging.getLogger("trading_engine")

LIVE_STATUSES = (TradeStatus.PENDING.value, TradeStatus.OPEN.value)
CLOSED_OUTCOMES = (TradeStatus.WON.value, TradeStatus.LOST.value)
LIVE_SESSION_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.STALE.value)


def roll_daily_reset(uow: UnitOfWork, row: Dict, today) -> Dict:
    values = daily_reset_values(row, today)
    if values is None:
        return row
    uow.update(user_settings, values, user_settings.c.id == row['id'])
    logger.info("User %s daily reset: profit=%.2f loss=%.2f next reset %s",
                row['user_id'], row['daily_profit'], row['daily_loss'], values['reset_date'])
    return {**row, **values}


def enforce_risk_limits(uow: UnitOfWork, row: Dict, now: datetime) -> RiskState:
    """Evaluate the state machine and disable the bot on a terminal state."""
    state = evaluate_risk_state(row)
    if state is RiskState.RUNNING or not row['is_bot_active']:
        return state
    uow.update(user_settings, {'is_bot_active': False}, user_settings.c.id == row['id'])
    uow.update(
        trading_sessions,
        {'status': SessionStatus.CLOSED.value, 'closed_at': now},
        trading_sessions.c.user_id == row['user_id'],
        trading_sessions.c.status.in_(LIVE_SESSION_STATUSES),
    )
    row['is_bot_active'] = False
    logger.info("User %s bot disabled: %s (daily_profit=%.2f target=%.2f daily_loss=%.2f stop_limit=%.2f)",
                row['user_id'], state.value, row['daily_profit'], row['target'],
                row['daily_loss'], row['stop_limit'])
    return state


class EntryStrategy:
    """Decides whether the trading loop opens a trade on its own for a RUNNING user."""

    async def next_instruction(self, settings_row: Dict) -> Optional[TradeInstruction]:
        return None


class SignalDrivenEntry(EntryStrategy):
    """Orders come only from the signal pipeline."""


class FixedDirectionEntry(EntryStrategy):
    def __init__(self, direction: Direction, asset: str):
        self.direction = Direction(direction)
        self.asset = asset

    async def next_instruction(self, settings_row: Dict) -> Optional[TradeInstruction]:
        return TradeInstruction(user_id=settings_row['user_id'], direction=self.direction, asset=self.asset)


@dataclass
class TradingLoopStats:
    users: int = 0
    resets: int = 0
    disabled: int = 0
    placed: int = 0
    errors: int = 0


class TradingEngine:
    def __init__(self, db: Database, broker: BrokerGateway,
                 stake_strategy: Optional[StakeStrategy] = None,
                 entry_strategy: Optional[EntryStrategy] = None,
                 cfg: Settings = default_settings,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.broker = broker
        self.stake_strategy = stake_strategy or FlatStake()
        self.entry_strategy = entry_strategy or SignalDrivenEntry()
        self.cfg = cfg
        self._clock = clock

    def _today(self, now: datetime):
        return local_today(now, self.cfg.APP_TIMEZONE)

    async def active_users(self) -> List[Dict]:
        return await self.db.fetch_all(
            user_settings,
            user_settings.c.is_bot_active.is_(True),
            order_by=user_settings.c.user_id,
        )

    async def refresh_risk_state(self, user_id: int) -> Tuple[Optional[Dict], RiskState]:
        """Apply a due daily reset, then the risk state machine, in one transaction."""
        now = self._clock()
        async with self.db.transaction() as uow:
            row = uow.fetch_one(user_settings, user_settings.c.user_id == user_id)
            if row is None:
                return None, RiskState.RUNNING
            if row['is_bot_active']:
                row = roll_daily_reset(uow, row, self._today(now))
            state = enforce_risk_limits(uow, row, now)
        return row, state

    async def risk_state(self, user_id: int) -> RiskState:
        row = await self.db.fetch_one(user_settings, user_settings.c.user_id == user_id)
        if row is None:
            raise LookupError(f"No settings for user {user_id}")
        return evaluate_risk_state(row)

    async def has_live_trade(self, user_id: int) -> bool:
        count = await self.db.count(trades, trades.c.user_id == user_id, trades.c.status.in_(LIVE_STATUSES))
        return count > 0

    async def process_trading_loop(self) -> TradingLoopStats:
        stats = TradingLoopStats()
        rows = await self.active_users()
        stats.users = len(rows)
        for initial in rows:
            user_id = initial['user_id']
            try:
                row, state = await self.refresh_risk_state(user_id)
                if row is None:
                    continue
                if row['reset_date'] != initial['reset_date']:
                    stats.resets += 1
                if state is not RiskState.RUNNING:
                    if initial['is_bot_active'] and not row['is_bot_active']:
                        stats.disabled += 1
                    continue
                if not row['is_bot_active']:
                    continue
                if not await self.has_live_trade(user_id):
                    instruction = await self.entry_strategy.next_instruction(row)
                    if instruction is not None:
                        result = await self.place_trade(instruction)
                        if result.placed:
                            stats.placed += 1
                await self.heartbeat(user_id)
            except Exception:
                stats.errors += 1
                logger.exception("Trading loop failed for user %s", user_id)
        logger.info("Trading loop: %d users, %d resets, %d disabled, %d placed, %d errors",
                    stats.users, stats.resets, stats.disabled, stats.placed, stats.errors)
        return stats

    async def place_trade(self, instruction: TradeInstruction) -> PlacementResult:
        """Place one order for a user if the risk state and the single-open-trade rule allow it.

        A pending row reserves the user's slot before the broker is called; it becomes
        open on acknowledgment and is removed again if the broker call fails.
        """
        user_id = instruction.user_id
        direction = Direction(instruction.direction)
        row, state = await self.refresh_risk_state(user_id)
        if row is None:
            return PlacementResult(False, "unknown_user")
        if not row['is_bot_active']:
            return PlacementResult(False, "bot_inactive" if state is RiskState.RUNNING else state.value.lower())

        recent = []
        if self.stake_strategy.lookback:
            recent = await self.db.fetch_all(
                trades,
                trades.c.user_id == user_id,
                trades.c.status.in_(CLOSED_OUTCOMES + (TradeStatus.ERROR.value,)),
                order_by=(trades.c.closed_at.desc(), trades.c.id.desc()),
                limit=self.stake_strategy.lookback,
            )
        stake = self.stake_strategy.next_stake(row['stake'], recent)
        if stake <= 0:
            logger.warning("User %s computed non-positive stake %.2f; skipping", user_id, stake)
            return PlacementResult(False, "invalid_stake")

        async with self.db.transaction() as uow:
            live = uow.count(trades, trades.c.user_id == user_id, trades.c.status.in_(LIVE_STATUSES))
            if live:
                return PlacementResult(False, "trade_already_open")
            trade_id = uow.insert(
                trades,
                user_id=user_id,
                signal_id=instruction.signal_id,
                asset=instruction.asset,
                stake=stake,
                direction=direction.value,
                status=TradeStatus.PENDING.value,
                opened_at=self._clock(),
            )

        try:
            contract_id = await self.broker.place_order(stake, direction, instruction.asset)
        except BrokerError as e:
            await self._release_reservation(trade_id)
            order_failures_counter.inc()
            logger.warning("Order failed for user %s (%s %s stake=%.2f): %s",
                           user_id, direction.value, instruction.asset, stake, e)
            return PlacementResult(False, "broker_error", stake=stake)
        except Exception:
            await self._release_reservation(trade_id)
            raise

        updated = await self.db.update(
            trades,
            {'status': TradeStatus.OPEN.value, 'contract_id': contract_id, 'opened_at': self._clock()},
            trades.c.id == trade_id,
            trades.c.status == TradeStatus.PENDING.value,
        )
        if not updated:
            # Reservation was already timed out; the broker contract is untracked
            logger.error("Trade %s left pending state before acknowledgment (contract %s)", trade_id, contract_id)
            record_health_event("untracked_contract", "Broker contract acknowledged after reservation expired",
                                trade_id=trade_id, contract_id=contract_id, user_id=user_id)
            return PlacementResult(False, "reservation_expired", trade_id=trade_id, contract_id=contract_id, stake=stake)

        orders_counter.inc()
        logger.info("Order placed user=%s trade=%s contract=%s %s %s stake=%.2f signal=%s",
                    user_id, trade_id, contract_id, direction.value, instruction.asset,
                    stake, instruction.signal_id)
        return PlacementResult(True, "placed", trade_id=trade_id, contract_id=contract_id, stake=stake)

    async def _release_reservation(self, trade_id: int):
        await self.db.delete(trades, trades.c.id == trade_id, trades.c.status == TradeStatus.PENDING.value)

    async def heartbeat(self, user_id: int):
        now = self._clock()
        async with self.db.transaction() as uow:
            session = uow.fetch_one(
                trading_sessions,
                trading_sessions.c.user_id == user_id,
                trading_sessions.c.status.in_(LIVE_SESSION_STATUSES),
                order_by=trading_sessions.c.last_heartbeat.desc(),
            )
            if session is None:
                uow.insert(
                    trading_sessions,
                    user_id=user_id,
                    started_at=now,
                    last_heartbeat=now,
                    status=SessionStatus.ACTIVE.value,
                )
                logger.info("Trading session started for user %s", user_id)
            else:
                uow.update(
                    trading_sessions,
                    {'last_heartbeat': now, 'status': SessionStatus.ACTIVE.value},
                    trading_sessions.c.id == session['id'],
                )

    async def active_sessions(self) -> List[Dict]:
        return await self.db.fetch_all(
            trading_sessions,
            trading_sessions.c.status == SessionStatus.ACTIVE.value,
            order_by=trading_sessions.c.user_id,
        )

    async def cleanup_stale_sessions(self) -> int:
        now = self._clock()
        cutoff = now - timedelta(seconds=self.cfg.stale_session_seconds)
        closed = await self.db.update(
            trading_sessions,
            {'status': SessionStatus.CLOSED.value, 'closed_at': now},
            trading_sessions.c.status.in_(LIVE_SESSION_STATUSES),
            trading_sessions.c.last_heartbeat < cutoff,
        )
        if closed:
            logger.info("Closed %d stale trading sessions (no heartbeat since %s)", closed, cutoff.isoformat())
        return closed

    async def perform_health_check(self) -> Dict:
        """Observe broker/database reachability, overdue trades and lagging sessions.

        Problems are logged and recorded as health events; nothing is raised.
        """
        report = {'status': 'healthy', 'checks': {}}
        checks = report['checks']
        now = self._clock()
        try:
            checks['broker'] = 'ok' if await self.broker.ping() else 'unreachable'
        except Exception as e:
            logger.exception("Broker health probe failed")
            checks['broker'] = f'error: {e}'
        try:
            checks['database'] = 'ok' if await self.db.ping() else 'unreachable'

            overdue_cutoff = now - timedelta(seconds=self.cfg.MAX_OPEN_TRADE_SECONDS)
            overdue = await self.db.fetch_all(
                trades,
                trades.c.status.in_(LIVE_STATUSES),
                trades.c.opened_at < overdue_cutoff,
            )
            checks['overdue_trades'] = len(overdue)
            for trade in overdue:
                logger.warning("Trade %s for user %s %s since %s exceeds max open duration",
                               trade['id'], trade['user_id'], trade['status'], trade['opened_at'])

            lag_cutoff = now - timedelta(seconds=2 * self.cfg.TRADING_LOOP_INTERVAL)
            lagging = await self.db.update(
                trading_sessions,
                {'status': SessionStatus.STALE.value},
                trading_sessions.c.status == SessionStatus.ACTIVE.value,
                trading_sessions.c.last_heartbeat < lag_cutoff,
            )
            checks['stale_sessions'] = lagging
        except Exception as e:
            logger.exception("Health check failed")
            checks['error'] = str(e)

        problems = {k: v for k, v in checks.items() if v not in ('ok', 0)}
        if problems:
            report['status'] = 'degraded'
            logger.warning("Health check degraded: %s", problems)
            record_health_event("health_check", "degraded", **problems)
        return report
