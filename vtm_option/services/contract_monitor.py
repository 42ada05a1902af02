"""
Contract monitor: settle open trades and book their pnl into the owner's daily accumulators.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict

from vtm_option.config import Settings, settings as default_settings
from vtm_option.models.trading_models import ContractResult, TradeStatus
from vtm_option.persistence.db import Database, trades, user_settings
from vtm_option.providers.broker_rest import BrokerError, BrokerGateway
from vtm_option.services.metrics import settlements_counter
from vtm_option.services.risk_manager import accumulate, realized_pnl
from vtm_option.services.trading_engine import (enforce_risk_limits,
                                                roll_daily_reset)
from vtm_option.state.health_events import record_health_event
from vtm_option.utils.time_utils import local_today, utcnow

logger = logging.getLogger("contract_monitor")


@dataclass
class MonitorStats:
    checked: int = 0
    won: int = 0
    lost: int = 0
    expired: int = 0
    pending: int = 0
    errors: int = 0


class ContractMonitor:
    def __init__(self, db: Database, broker: BrokerGateway,
                 cfg: Settings = default_settings,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.broker = broker
        self.cfg = cfg
        self._clock = clock

    def _is_expired(self, trade: Dict, now: datetime) -> bool:
        return now - trade['opened_at'] > timedelta(seconds=self.cfg.MAX_OPEN_TRADE_SECONDS)

    async def process_contract_results(self) -> MonitorStats:
        stats = MonitorStats()
        now = self._clock()

        # Reservations orphaned by a crash between reserve and acknowledgment
        orphans = await self.db.fetch_all(
            trades,
            trades.c.status == TradeStatus.PENDING.value,
            order_by=trades.c.opened_at,
        )
        for trade in orphans:
            if self._is_expired(trade, now) and await self.expire_trade(trade, TradeStatus.PENDING):
                stats.expired += 1

        open_trades = await self.db.fetch_all(
            trades,
            trades.c.status == TradeStatus.OPEN.value,
            order_by=trades.c.opened_at,
        )
        for trade in open_trades:
            stats.checked += 1
            try:
                await self._check_trade(trade, stats)
            except Exception:
                stats.errors += 1
                logger.exception("Contract monitor failed for trade %s (contract %s)",
                                 trade['id'], trade['contract_id'])

        if stats.checked or stats.expired:
            logger.info("Contract monitor: %d checked, %d won, %d lost, %d expired, %d pending, %d errors",
                        stats.checked, stats.won, stats.lost, stats.expired, stats.pending, stats.errors)
        return stats

    async def _check_trade(self, trade: Dict, stats: MonitorStats):
        result = None
        try:
            result = await self.broker.get_contract_status(trade['contract_id'])
        except BrokerError as e:
            stats.errors += 1
            logger.warning("Contract status failed for trade %s (contract %s): %s",
                           trade['id'], trade['contract_id'], e)
        except Exception:
            stats.errors += 1
            logger.exception("Contract status lookup crashed for trade %s (contract %s)",
                             trade['id'], trade['contract_id'])

        if result is not None and result.is_settled:
            if await self.settle_trade(trade, result):
                if result.status == TradeStatus.WON.value:
                    stats.won += 1
                else:
                    stats.lost += 1
            return

        if self._is_expired(trade, self._clock()):
            if await self.expire_trade(trade, TradeStatus.OPEN):
                stats.expired += 1
        else:
            stats.pending += 1

    async def settle_trade(self, trade: Dict, result: ContractResult) -> bool:
        """Close the trade and book its pnl atomically.

        Returns False when the trade had already left the open state, in which
        case the accumulators are left untouched.
        """
        now = self._clock()
        pnl = realized_pnl(result.status, trade['stake'], result.payout)
        async with self.db.transaction() as uow:
            updated = uow.update(
                trades,
                {'status': result.status, 'closed_at': now, 'pnl': pnl},
                trades.c.id == trade['id'],
                trades.c.status == TradeStatus.OPEN.value,
            )
            if not updated:
                logger.info("Trade %s already closed; skipping", trade['id'])
                return False
            row = uow.fetch_one(user_settings, user_settings.c.user_id == trade['user_id'])
            if row is not None:
                row = roll_daily_reset(uow, row, local_today(now, self.cfg.APP_TIMEZONE))
                values = accumulate(row, pnl)
                uow.update(user_settings, values, user_settings.c.id == row['id'])
                row = {**row, **values}
                enforce_risk_limits(uow, row, now)
            else:
                logger.warning("Trade %s settled for user %s without settings row", trade['id'], trade['user_id'])
        settlements_counter.labels(result=result.status).inc()
        logger.info("Trade %s %s user=%s contract=%s stake=%.2f payout=%.2f pnl=%.2f",
                    trade['id'], result.status, trade['user_id'], trade['contract_id'],
                    trade['stake'], result.payout, pnl)
        return True

    async def expire_trade(self, trade: Dict, expected: TradeStatus) -> bool:
        now = self._clock()
        updated = await self.db.update(
            trades,
            {'status': TradeStatus.ERROR.value, 'closed_at': now, 'pnl': 0.0},
            trades.c.id == trade['id'],
            trades.c.status == expected.value,
        )
        if updated:
            settlements_counter.labels(result=TradeStatus.ERROR.value).inc()
            logger.warning("Trade %s for user %s forced to error after exceeding %ss %s",
                           trade['id'], trade['user_id'], self.cfg.MAX_OPEN_TRADE_SECONDS, expected.value)
            record_health_event("trade_timeout", "Trade exceeded max open duration",
                                trade_id=trade['id'], user_id=trade['user_id'], contract_id=trade['contract_id'])
        return bool(updated)
