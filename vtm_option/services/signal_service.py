"""
Signal pipeline: drain queued raw signals into trade instructions.

Each signal is claimed (processed_at set) before anything else happens, so a
signal is handled at most once whatever the translation or placement outcome.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List

from pydantic import ValidationError

from vtm_option.config import Settings, settings as default_settings
from vtm_option.models.trading_models import SignalPayload, TradeInstruction
from vtm_option.persistence.db import Database, signals, user_settings
from vtm_option.services.metrics import signals_counter, signals_rejected_counter
from vtm_option.services.trading_engine import TradingEngine
from vtm_option.utils.time_utils import utcnow

logger = logging.getLogger("signal_pipeline")


@dataclass
class SignalBatchStats:
    processed: int = 0
    rejected: int = 0
    placed: int = 0
    skipped: int = 0
    outcomes: Dict[int, List[str]] = field(default_factory=dict)


class SignalPipeline:
    def __init__(self, db: Database, engine: TradingEngine,
                 cfg: Settings = default_settings,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.engine = engine
        self.cfg = cfg
        self._clock = clock

    def translate_signal(self, signal_row: Dict, active_user_ids: List[int]) -> List[TradeInstruction]:
        """Map a signal row to one instruction per target user.

        Raises pydantic.ValidationError for malformed payloads.
        """
        payload = SignalPayload.model_validate(signal_row['payload'] or {})
        asset = payload.asset or self.cfg.DEFAULT_ASSET
        targets = [payload.user_id] if payload.user_id is not None else active_user_ids
        return [
            TradeInstruction(user_id=user_id, direction=payload.direction, asset=asset, signal_id=signal_row['id'])
            for user_id in targets
        ]

    async def _claim(self, signal_id: int) -> bool:
        claimed = await self.db.update(
            signals,
            {'processed_at': self._clock()},
            signals.c.id == signal_id,
            signals.c.processed_at.is_(None),
        )
        return claimed == 1

    async def process_unprocessed_signals(self, batch_size: int) -> SignalBatchStats:
        stats = SignalBatchStats()
        if batch_size <= 0:
            return stats
        queued = await self.db.fetch_all(
            signals,
            signals.c.processed_at.is_(None),
            order_by=(signals.c.created_at.asc(), signals.c.id.asc()),
            limit=batch_size,
        )
        if not queued:
            return stats

        active_rows = await self.db.fetch_all(
            user_settings,
            user_settings.c.is_bot_active.is_(True),
            order_by=user_settings.c.user_id,
        )
        active_user_ids = [r['user_id'] for r in active_rows]

        for signal_row in queued:
            signal_id = signal_row['id']
            if not await self._claim(signal_id):
                logger.debug("Signal %s already claimed", signal_id)
                continue
            stats.processed += 1
            signals_counter.inc()
            try:
                instructions = self.translate_signal(signal_row, active_user_ids)
            except ValidationError as e:
                stats.rejected += 1
                signals_rejected_counter.inc()
                stats.outcomes[signal_id] = ["invalid_payload"]
                logger.warning("Signal %s quarantined, payload %r invalid: %s",
                               signal_id, signal_row['payload'], e.errors())
                continue

            outcomes = []
            for instruction in instructions:
                try:
                    result = await self.engine.place_trade(instruction)
                except Exception:
                    logger.exception("Placement failed for signal %s user %s", signal_id, instruction.user_id)
                    outcomes.append("error")
                    stats.skipped += 1
                    continue
                outcomes.append(result.reason)
                if result.placed:
                    stats.placed += 1
                else:
                    stats.skipped += 1
            stats.outcomes[signal_id] = outcomes or ["no_active_users"]
            logger.info("Signal %s processed: %s", signal_id, ", ".join(stats.outcomes[signal_id]))

        if stats.processed:
            logger.info("Signal processor: Processed %d signals (%d rejected, %d orders placed)",
                        stats.processed, stats.rejected, stats.placed)
        return stats

    async def cleanup_old_signals(self, max_age_days: int) -> int:
        cutoff = self._clock() - timedelta(days=max_age_days)
        deleted = await self.db.delete(signals, signals.c.created_at < cutoff)
        if deleted:
            logger.info("Signal processor: Cleaned up %d old signals", deleted)
        return deleted

    async def pending_count(self) -> int:
        return await self.db.count(signals, signals.c.processed_at.is_(None))
