from typing import Dict, Sequence

from vtm_option.models.trading_models import TradeStatus


class StakeStrategy:
    """Sizes the next order from the user's base stake and recent closed trades (newest first)."""

    lookback: int = 0

    def next_stake(self, base_stake: float, recent_trades: Sequence[Dict]) -> float:
        raise NotImplementedError


class FlatStake(StakeStrategy):
    def next_stake(self, base_stake: float, recent_trades: Sequence[Dict]) -> float:
        return round(float(base_stake), 2)


class MartingaleStake(StakeStrategy):
    """Multiply the stake after each consecutive loss, back to base after a win.

    Escalation is capped at max_steps consecutive losses. Trades closed as
    error carry no outcome and are skipped when counting the streak.
    """

    def __init__(self, multiplier: float = 2.0, max_steps: int = 3):
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if max_steps < 0:
            raise ValueError("max_steps must be >= 0")
        self.multiplier = multiplier
        self.max_steps = max_steps
        self.lookback = max_steps + 10

    def losing_streak(self, recent_trades: Sequence[Dict]) -> int:
        streak = 0
        for trade in recent_trades:
            status = trade.get('status')
            if status == TradeStatus.LOST.value:
                streak += 1
            elif status == TradeStatus.WON.value:
                break
        return streak

    def next_stake(self, base_stake: float, recent_trades: Sequence[Dict]) -> float:
        steps = min(self.losing_streak(recent_trades), self.max_steps)
        return round(float(base_stake) * (self.multiplier ** steps), 2)


def build_stake_strategy(cfg) -> StakeStrategy:
    if cfg.MONEY_MANAGEMENT == 'martingale':
        return MartingaleStake(cfg.MARTINGALE_MULTIPLIER, cfg.MARTINGALE_MAX_STEPS)
    return FlatStake()
