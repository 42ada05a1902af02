from datetime import date, timedelta
from typing import Dict, Optional

from vtm_option.models.trading_models import RiskState


def evaluate_risk_state(row: Dict) -> RiskState:
    """Classify a settings row. Target is checked first when both limits are hit."""
    if float(row['daily_profit']) >= float(row['target']):
        return RiskState.TARGET_REACHED
    if float(row['daily_loss']) >= float(row['stop_limit']):
        return RiskState.STOP_LOSS_REACHED
    return RiskState.RUNNING


def daily_reset_values(row: Dict, today: date) -> Optional[Dict]:
    """Column updates for the daily roll-over, or None when reset_date is still ahead."""
    reset_date = row['reset_date']
    if reset_date is None or today >= reset_date:
        return {
            'daily_profit': 0.0,
            'daily_loss': 0.0,
            'reset_date': today + timedelta(days=1),
        }
    return None


def realized_pnl(status: str, stake: float, payout: float) -> float:
    if status == 'won':
        return round(float(payout) - float(stake), 2)
    return round(-float(stake), 2)


def accumulate(row: Dict, pnl: float) -> Dict:
    """Accumulator columns after booking pnl. Losses are stored as a positive magnitude."""
    if pnl >= 0:
        return {'daily_profit': round(float(row['daily_profit']) + pnl, 2)}
    return {'daily_loss': round(float(row['daily_loss']) + abs(pnl), 2)}
