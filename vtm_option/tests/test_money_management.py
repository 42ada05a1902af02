import pytest

from vtm_option.config import Settings
from vtm_option.risk.money_management import (FlatStake, MartingaleStake,
                                              build_stake_strategy)


def _history(*statuses):
    """Closed trades, newest first."""
    return [{'status': s} for s in statuses]


def test_flat_stake_ignores_history():
    assert FlatStake().next_stake(1.234, _history("lost", "lost")) == 1.23


@pytest.mark.parametrize("history,expected", [
    ((), 1.0),
    (("won", "lost", "lost"), 1.0),
    (("lost",), 2.0),
    (("lost", "lost", "won", "lost"), 4.0),
    (("lost", "error", "lost"), 4.0),
    (("lost",) * 6, 8.0),
])
def test_martingale_escalates_until_cap(history, expected):
    assert MartingaleStake(2.0, 3).next_stake(1.0, _history(*history)) == expected


def test_martingale_lookback_covers_cap():
    assert MartingaleStake(1.5, 4).lookback >= 4


@pytest.mark.parametrize("multiplier,max_steps", [(0.5, 3), (2.0, -1)])
def test_martingale_rejects_bad_parameters(multiplier, max_steps):
    with pytest.raises(ValueError):
        MartingaleStake(multiplier, max_steps)


def test_build_stake_strategy_from_settings():
    flat = Settings(_env_file=None, MONEY_MANAGEMENT="flat")
    martingale = Settings(_env_file=None, MONEY_MANAGEMENT="Martingale", MARTINGALE_MULTIPLIER=3.0,
                          MARTINGALE_MAX_STEPS=2)

    assert isinstance(build_stake_strategy(flat), FlatStake)
    strategy = build_stake_strategy(martingale)
    assert isinstance(strategy, MartingaleStake)
    assert strategy.next_stake(1.0, _history("lost", "lost", "lost")) == 9.0
