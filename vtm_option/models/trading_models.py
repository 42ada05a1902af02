"""
Domain types shared by the trading engine, signal pipeline and contract monitor.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class TradeStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    ERROR = "error"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    CLOSED = "closed"


class RiskState(str, Enum):
    RUNNING = "RUNNING"
    TARGET_REACHED = "TARGET_REACHED"
    STOP_LOSS_REACHED = "STOP_LOSS_REACHED"


class Direction(str, Enum):
    CALL = "CALL"
    PUT = "PUT"


_DIRECTION_ALIASES = {
    "CALL": Direction.CALL,
    "BUY": Direction.CALL,
    "RISE": Direction.CALL,
    "UP": Direction.CALL,
    "PUT": Direction.PUT,
    "SELL": Direction.PUT,
    "FALL": Direction.PUT,
    "DOWN": Direction.PUT,
}


def parse_direction(value) -> Direction:
    if isinstance(value, Direction):
        return value
    key = str(value or "").strip().upper()
    if key not in _DIRECTION_ALIASES:
        raise ValueError(f"unknown direction {value!r}")
    return _DIRECTION_ALIASES[key]


class SignalPayload(BaseModel):
    """Raw signal body as written by the ingestion path."""
    direction: Direction = Field(..., description="CALL/PUT or an alias (BUY, SELL, RISE, FALL, UP, DOWN)")
    asset: Optional[str] = Field(None, min_length=1, description="Underlying symbol; defaults to the configured asset")
    user_id: Optional[int] = Field(None, ge=1, description="Target user; omitted means every active user")

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, v):
        return parse_direction(v)


@dataclass
class TradeInstruction:
    user_id: int
    direction: Direction
    asset: str
    signal_id: Optional[int] = None


@dataclass
class PlacementResult:
    placed: bool
    reason: str
    trade_id: Optional[int] = None
    contract_id: Optional[str] = None
    stake: Optional[float] = None


@dataclass
class ContractResult:
    """Broker view of a contract. status is pending, won or lost."""
    status: str
    payout: float = 0.0

    @property
    def is_settled(self) -> bool:
        return self.status in (TradeStatus.WON.value, TradeStatus.LOST.value)
