"""Capture and expose health observations made by the scheduled jobs."""
from collections import deque
from typing import Deque, Dict, List

from vtm_option.utils.time_utils import utcnow

_MAX_EVENTS = 500
_health_events: Deque[Dict] = deque(maxlen=_MAX_EVENTS)


def record_health_event(kind: str, message: str, **extra):
    _health_events.append({
        "ts": utcnow().isoformat(),
        "kind": kind,
        "message": message,
        **extra,
    })


def get_health_events(limit: int = 100) -> List[Dict]:
    return list(_health_events)[-limit:]


def clear_health_events():
    _health_events.clear()

__all__ = ["record_health_event", "get_health_events", "clear_health_events"]
