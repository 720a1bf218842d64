from __future__ import annotations

from app.core.errors import PolicyDenied

PENDING = "pending"
SCHEDULED = "scheduled"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

ALL_STATUSES = frozenset({PENDING, SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED, NO_SHOW})
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, NO_SHOW})
OPEN_STATUSES = ALL_STATUSES - TERMINAL_STATUSES

# scheduled -> scheduled is the reschedule transition: the old calendar
# event is superseded by a new one, the stored status does not change.
_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({SCHEDULED, CANCELLED}),
    SCHEDULED: frozenset({SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED, NO_SHOW}),
    IN_PROGRESS: frozenset({COMPLETED, NO_SHOW, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    NO_SHOW: frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if can_transition(current, target):
        return
    if is_terminal(current):
        raise PolicyDenied(f"Session is already {current.replace('_', ' ')} and cannot move to {target}")
    raise PolicyDenied(f"Session cannot move from {current} to {target}")
