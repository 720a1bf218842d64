"""Reschedule policy: decides whether a session may move to a new time.

Kept free of I/O so the orchestrator, the API and the tests can all call it
with plain objects. Rules are evaluated in a fixed order and the first
failing rule decides the reason returned to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from app.services.session_states import SCHEDULED


class _EnrollmentQuota(Protocol):
    max_reschedules: int
    reschedules_used: int


class _SessionSlot(Protocol):
    status: str
    starts_at: datetime | None


@dataclass(frozen=True, slots=True)
class Allow:
    remaining: int

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Deny:
    reason: str
    code: str

    @property
    def allowed(self) -> bool:
        return False


def remaining_reschedules(enrollment: _EnrollmentQuota) -> int:
    return max(int(enrollment.max_reschedules or 0) - int(enrollment.reschedules_used or 0), 0)


def evaluate(
    enrollment: _EnrollmentQuota,
    session: _SessionSlot,
    requested_at: datetime,
    now: datetime,
    *,
    enforce_quota: bool = True,
) -> Allow | Deny:
    if session.status != SCHEDULED:
        return Deny(
            reason=f"Only scheduled sessions can be rescheduled (session is {session.status.replace('_', ' ')})",
            code="session_not_scheduled",
        )

    if session.starts_at is None or session.starts_at <= now:
        return Deny(reason="Cannot reschedule a session that has already started or passed", code="session_in_past")

    if requested_at <= now:
        return Deny(reason="The new time must be in the future", code="requested_time_in_past")

    remaining = remaining_reschedules(enrollment)
    if enforce_quota:
        if enrollment.reschedules_used >= enrollment.max_reschedules:
            return Deny(
                reason=(
                    f"Reschedule limit reached: {enrollment.reschedules_used} of "
                    f"{enrollment.max_reschedules} reschedules used for this enrollment"
                ),
                code="quota_exhausted",
            )
        remaining -= 1

    return Allow(remaining=remaining)
