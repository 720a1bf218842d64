"""Storage interfaces consumed by the scheduling services.

Services receive a ``Repositories`` bundle instead of opening database
sessions themselves; production wires in ``sql_repositories(db)`` and the test
suite wires in in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from app.models.scheduling import (
    ActivityLog,
    Booking,
    Coach,
    Enrollment,
    Learner,
    PaymentRecord,
    ScheduledSession,
    SchedulingQueueItem,
    SessionChangeRequest,
)


@dataclass(slots=True)
class QueueFilters:
    status: str | None = None
    enrollment_id: int | None = None
    coach_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 50
    offset: int = 0


class SessionRepository(Protocol):
    async def get(self, session_id: int) -> ScheduledSession | None: ...

    async def list_for_enrollment(self, enrollment_id: int) -> list[ScheduledSession]: ...

    async def create(self, **fields: Any) -> ScheduledSession: ...

    async def update(self, session: ScheduledSession, **fields: Any) -> ScheduledSession: ...

    async def upcoming_without_bot(self, start: datetime, end: datetime, *, limit: int = 50) -> list[ScheduledSession]: ...

    async def find_overlapping(
        self,
        coach_id: int,
        start: datetime,
        end: datetime,
        *,
        exclude_session_id: int | None = None,
    ) -> ScheduledSession | None:
        """First scheduled or in-progress session of the coach that overlaps ``[start, end)``."""
        ...

    async def add_change_request(self, **fields: Any) -> SessionChangeRequest: ...

    async def finish_change_request(
        self,
        request: SessionChangeRequest,
        *,
        status: str,
        detail: str | None,
        processed_at: datetime,
    ) -> SessionChangeRequest: ...


class EnrollmentRepository(Protocol):
    async def get(self, enrollment_id: int) -> Enrollment | None: ...

    async def get_by_payment_id(self, payment_id: str) -> Enrollment | None: ...

    async def get_active_for_learner(self, learner_id: int) -> Enrollment | None: ...

    async def create(self, **fields: Any) -> Enrollment:
        """Raises ``DuplicateEnrollment`` when the learner already has an active enrollment."""
        ...

    async def update(self, enrollment: Enrollment, **fields: Any) -> Enrollment: ...

    async def reschedule_with_quota(
        self,
        enrollment: Enrollment,
        *,
        expected_used: int,
        consume_quota: bool,
        session: ScheduledSession,
        session_fields: dict[str, Any],
    ) -> bool:
        """Commit the new session fields and the quota increment together.

        Returns False, writing nothing, when ``reschedules_used`` no longer
        equals ``expected_used`` or the quota is already exhausted.
        """
        ...

    async def increment_completed(self, enrollment_id: int) -> Enrollment: ...

    async def record_no_show(self, enrollment_id: int) -> Enrollment: ...


class QueueRepository(Protocol):
    async def add(self, **fields: Any) -> SchedulingQueueItem: ...

    async def get(self, queue_id: int) -> SchedulingQueueItem | None: ...

    async def find_open_for_session(self, session_id: int) -> SchedulingQueueItem | None: ...

    async def update(self, item: SchedulingQueueItem, **fields: Any) -> SchedulingQueueItem: ...

    async def list(self, filters: QueueFilters) -> tuple[list[SchedulingQueueItem], int]: ...

    async def stats(self) -> dict[str, int]: ...


class PaymentRepository(Protocol):
    async def recorded_gateway_ids(self, since: datetime) -> set[str]: ...

    async def get_by_gateway_id(self, gateway_payment_id: str) -> PaymentRecord | None: ...

    async def create(self, **fields: Any) -> PaymentRecord:
        """Idempotent on ``gateway_payment_id``: returns the existing row if present."""
        ...

    async def update(self, payment: PaymentRecord, **fields: Any) -> PaymentRecord: ...


class BookingRepository(Protocol):
    async def get_by_order_id(self, gateway_order_id: str) -> Booking | None: ...

    async def update(self, booking: Booking, **fields: Any) -> Booking: ...


class CoachRepository(Protocol):
    async def get(self, coach_id: int) -> Coach | None: ...

    async def least_loaded_active(self) -> Coach | None: ...

    async def add_student(self, coach_id: int) -> None: ...


class LearnerRepository(Protocol):
    async def get(self, learner_id: int) -> Learner | None: ...


class AuditRepository(Protocol):
    async def log(self, action: str, details: dict[str, Any], *, actor: str = "system") -> ActivityLog: ...


@dataclass(slots=True)
class Repositories:
    sessions: SessionRepository
    enrollments: EnrollmentRepository
    queue: QueueRepository
    payments: PaymentRepository
    bookings: BookingRepository
    coaches: CoachRepository
    learners: LearnerRepository
    audit: AuditRepository
