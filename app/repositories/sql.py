from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateEnrollment, NotFound
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
from app.repositories.base import QueueFilters, Repositories

# Statuses that hold a coach's time slot.
BOOKED = ("scheduled", "in_progress")
# Upper bound on a session's length, used to narrow the overlap query.
MAX_SESSION_MINUTES = 240


def _apply(row: Any, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(row, key, value)


class SqlSessionRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, session_id: int) -> ScheduledSession | None:
        return (
            await self.db.execute(select(ScheduledSession).where(ScheduledSession.id == session_id))
        ).scalar_one_or_none()

    async def list_for_enrollment(self, enrollment_id: int) -> list[ScheduledSession]:
        rows = (
            await self.db.execute(
                select(ScheduledSession)
                .where(ScheduledSession.enrollment_id == enrollment_id)
                .order_by(ScheduledSession.sequence_number.asc())
            )
        ).scalars().all()
        return list(rows)

    async def create(self, **fields: Any) -> ScheduledSession:
        row = ScheduledSession(**fields)
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        return row

    async def update(self, session: ScheduledSession, **fields: Any) -> ScheduledSession:
        _apply(session, fields)
        await self.db.commit()
        return session

    async def upcoming_without_bot(self, start: datetime, end: datetime, *, limit: int = 50) -> list[ScheduledSession]:
        rows = (
            await self.db.execute(
                select(ScheduledSession)
                .where(
                    and_(
                        ScheduledSession.status == "scheduled",
                        ScheduledSession.meeting_url.is_not(None),
                        ScheduledSession.recording_bot_id.is_(None),
                        ScheduledSession.starts_at >= start,
                        ScheduledSession.starts_at <= end,
                    )
                )
                .order_by(ScheduledSession.starts_at.asc())
                .limit(limit)
            )
        ).scalars().all()
        return list(rows)

    async def find_overlapping(
        self,
        coach_id: int,
        start: datetime,
        end: datetime,
        *,
        exclude_session_id: int | None = None,
    ) -> ScheduledSession | None:
        conditions = [
            ScheduledSession.coach_id == coach_id,
            ScheduledSession.status.in_(BOOKED),
            ScheduledSession.starts_at.is_not(None),
            ScheduledSession.starts_at < end,
            ScheduledSession.starts_at > start - timedelta(minutes=MAX_SESSION_MINUTES),
        ]
        if exclude_session_id is not None:
            conditions.append(ScheduledSession.id != exclude_session_id)
        rows = (
            await self.db.execute(
                select(ScheduledSession).where(and_(*conditions)).order_by(ScheduledSession.starts_at.asc())
            )
        ).scalars().all()
        for row in rows:
            if row.starts_at + timedelta(minutes=row.duration_minutes) > start:
                return row
        return None

    async def add_change_request(self, **fields: Any) -> SessionChangeRequest:
        row = SessionChangeRequest(**fields)
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        return row

    async def finish_change_request(
        self,
        request: SessionChangeRequest,
        *,
        status: str,
        detail: str | None,
        processed_at: datetime,
    ) -> SessionChangeRequest:
        # A lost reschedule race rolls the session back, which expires the request.
        if inspect(request).expired_attributes:
            await self.db.refresh(request)
        if request.processed_at is not None:
            return request
        request.status = status
        request.detail = detail
        request.processed_at = processed_at
        await self.db.commit()
        return request


class SqlEnrollmentRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, enrollment_id: int) -> Enrollment | None:
        return (await self.db.execute(select(Enrollment).where(Enrollment.id == enrollment_id))).scalar_one_or_none()

    async def get_by_payment_id(self, payment_id: str) -> Enrollment | None:
        return (
            await self.db.execute(select(Enrollment).where(Enrollment.payment_id == payment_id).limit(1))
        ).scalar_one_or_none()

    async def get_active_for_learner(self, learner_id: int) -> Enrollment | None:
        return (
            await self.db.execute(
                select(Enrollment).where(and_(Enrollment.learner_id == learner_id, Enrollment.status == "active"))
            )
        ).scalar_one_or_none()

    async def create(self, **fields: Any) -> Enrollment:
        row = Enrollment(**fields)
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicateEnrollment(
                f"Learner {fields.get('learner_id')} already has an active enrollment"
            ) from exc
        await self.db.refresh(row)
        return row

    async def update(self, enrollment: Enrollment, **fields: Any) -> Enrollment:
        _apply(enrollment, fields)
        await self.db.commit()
        return enrollment

    async def reschedule_with_quota(
        self,
        enrollment: Enrollment,
        *,
        expected_used: int,
        consume_quota: bool,
        session: ScheduledSession,
        session_fields: dict[str, Any],
    ) -> bool:
        if consume_quota:
            result = await self.db.execute(
                update(Enrollment)
                .where(
                    and_(
                        Enrollment.id == enrollment.id,
                        Enrollment.reschedules_used == expected_used,
                        Enrollment.reschedules_used < Enrollment.max_reschedules,
                    )
                )
                .values(reschedules_used=expected_used + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                await self.db.refresh(enrollment)
                await self.db.refresh(session)
                return False

        _apply(session, session_fields)
        await self.db.commit()
        await self.db.refresh(enrollment)
        return True

    async def _increment(self, enrollment_id: int, **values: Any) -> Enrollment:
        await self.db.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        row = await self.get(enrollment_id)
        if row is None:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        await self.db.refresh(row)
        return row

    async def increment_completed(self, enrollment_id: int) -> Enrollment:
        return await self._increment(
            enrollment_id,
            sessions_completed=Enrollment.sessions_completed + 1,
            consecutive_no_shows=0,
        )

    async def record_no_show(self, enrollment_id: int) -> Enrollment:
        return await self._increment(
            enrollment_id,
            consecutive_no_shows=Enrollment.consecutive_no_shows + 1,
            total_no_shows=Enrollment.total_no_shows + 1,
        )


class SqlQueueRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, **fields: Any) -> SchedulingQueueItem:
        row = SchedulingQueueItem(**fields)
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        return row

    async def get(self, queue_id: int) -> SchedulingQueueItem | None:
        return (
            await self.db.execute(select(SchedulingQueueItem).where(SchedulingQueueItem.id == queue_id))
        ).scalar_one_or_none()

    async def find_open_for_session(self, session_id: int) -> SchedulingQueueItem | None:
        return (
            await self.db.execute(
                select(SchedulingQueueItem)
                .where(
                    and_(
                        SchedulingQueueItem.session_id == session_id,
                        SchedulingQueueItem.status.in_(["pending", "in_progress"]),
                    )
                )
                .order_by(SchedulingQueueItem.created_at.asc())
                .limit(1)
            )
        ).scalar_one_or_none()

    async def update(self, item: SchedulingQueueItem, **fields: Any) -> SchedulingQueueItem:
        _apply(item, fields)
        await self.db.commit()
        return item

    async def list(self, filters: QueueFilters) -> tuple[list[SchedulingQueueItem], int]:
        conditions = []
        if filters.status:
            conditions.append(SchedulingQueueItem.status == filters.status)
        if filters.enrollment_id is not None:
            conditions.append(SchedulingQueueItem.enrollment_id == filters.enrollment_id)
        if filters.coach_id is not None:
            conditions.append(SchedulingQueueItem.coach_id == filters.coach_id)
        if filters.date_from is not None:
            conditions.append(SchedulingQueueItem.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(SchedulingQueueItem.created_at <= filters.date_to)

        where = and_(*conditions) if conditions else None
        stmt = select(SchedulingQueueItem)
        count_stmt = select(func.count(SchedulingQueueItem.id))
        if where is not None:
            stmt = stmt.where(where)
            count_stmt = count_stmt.where(where)

        total = int((await self.db.execute(count_stmt)).scalar_one() or 0)
        rows = (
            await self.db.execute(
                stmt.order_by(SchedulingQueueItem.created_at.desc()).offset(filters.offset).limit(filters.limit)
            )
        ).scalars().all()
        return list(rows), total

    async def stats(self) -> dict[str, int]:
        rows = (
            await self.db.execute(
                select(SchedulingQueueItem.status, func.count(SchedulingQueueItem.id)).group_by(
                    SchedulingQueueItem.status
                )
            )
        ).all()
        out = {"pending": 0, "in_progress": 0, "resolved": 0}
        for status, count in rows:
            out[str(status)] = int(count)
        out["total"] = sum(out.values())
        return out


class SqlPaymentRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def recorded_gateway_ids(self, since: datetime) -> set[str]:
        rows = (
            await self.db.execute(
                select(PaymentRecord.gateway_payment_id).where(PaymentRecord.created_at >= since)
            )
        ).scalars().all()
        return {str(x) for x in rows}

    async def get_by_gateway_id(self, gateway_payment_id: str) -> PaymentRecord | None:
        return (
            await self.db.execute(
                select(PaymentRecord).where(PaymentRecord.gateway_payment_id == gateway_payment_id)
            )
        ).scalar_one_or_none()

    async def create(self, **fields: Any) -> PaymentRecord:
        existing = await self.get_by_gateway_id(str(fields["gateway_payment_id"]))
        if existing is not None:
            return existing
        row = PaymentRecord(**fields)
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_by_gateway_id(str(fields["gateway_payment_id"]))
            if existing is None:
                raise
            return existing
        await self.db.refresh(row)
        return row

    async def update(self, payment: PaymentRecord, **fields: Any) -> PaymentRecord:
        _apply(payment, fields)
        await self.db.commit()
        return payment


class SqlBookingRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_order_id(self, gateway_order_id: str) -> Booking | None:
        return (
            await self.db.execute(select(Booking).where(Booking.gateway_order_id == gateway_order_id))
        ).scalar_one_or_none()

    async def update(self, booking: Booking, **fields: Any) -> Booking:
        _apply(booking, fields)
        await self.db.commit()
        return booking


class SqlCoachRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, coach_id: int) -> Coach | None:
        return (await self.db.execute(select(Coach).where(Coach.id == coach_id))).scalar_one_or_none()

    async def least_loaded_active(self) -> Coach | None:
        return (
            await self.db.execute(
                select(Coach)
                .where(Coach.is_active.is_(True))
                .order_by(Coach.current_students.asc(), Coach.id.asc())
                .limit(1)
            )
        ).scalar_one_or_none()

    async def add_student(self, coach_id: int) -> None:
        await self.db.execute(
            update(Coach)
            .where(Coach.id == coach_id)
            .values(current_students=Coach.current_students + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()


class SqlLearnerRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, learner_id: int) -> Learner | None:
        return (await self.db.execute(select(Learner).where(Learner.id == learner_id))).scalar_one_or_none()


class SqlAuditRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def log(self, action: str, details: dict[str, Any], *, actor: str = "system") -> ActivityLog:
        row = ActivityLog(action=action, actor=actor, details=details)
        self.db.add(row)
        await self.db.commit()
        return row


def sql_repositories(db: AsyncSession) -> Repositories:
    return Repositories(
        sessions=SqlSessionRepository(db),
        enrollments=SqlEnrollmentRepository(db),
        queue=SqlQueueRepository(db),
        payments=SqlPaymentRepository(db),
        bookings=SqlBookingRepository(db),
        coaches=SqlCoachRepository(db),
        learners=SqlLearnerRepository(db),
        audit=SqlAuditRepository(db),
    )
