from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from app.core.errors import DuplicateEnrollment
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
from app.services.adapters import CalendarEvent, CapturedPayment, GatewayRefund
from app.services.orchestrator import SchedulingOrchestrator

IST = ZoneInfo("Asia/Kolkata")
# Monday 2026-03-02 10:00 IST
NOW = datetime(2026, 3, 2, 4, 30, tzinfo=timezone.utc)


def ist(day: int, hour: int = 18, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=IST)


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# -- in-memory repositories -------------------------------------------------


class Store:
    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self.coaches: dict[int, Coach] = {}
        self.learners: dict[int, Learner] = {}
        self.bookings: dict[int, Booking] = {}
        self.payments: dict[int, PaymentRecord] = {}
        self.enrollments: dict[int, Enrollment] = {}
        self.sessions: dict[int, ScheduledSession] = {}
        self.change_requests: dict[int, SessionChangeRequest] = {}
        self.queue: dict[int, SchedulingQueueItem] = {}
        self.audit: list[ActivityLog] = []
        self._ids: dict[str, int] = {}

    def next_id(self, table: str) -> int:
        self._ids[table] = self._ids.get(table, 0) + 1
        return self._ids[table]

    def stamp(self, row: Any) -> Any:
        row.created_at = self.clock()
        row.updated_at = self.clock()
        return row

    def audit_actions(self) -> list[str]:
        return [x.action for x in self.audit]


def _apply(row: Any, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(row, key, value)


class FakeSessions:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def get(self, session_id: int) -> ScheduledSession | None:
        return self.store.sessions.get(session_id)

    async def list_for_enrollment(self, enrollment_id: int) -> list[ScheduledSession]:
        rows = [x for x in self.store.sessions.values() if x.enrollment_id == enrollment_id]
        return sorted(rows, key=lambda x: x.sequence_number)

    async def create(self, **fields: Any) -> ScheduledSession:
        defaults = {
            "coach_id": None,
            "session_type": "coaching",
            "starts_at": None,
            "duration_minutes": 45,
            "calendar_event_id": None,
            "meeting_url": None,
            "recording_bot_id": None,
            "status": "pending",
            "cancellation_reason": None,
            "completed_at": None,
        }
        row = ScheduledSession(id=self.store.next_id("sessions"), **{**defaults, **fields})
        self.store.sessions[row.id] = self.store.stamp(row)
        return row

    async def update(self, session: ScheduledSession, **fields: Any) -> ScheduledSession:
        _apply(session, fields)
        return session

    async def upcoming_without_bot(self, start: datetime, end: datetime, *, limit: int = 50) -> list[ScheduledSession]:
        rows = [
            x
            for x in self.store.sessions.values()
            if x.status == "scheduled"
            and x.meeting_url
            and not x.recording_bot_id
            and x.starts_at is not None
            and start <= x.starts_at <= end
        ]
        return sorted(rows, key=lambda x: x.starts_at)[:limit]

    async def find_overlapping(
        self,
        coach_id: int,
        start: datetime,
        end: datetime,
        *,
        exclude_session_id: int | None = None,
    ) -> ScheduledSession | None:
        rows = [
            x
            for x in self.store.sessions.values()
            if x.coach_id == coach_id
            and x.id != exclude_session_id
            and x.status in ("scheduled", "in_progress")
            and x.starts_at is not None
            and x.starts_at < end
            and x.starts_at + timedelta(minutes=x.duration_minutes) > start
        ]
        return min(rows, key=lambda x: x.starts_at, default=None)

    async def add_change_request(self, **fields: Any) -> SessionChangeRequest:
        row = SessionChangeRequest(id=self.store.next_id("change_requests"), detail=None, processed_at=None, **fields)
        self.store.change_requests[row.id] = self.store.stamp(row)
        return row

    async def finish_change_request(
        self,
        request: SessionChangeRequest,
        *,
        status: str,
        detail: str | None,
        processed_at: datetime,
    ) -> SessionChangeRequest:
        if request.processed_at is not None:
            return request
        _apply(request, {"status": status, "detail": detail, "processed_at": processed_at})
        return request


class FakeEnrollments:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def get(self, enrollment_id: int) -> Enrollment | None:
        return self.store.enrollments.get(enrollment_id)

    async def get_by_payment_id(self, payment_id: str) -> Enrollment | None:
        return next((x for x in self.store.enrollments.values() if x.payment_id == payment_id), None)

    async def get_active_for_learner(self, learner_id: int) -> Enrollment | None:
        return next(
            (x for x in self.store.enrollments.values() if x.learner_id == learner_id and x.status == "active"),
            None,
        )

    async def create(self, **fields: Any) -> Enrollment:
        if fields.get("status", "active") == "active":
            for row in self.store.enrollments.values():
                if row.learner_id == fields["learner_id"] and row.status == "active":
                    raise DuplicateEnrollment("duplicate active enrollment")
        row = Enrollment(id=self.store.next_id("enrollments"), **fields)
        self.store.enrollments[row.id] = self.store.stamp(row)
        return row

    async def update(self, enrollment: Enrollment, **fields: Any) -> Enrollment:
        _apply(enrollment, fields)
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
        row = self.store.enrollments[enrollment.id]
        if consume_quota:
            if row.reschedules_used != expected_used or row.reschedules_used >= row.max_reschedules:
                return False
            row.reschedules_used = expected_used + 1
        _apply(session, session_fields)
        return True

    async def increment_completed(self, enrollment_id: int) -> Enrollment:
        row = self.store.enrollments[enrollment_id]
        row.sessions_completed += 1
        row.consecutive_no_shows = 0
        return row

    async def record_no_show(self, enrollment_id: int) -> Enrollment:
        row = self.store.enrollments[enrollment_id]
        row.consecutive_no_shows += 1
        row.total_no_shows += 1
        return row


class FakeQueue:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def add(self, **fields: Any) -> SchedulingQueueItem:
        defaults = {"assigned_to": None, "resolution_notes": None, "resolved_by": None, "resolved_at": None}
        row = SchedulingQueueItem(id=self.store.next_id("queue"), **{**defaults, **fields})
        self.store.queue[row.id] = self.store.stamp(row)
        return row

    async def get(self, queue_id: int) -> SchedulingQueueItem | None:
        return self.store.queue.get(queue_id)

    async def find_open_for_session(self, session_id: int) -> SchedulingQueueItem | None:
        return next(
            (
                x
                for x in sorted(self.store.queue.values(), key=lambda x: x.id)
                if x.session_id == session_id and x.status in ("pending", "in_progress")
            ),
            None,
        )

    async def update(self, item: SchedulingQueueItem, **fields: Any) -> SchedulingQueueItem:
        _apply(item, fields)
        return item

    async def list(self, filters: QueueFilters) -> tuple[list[SchedulingQueueItem], int]:
        rows = list(self.store.queue.values())
        if filters.status:
            rows = [x for x in rows if x.status == filters.status]
        if filters.enrollment_id is not None:
            rows = [x for x in rows if x.enrollment_id == filters.enrollment_id]
        if filters.coach_id is not None:
            rows = [x for x in rows if x.coach_id == filters.coach_id]
        if filters.date_from is not None:
            rows = [x for x in rows if x.created_at >= filters.date_from]
        if filters.date_to is not None:
            rows = [x for x in rows if x.created_at <= filters.date_to]
        rows.sort(key=lambda x: (x.created_at, x.id), reverse=True)
        return rows[filters.offset : filters.offset + filters.limit], len(rows)

    async def stats(self) -> dict[str, int]:
        out = {"pending": 0, "in_progress": 0, "resolved": 0}
        for row in self.store.queue.values():
            out[row.status] = out.get(row.status, 0) + 1
        out["total"] = sum(out.values())
        return out


class FakePayments:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def recorded_gateway_ids(self, since: datetime) -> set[str]:
        return {x.gateway_payment_id for x in self.store.payments.values() if x.created_at >= since}

    async def get_by_gateway_id(self, gateway_payment_id: str) -> PaymentRecord | None:
        return next((x for x in self.store.payments.values() if x.gateway_payment_id == gateway_payment_id), None)

    async def create(self, **fields: Any) -> PaymentRecord:
        existing = await self.get_by_gateway_id(fields["gateway_payment_id"])
        if existing is not None:
            return existing
        row = PaymentRecord(id=self.store.next_id("payments"), **fields)
        self.store.payments[row.id] = self.store.stamp(row)
        return row

    async def update(self, payment: PaymentRecord, **fields: Any) -> PaymentRecord:
        _apply(payment, fields)
        return payment


class FakeBookings:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def get_by_order_id(self, gateway_order_id: str) -> Booking | None:
        return next((x for x in self.store.bookings.values() if x.gateway_order_id == gateway_order_id), None)

    async def update(self, booking: Booking, **fields: Any) -> Booking:
        _apply(booking, fields)
        return booking


class FakeCoaches:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def get(self, coach_id: int) -> Coach | None:
        return self.store.coaches.get(coach_id)

    async def least_loaded_active(self) -> Coach | None:
        rows = [x for x in self.store.coaches.values() if x.is_active]
        return min(rows, key=lambda x: (x.current_students, x.id), default=None)

    async def add_student(self, coach_id: int) -> None:
        self.store.coaches[coach_id].current_students += 1


class FakeLearners:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def get(self, learner_id: int) -> Learner | None:
        return self.store.learners.get(learner_id)


class FakeAudit:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def log(self, action: str, details: dict[str, Any], *, actor: str = "system") -> ActivityLog:
        row = ActivityLog(id=len(self.store.audit) + 1, action=action, details=details, actor=actor)
        self.store.audit.append(self.store.stamp(row))
        return row


# -- fake external systems --------------------------------------------------


class FakeCalendar:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.events: dict[str, dict[str, Any]] = {}
        self.fail: set[str] = set()
        self.delay = 0.0
        self._n = 0

    async def create_event(self, *, attendees, start, end, title, organizer_email=None) -> CalendarEvent:
        await asyncio.sleep(self.delay)
        self.calls.append(("create", {"start": start, "organizer": organizer_email, "attendees": attendees}))
        if "create" in self.fail:
            raise RuntimeError("calendar unavailable")
        self._n += 1
        event_id = f"evt-{self._n}"
        self.events[event_id] = {"start": start, "end": end, "organizer": organizer_email, "cancelled": False}
        return CalendarEvent(event_id=event_id, meeting_url=f"https://meet.example.com/{event_id}")

    async def update_event(self, event_id, *, start, end, organizer_email=None) -> CalendarEvent:
        await asyncio.sleep(self.delay)
        self.calls.append(("update", {"event_id": event_id, "start": start, "organizer": organizer_email}))
        if "update" in self.fail:
            raise RuntimeError("calendar unavailable")
        self.events.setdefault(event_id, {})
        self.events[event_id].update({"start": start, "end": end})
        return CalendarEvent(event_id=event_id, meeting_url=f"https://meet.example.com/{event_id}")

    async def cancel_event(self, event_id, *, organizer_email=None) -> None:
        await asyncio.sleep(self.delay)
        self.calls.append(("cancel", {"event_id": event_id, "organizer": organizer_email}))
        if "cancel" in self.fail:
            raise RuntimeError("calendar unavailable")
        self.events.setdefault(event_id, {})["cancelled"] = True

    def ops(self) -> list[str]:
        return [x[0] for x in self.calls]


class FakeBots:
    def __init__(self) -> None:
        self.scheduled: list[tuple[str, str, datetime]] = []
        self.cancelled: list[str] = []
        self.fail_schedule = False
        self.fail_cancel = False
        self._n = 0

    async def schedule_bot(self, meeting_url: str, join_at: datetime, metadata: dict[str, str]) -> str:
        await asyncio.sleep(0)
        if self.fail_schedule:
            raise RuntimeError("recording service down")
        self._n += 1
        bot_id = f"bot-{self._n}"
        self.scheduled.append((bot_id, meeting_url, join_at))
        return bot_id

    async def cancel_bot(self, bot_id: str) -> None:
        await asyncio.sleep(0)
        if self.fail_cancel:
            raise RuntimeError("recording service down")
        self.cancelled.append(bot_id)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.fail = False

    async def notify(self, template_code: str, recipient: str, variables: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("messaging down")
        self.sent.append((template_code, recipient, variables))

    def templates(self) -> list[str]:
        return [x[0] for x in self.sent]


class FakeRetryEnqueuer:
    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []
        self.fail = False

    async def enqueue(self, *, session_id, date, time, attempt, defer_by, request_id) -> str | None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        job = {"session_id": session_id, "date": date, "time": time, "attempt": attempt, "defer_by": defer_by}
        self.jobs.append(job)
        return f"schedule-retry:{session_id}:{attempt}"


class FakeGateway:
    def __init__(self) -> None:
        self.captured: list[CapturedPayment] = []
        self.refunds: list[tuple[str, int]] = []
        self.issued: dict[str, list[GatewayRefund]] = {}
        self.fail_list = False
        self.fail_refund = False
        self.refund_delay = 0.0

    async def list_captured(self, from_ts: datetime, to_ts: datetime) -> list[CapturedPayment]:
        if self.fail_list:
            raise RuntimeError("gateway unavailable")
        return [x for x in self.captured if x.captured_at is None or from_ts <= x.captured_at <= to_ts]

    async def refund(self, payment_id: str, amount_minor: int, notes: dict[str, str] | None = None) -> str:
        if self.fail_refund:
            raise RuntimeError("refund rejected")
        self.refunds.append((payment_id, amount_minor))
        refund_id = f"rfnd-{len(self.refunds)}"
        self.issued.setdefault(payment_id, []).append(GatewayRefund(refund_id, amount_minor, dict(notes or {})))
        # the gateway has already refunded when a slow response times out
        await asyncio.sleep(self.refund_delay)
        return refund_id

    async def list_refunds(self, payment_id: str) -> list[GatewayRefund]:
        if self.fail_list:
            raise RuntimeError("gateway unavailable")
        return list(self.issued.get(payment_id, []))


# -- environment ------------------------------------------------------------


@dataclass
class Env:
    clock: Clock
    store: Store
    repos: Repositories
    calendar: FakeCalendar
    bots: FakeBots
    notifier: FakeNotifier
    gateway: FakeGateway
    orchestrator: SchedulingOrchestrator

    def add_coach(self, name: str = "Asha", email: str | None = None, *, active: bool = True, students: int = 0) -> Coach:
        row = Coach(
            id=self.store.next_id("coaches"),
            name=name,
            email=email or f"{name.lower()}@coaches.example.com",
            is_active=active,
            current_students=students,
        )
        self.store.coaches[row.id] = self.store.stamp(row)
        return row

    def add_learner(self, name: str = "Kavya") -> Learner:
        row = Learner(
            id=self.store.next_id("learners"),
            name=name,
            parent_name=f"Parent of {name}",
            parent_email=f"{name.lower()}.parent@example.com",
            parent_phone="+919800000000",
        )
        self.store.learners[row.id] = self.store.stamp(row)
        return row

    def add_enrollment(
        self,
        learner: Learner,
        coach: Coach | None,
        *,
        max_reschedules: int = 3,
        reschedules_used: int = 0,
        total_sessions: int = 9,
        sessions_completed: int = 0,
        payment_id: str | None = None,
        status: str = "active",
    ) -> Enrollment:
        row = Enrollment(
            id=self.store.next_id("enrollments"),
            learner_id=learner.id,
            coach_id=coach.id if coach else None,
            payment_id=payment_id,
            plan_slug="full",
            status=status,
            total_sessions=total_sessions,
            sessions_completed=sessions_completed,
            max_reschedules=max_reschedules,
            reschedules_used=reschedules_used,
            consecutive_no_shows=0,
            total_no_shows=0,
            at_risk=False,
            session_duration_minutes=45,
            source="checkout",
            terminated_at=None,
            termination_reason=None,
        )
        self.store.enrollments[row.id] = self.store.stamp(row)
        return row

    def add_session(
        self,
        enrollment: Enrollment,
        *,
        status: str = "scheduled",
        starts_at: datetime | None = None,
        sequence_number: int | None = None,
        calendar_event_id: str | None = "evt-seed",
        meeting_url: str | None = "https://meet.example.com/evt-seed",
        recording_bot_id: str | None = "bot-seed",
        coach_id: int | None = None,
    ) -> ScheduledSession:
        seq = sequence_number or len([x for x in self.store.sessions.values() if x.enrollment_id == enrollment.id]) + 1
        if status == "pending":
            calendar_event_id = None
            meeting_url = None
            recording_bot_id = None
        row = ScheduledSession(
            id=self.store.next_id("sessions"),
            enrollment_id=enrollment.id,
            learner_id=enrollment.learner_id,
            coach_id=coach_id if coach_id is not None else enrollment.coach_id,
            sequence_number=seq,
            session_type="coaching",
            starts_at=starts_at if starts_at is not None else (None if status == "pending" else ist(5)),
            duration_minutes=45,
            calendar_event_id=calendar_event_id,
            meeting_url=meeting_url,
            recording_bot_id=recording_bot_id,
            status=status,
            cancellation_reason=None,
            completed_at=None,
        )
        self.store.sessions[row.id] = self.store.stamp(row)
        return row

    def add_booking(
        self,
        learner: Learner,
        order_id: str,
        *,
        coach: Coach | None = None,
        plan_slug: str = "starter",
        preferred_day: int | None = 3,
        preferred_time: str | None = "18:00",
    ) -> Booking:
        row = Booking(
            id=self.store.next_id("bookings"),
            gateway_order_id=order_id,
            learner_id=learner.id,
            coach_id=coach.id if coach else None,
            plan_slug=plan_slug,
            preferred_day=preferred_day,
            preferred_time=preferred_time,
            status="pending",
        )
        self.store.bookings[row.id] = self.store.stamp(row)
        return row

    def add_payment(self, payment_id: str, *, amount_minor: int = 999900, captured_at: datetime | None = None) -> PaymentRecord:
        row = PaymentRecord(
            id=self.store.next_id("payments"),
            gateway_payment_id=payment_id,
            gateway_order_id=f"order_{payment_id}",
            learner_id=None,
            amount_minor=amount_minor,
            currency="INR",
            status="captured",
            source="checkout",
            captured_at=captured_at or self.clock(),
            enrollment_id=None,
            refund_id=None,
            refunded_minor=0,
        )
        self.store.payments[row.id] = self.store.stamp(row)
        return row


def make_repos(store: Store) -> Repositories:
    return Repositories(
        sessions=FakeSessions(store),
        enrollments=FakeEnrollments(store),
        queue=FakeQueue(store),
        payments=FakePayments(store),
        bookings=FakeBookings(store),
        coaches=FakeCoaches(store),
        learners=FakeLearners(store),
        audit=FakeAudit(store),
    )


@pytest.fixture
def env() -> Env:
    clock = Clock()
    store = Store(clock)
    repos = make_repos(store)
    calendar = FakeCalendar()
    bots = FakeBots()
    notifier = FakeNotifier()
    orchestrator = SchedulingOrchestrator(
        repos,
        calendar=calendar,
        bots=bots,
        notifier=notifier,
        clock=clock,
        timeout=1.0,
    )
    return Env(
        clock=clock,
        store=store,
        repos=repos,
        calendar=calendar,
        bots=bots,
        notifier=notifier,
        gateway=FakeGateway(),
        orchestrator=orchestrator,
    )
