from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.errors import DuplicateEnrollment
from app.db.base import Base
from app.models.scheduling import ActivityLog, Coach, Enrollment, Learner, ScheduledSession, SessionChangeRequest
from app.repositories.base import QueueFilters
from app.repositories.sql import sql_repositories
from app.services.orchestrator import RESCHEDULE, SCHEDULE, SchedulingOrchestrator

from tests.conftest import Clock, FakeBots, FakeCalendar, FakeNotifier

T0 = datetime(2026, 3, 2, 4, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with maker() as session:
        yield session
    await engine.dispose()


async def _seed(db: AsyncSession, *, max_reschedules: int = 3, reschedules_used: int = 0):
    coach = Coach(name="Asha", email="asha@coaches.example.com", is_active=True, current_students=0)
    learner = Learner(name="Kavya", parent_email="kavya.parent@example.com")
    db.add_all([coach, learner])
    await db.commit()
    repos = sql_repositories(db)
    enrollment = await repos.enrollments.create(
        learner_id=learner.id,
        coach_id=coach.id,
        status="active",
        total_sessions=9,
        max_reschedules=max_reschedules,
        reschedules_used=reschedules_used,
    )
    session = await repos.sessions.create(
        enrollment_id=enrollment.id,
        learner_id=learner.id,
        coach_id=coach.id,
        sequence_number=1,
        status="pending",
    )
    return repos, coach, learner, enrollment, session


@pytest.mark.asyncio
async def test_defaults_are_applied_on_insert(db) -> None:
    _, coach, _, enrollment, session = await _seed(db)

    assert enrollment.sessions_completed == 0
    assert enrollment.at_risk is False
    assert session.duration_minutes == 45
    assert session.status == "pending"
    assert coach.current_students == 0


@pytest.mark.asyncio
async def test_reschedule_counter_compare_and_swap(db) -> None:
    repos, _, _, enrollment, session = await _seed(db, max_reschedules=1)
    new_time = T0 + timedelta(days=3)

    committed = await repos.enrollments.reschedule_with_quota(
        enrollment,
        expected_used=0,
        consume_quota=True,
        session=session,
        session_fields={"starts_at": new_time, "calendar_event_id": "evt-1"},
    )
    assert committed
    assert enrollment.reschedules_used == 1

    stale = await repos.enrollments.reschedule_with_quota(
        enrollment,
        expected_used=0,
        consume_quota=True,
        session=session,
        session_fields={"calendar_event_id": "evt-2"},
    )
    exhausted = await repos.enrollments.reschedule_with_quota(
        enrollment,
        expected_used=1,
        consume_quota=True,
        session=session,
        session_fields={"calendar_event_id": "evt-3"},
    )
    assert not stale
    assert not exhausted
    assert enrollment.reschedules_used == 1
    assert session.calendar_event_id == "evt-1"

    stored = (await db.execute(select(ScheduledSession.calendar_event_id))).scalar_one()
    assert stored == "evt-1"


@pytest.mark.asyncio
async def test_operator_path_leaves_counter_alone(db) -> None:
    repos, _, _, enrollment, session = await _seed(db, max_reschedules=1, reschedules_used=1)

    committed = await repos.enrollments.reschedule_with_quota(
        enrollment,
        expected_used=1,
        consume_quota=False,
        session=session,
        session_fields={"calendar_event_id": "evt-ops"},
    )

    assert committed
    assert enrollment.reschedules_used == 1
    assert session.calendar_event_id == "evt-ops"


@pytest.mark.asyncio
async def test_one_active_enrollment_per_learner(db) -> None:
    repos, coach, learner, enrollment, _ = await _seed(db)
    learner_id, coach_id = learner.id, coach.id

    with pytest.raises(DuplicateEnrollment):
        await repos.enrollments.create(learner_id=learner_id, coach_id=coach_id, status="active", total_sessions=3)

    # the rollback expired everything loaded so far
    await db.refresh(enrollment)
    await repos.enrollments.update(enrollment, status="terminated")
    again = await repos.enrollments.create(learner_id=learner_id, coach_id=coach_id, status="active", total_sessions=3)
    assert (await repos.enrollments.get_active_for_learner(learner_id)).id == again.id


@pytest.mark.asyncio
async def test_counters_and_coach_load(db) -> None:
    repos, coach, _, enrollment, _ = await _seed(db)
    other = Coach(name="Ravi", email="ravi@coaches.example.com", is_active=True, current_students=2)
    db.add(other)
    await db.commit()

    await repos.enrollments.record_no_show(enrollment.id)
    row = await repos.enrollments.record_no_show(enrollment.id)
    assert row.consecutive_no_shows == 2
    assert row.total_no_shows == 2

    row = await repos.enrollments.increment_completed(enrollment.id)
    assert row.sessions_completed == 1
    assert row.consecutive_no_shows == 0
    assert row.total_no_shows == 2

    assert (await repos.coaches.least_loaded_active()).id == coach.id
    for _ in range(3):
        await repos.coaches.add_student(coach.id)
    assert (await repos.coaches.least_loaded_active()).id == other.id


@pytest.mark.asyncio
async def test_payment_create_is_idempotent(db) -> None:
    repos = sql_repositories(db)
    fields = {"gateway_payment_id": "pay_1", "gateway_order_id": "order_1", "amount_minor": 499900}

    first = await repos.payments.create(**fields)
    second = await repos.payments.create(**fields)

    assert first.id == second.id
    assert await repos.payments.recorded_gateway_ids(T0 - timedelta(days=365)) == {"pay_1"}


@pytest.mark.asyncio
async def test_queue_listing_and_stats(db) -> None:
    repos, _, _, enrollment, session = await _seed(db)
    first = await repos.queue.add(session_id=session.id, enrollment_id=enrollment.id, reason="first", history=[])
    await repos.queue.add(session_id=None, enrollment_id=enrollment.id, reason="second", status="resolved", history=[])

    assert (await repos.queue.find_open_for_session(session.id)).id == first.id

    items, total = await repos.queue.list(QueueFilters(status="pending"))
    assert total == 1
    assert [x.reason for x in items] == ["first"]
    _, total = await repos.queue.list(QueueFilters(limit=1))
    assert total == 2
    assert await repos.queue.stats() == {"pending": 1, "in_progress": 0, "resolved": 1, "total": 2}


@pytest.mark.asyncio
async def test_orchestrator_against_sql_repositories(db) -> None:
    repos, _, _, enrollment, session = await _seed(db, max_reschedules=1)
    orchestrator = SchedulingOrchestrator(
        repos,
        calendar=FakeCalendar(),
        bots=FakeBots(),
        notifier=FakeNotifier(),
        clock=Clock(T0),
        timeout=1.0,
    )

    scheduled = await orchestrator.dispatch(SCHEDULE, {"session_id": session.id, "date": "2026-03-05", "time": "18:00"})
    moved = await orchestrator.dispatch(
        RESCHEDULE, {"session_id": session.id, "date": "2026-03-06", "time": "18:00", "initiated_by": "parent"}
    )
    denied = await orchestrator.dispatch(
        RESCHEDULE, {"session_id": session.id, "date": "2026-03-07", "time": "18:00", "initiated_by": "parent"}
    )

    assert scheduled.status == "ok"
    assert moved.status == "ok"
    assert denied.status == "policy_denied"
    assert (await db.execute(select(Enrollment.reschedules_used))).scalar_one() == 1
    actions = (await db.execute(select(ActivityLog.action).order_by(ActivityLog.id))).scalars().all()
    assert actions == ["session_scheduled", "session_rescheduled", "session_reschedule_rejected"]


class RacingCalendar(FakeCalendar):
    """Commits a competing reschedule while the event update is in flight."""

    def __init__(self, db: AsyncSession, enrollment_id: int) -> None:
        super().__init__()
        self.db = db
        self.enrollment_id = enrollment_id
        self.armed = False

    async def update_event(self, event_id, **kwargs):
        if self.armed:
            self.armed = False
            await self.db.execute(
                update(Enrollment)
                .where(Enrollment.id == self.enrollment_id)
                .values(reschedules_used=Enrollment.reschedules_used + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        return await super().update_event(event_id, **kwargs)


@pytest.mark.asyncio
async def test_lost_reschedule_race_reports_conflict(db) -> None:
    repos, _, _, enrollment, session = await _seed(db, max_reschedules=1)
    calendar = RacingCalendar(db, enrollment.id)
    bots = FakeBots()
    orchestrator = SchedulingOrchestrator(
        repos,
        calendar=calendar,
        bots=bots,
        notifier=FakeNotifier(),
        clock=Clock(T0),
        timeout=1.0,
    )
    scheduled = await orchestrator.dispatch(SCHEDULE, {"session_id": session.id, "date": "2026-03-05", "time": "18:00"})
    original = session.starts_at

    calendar.armed = True
    result = await orchestrator.dispatch(
        RESCHEDULE, {"session_id": session.id, "date": "2026-03-06", "time": "18:00", "initiated_by": "parent"}
    )

    assert scheduled.status == "ok"
    assert result.status == "conflict"
    assert (await db.execute(select(Enrollment.reschedules_used))).scalar_one() == 1
    stored = (await db.execute(select(ScheduledSession))).scalar_one()
    assert stored.starts_at == original
    assert stored.recording_bot_id == "bot-1"
    assert bots.cancelled == ["bot-2"]
    assert calendar.events["evt-1"]["start"] == original
    statuses = (await db.execute(select(SessionChangeRequest.status))).scalars().all()
    assert statuses == ["conflict"]
