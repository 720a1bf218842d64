"""Payment reconciliation.

Compares captured payments on the gateway with the local ledger and rebuilds
the enrollment for every capture that never made it into the database
(typically a lost checkout webhook).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from app.core.config import settings
from app.core.errors import DuplicateEnrollment
from app.models.common import utcnow
from app.models.scheduling import Booking, Coach, Enrollment
from app.repositories.base import Repositories
from app.services.adapters import AdapterPolicy, CapturedPayment, Notifier, PaymentGateway, call_adapter
from app.services.orchestrator import SCHEDULE, SchedulingOrchestrator
from app.services.program_plan import PlannedSession, get_plan, layout_sessions
from app.services.scheduling_retry import RETRYING, SchedulingRetryService

logger = logging.getLogger(__name__)

ALREADY_ENROLLED = "already_enrolled"
NO_BOOKING = "no_booking"
NO_COACH = "no_coach"
RECOVERED = "recovered"
RACE_CONDITION = "race_condition"
ERROR = "error"


@dataclass(slots=True)
class CandidateOutcome:
    payment_id: str
    order_id: str | None
    status: str
    enrollment_id: int | None = None
    detail: str | None = None
    sessions_scheduled: int = 0
    sessions_retrying: int = 0
    sessions_queued: int = 0


@dataclass(slots=True)
class ReconciliationSummary:
    checked: int = 0
    total: int = 0
    recovered: int = 0
    already_enrolled: int = 0
    failed: int = 0
    outcomes: list[CandidateOutcome] = field(default_factory=list)

    def add(self, outcome: CandidateOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == RECOVERED:
            self.recovered += 1
        elif outcome.status in (ALREADY_ENROLLED, RACE_CONDITION):
            self.already_enrolled += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "total": self.total,
            "recovered": self.recovered,
            "already_enrolled": self.already_enrolled,
            "failed": self.failed,
            "outcomes": [asdict(x) for x in self.outcomes],
        }


class PaymentReconciliationWorker:
    def __init__(
        self,
        repos: Repositories,
        *,
        gateway: PaymentGateway,
        orchestrator: SchedulingOrchestrator,
        notifier: Notifier,
        clock: Callable[[], datetime] | None = None,
        window_days: int | None = None,
        timeout: float | None = None,
        retries: SchedulingRetryService | None = None,
    ) -> None:
        self.repos = repos
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.retries = retries or SchedulingRetryService(orchestrator)
        self.notifier = notifier
        self.clock = clock or utcnow
        self.window = timedelta(days=window_days if window_days is not None else settings.reconciliation_window_days)
        self.timeout = float(timeout if timeout is not None else settings.adapter_timeout_seconds)

    async def run_once(self, *, request_id: str | None = None) -> ReconciliationSummary:
        """One reconciliation pass.

        Raises ``AdapterFailure`` when the gateway ledger cannot be fetched;
        failures of individual candidates are counted and never abort the run.
        """
        now = self.clock()
        since = now - self.window
        logger.info("payment_reconciliation_start since=%s request_id=%s", since.isoformat(), request_id)

        captured = (
            await call_adapter(
                "payments",
                AdapterPolicy.MANDATORY,
                lambda: self.gateway.list_captured(since, now),
                timeout=self.timeout * 4,
                request_id=request_id,
            )
        ).unwrap()
        recorded = await self.repos.payments.recorded_gateway_ids(since)
        orphaned = [p for p in captured if p.id not in recorded]

        summary = ReconciliationSummary(checked=len(captured), total=len(orphaned))
        for payment in orphaned:
            try:
                outcome = await self._reconcile(payment, now=now, request_id=request_id)
            except Exception as exc:
                logger.exception("payment_reconciliation_candidate_failed payment_id=%s", payment.id)
                outcome = CandidateOutcome(payment_id=payment.id, order_id=payment.order_id, status=ERROR, detail=str(exc))
            summary.add(outcome)

        logger.info(
            "payment_reconciliation_done checked=%d total=%d recovered=%d already_enrolled=%d failed=%d request_id=%s",
            summary.checked,
            summary.total,
            summary.recovered,
            summary.already_enrolled,
            summary.failed,
            request_id,
        )
        await self.repos.audit.log(
            "payment_reconciliation_executed",
            {
                "checked": summary.checked,
                "total": summary.total,
                "recovered": summary.recovered,
                "already_enrolled": summary.already_enrolled,
                "failed": summary.failed,
                "window_days": self.window.days,
                "request_id": request_id,
            },
        )
        return summary

    async def _reconcile(self, payment: CapturedPayment, *, now: datetime, request_id: str | None) -> CandidateOutcome:
        outcome = CandidateOutcome(payment_id=payment.id, order_id=payment.order_id, status=ERROR)
        booking = await self.repos.bookings.get_by_order_id(payment.order_id) if payment.order_id else None

        existing = await self.repos.enrollments.get_by_payment_id(payment.id)
        if existing is not None:
            return await self._resume(existing, payment, booking, outcome, request_id=request_id)

        if booking is None:
            logger.warning(
                "payment_reconciliation_no_booking payment_id=%s order_id=%s needs manual review",
                payment.id,
                payment.order_id,
            )
            outcome.status = NO_BOOKING
            outcome.detail = "No booking matches the gateway order"
            return outcome

        active = await self.repos.enrollments.get_active_for_learner(booking.learner_id)
        if active is not None:
            return await self._attach_to_active(active, payment, booking, outcome, request_id=request_id)

        coach = await self._pick_coach(booking)
        if coach is None:
            outcome.status = NO_COACH
            outcome.detail = "No active coach available"
            return outcome

        plan = get_plan(booking.plan_slug)
        layout = layout_sessions(
            plan,
            now=now,
            preferred_day=booking.preferred_day,
            preferred_time=booking.preferred_time,
        )

        await self.repos.bookings.update(booking, status="paid")
        try:
            enrollment = await self.repos.enrollments.create(
                learner_id=booking.learner_id,
                coach_id=coach.id,
                payment_id=payment.id,
                plan_slug=plan.slug,
                status="active",
                total_sessions=plan.total_sessions,
                sessions_completed=0,
                max_reschedules=settings.default_max_reschedules,
                reschedules_used=0,
                consecutive_no_shows=0,
                total_no_shows=0,
                at_risk=False,
                session_duration_minutes=plan.session_minutes,
                program_start=layout[0].starts_at,
                program_end=layout[-1].starts_at + timedelta(minutes=layout[-1].duration_minutes),
                source="reconciliation",
            )
        except DuplicateEnrollment:
            logger.info("payment_reconciliation_race payment_id=%s learner_id=%s", payment.id, booking.learner_id)
            outcome.status = RACE_CONDITION
            outcome.detail = "Enrollment created concurrently"
            return outcome

        outcome.enrollment_id = enrollment.id
        await self.repos.coaches.add_student(coach.id)
        await self._materialize(enrollment, layout, outcome, payment=payment, request_id=request_id)
        # Recorded last: an unrecorded payment comes back next run and resumes here.
        await self._record_payment(payment, learner_id=booking.learner_id, enrollment_id=enrollment.id)
        await self._recovered(enrollment, payment, outcome, request_id=request_id)
        return outcome

    async def _resume(
        self,
        enrollment: Enrollment,
        payment: CapturedPayment,
        booking: Booking | None,
        outcome: CandidateOutcome,
        *,
        request_id: str | None,
    ) -> CandidateOutcome:
        """Finish a recovery that stopped after the enrollment was created."""
        outcome.enrollment_id = enrollment.id
        touched = 0
        if booking is not None and enrollment.source == "reconciliation":
            plan = get_plan(enrollment.plan_slug)
            layout = layout_sessions(
                plan,
                now=enrollment.created_at or self.clock(),
                preferred_day=booking.preferred_day,
                preferred_time=booking.preferred_time,
            )
            touched = await self._materialize(enrollment, layout, outcome, payment=payment, request_id=request_id)

        await self._record_payment(payment, learner_id=enrollment.learner_id, enrollment_id=enrollment.id)
        if not touched:
            outcome.status = ALREADY_ENROLLED
            return outcome

        logger.info("payment_reconciliation_resumed payment_id=%s enrollment_id=%s", payment.id, enrollment.id)
        outcome.detail = "Resumed an incomplete recovery"
        await self._recovered(enrollment, payment, outcome, request_id=request_id)
        return outcome

    async def _attach_to_active(
        self,
        active: Enrollment,
        payment: CapturedPayment,
        booking: Booking,
        outcome: CandidateOutcome,
        *,
        request_id: str | None,
    ) -> CandidateOutcome:
        outcome.status = ALREADY_ENROLLED
        outcome.enrollment_id = active.id
        outcome.detail = "Learner already has an active enrollment"
        await self._record_payment(payment, learner_id=booking.learner_id, enrollment_id=active.id)
        if not active.payment_id:
            await self.repos.enrollments.update(active, payment_id=payment.id)
            return outcome

        # A second capture for an enrolled learner needs an operator, usually a refund.
        logger.warning(
            "payment_reconciliation_duplicate payment_id=%s enrollment_id=%s existing_payment_id=%s",
            payment.id,
            active.id,
            active.payment_id,
        )
        outcome.detail = "Duplicate payment attached to the active enrollment"
        await self.repos.audit.log(
            "duplicate_payment_attached",
            {
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "enrollment_id": active.id,
                "existing_payment_id": active.payment_id,
                "amount_minor": payment.amount_minor,
                "request_id": request_id,
            },
        )
        await call_adapter(
            "notifications",
            AdapterPolicy.BEST_EFFORT,
            lambda: self.notifier.notify(
                "A_duplicate_payment",
                settings.operator_notification_recipient,
                {
                    "payment_id": payment.id,
                    "enrollment_id": active.id,
                    "learner_id": booking.learner_id,
                    "amount_minor": payment.amount_minor,
                },
            ),
            timeout=self.timeout,
            request_id=request_id,
        )
        return outcome

    async def _materialize(
        self,
        enrollment: Enrollment,
        layout: list[PlannedSession],
        outcome: CandidateOutcome,
        *,
        payment: CapturedPayment,
        request_id: str | None,
    ) -> int:
        """Create and schedule every planned session that is still missing.

        Returns how many sessions were created or dispatched.
        """
        current = {s.sequence_number: s for s in await self.repos.sessions.list_for_enrollment(enrollment.id)}
        touched = 0
        for planned in layout:
            session = current.get(planned.sequence_number)
            if session is None:
                session = await self.repos.sessions.create(
                    enrollment_id=enrollment.id,
                    learner_id=enrollment.learner_id,
                    coach_id=enrollment.coach_id,
                    sequence_number=planned.sequence_number,
                    session_type=planned.session_type,
                    starts_at=None,
                    duration_minutes=planned.duration_minutes,
                    status="pending",
                )
            elif session.status != "pending" or session.starts_at is not None:
                continue
            elif await self.repos.queue.find_open_for_session(session.id) is not None:
                continue

            touched += 1
            day = planned.starts_at.strftime("%Y-%m-%d")
            clock = planned.starts_at.strftime("%H:%M")
            result = await self.orchestrator.dispatch(
                SCHEDULE,
                {"session_id": session.id, "date": day, "time": clock},
                request_id=request_id,
            )
            if result.success:
                outcome.sessions_scheduled += 1
                continue
            handled = await self.retries.handle_failure(
                session,
                date=day,
                time=clock,
                result=result,
                attempt=1,
                reason="Automatic scheduling failed during payment recovery",
                context={"request_id": request_id, "payment_id": payment.id},
            )
            if handled == RETRYING:
                outcome.sessions_retrying += 1
            else:
                outcome.sessions_queued += 1
        return touched

    async def _recovered(
        self,
        enrollment: Enrollment,
        payment: CapturedPayment,
        outcome: CandidateOutcome,
        *,
        request_id: str | None,
    ) -> None:
        outcome.status = RECOVERED
        await self.repos.audit.log(
            "payment_recovered",
            {
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "enrollment_id": enrollment.id,
                "coach_id": enrollment.coach_id,
                "sessions_scheduled": outcome.sessions_scheduled,
                "sessions_retrying": outcome.sessions_retrying,
                "sessions_queued": outcome.sessions_queued,
                "request_id": request_id,
            },
        )
        await call_adapter(
            "notifications",
            AdapterPolicy.BEST_EFFORT,
            lambda: self.notifier.notify(
                "A_payment_recovered",
                settings.operator_notification_recipient,
                {
                    "payment_id": payment.id,
                    "enrollment_id": enrollment.id,
                    "learner_id": enrollment.learner_id,
                    "sessions_queued": outcome.sessions_queued,
                },
            ),
            timeout=self.timeout,
            request_id=request_id,
        )
        logger.info(
            "payment_recovered payment_id=%s enrollment_id=%s scheduled=%d retrying=%d queued=%d",
            payment.id,
            enrollment.id,
            outcome.sessions_scheduled,
            outcome.sessions_retrying,
            outcome.sessions_queued,
        )

    async def _pick_coach(self, booking: Booking) -> Coach | None:
        if booking.coach_id is not None:
            coach = await self.repos.coaches.get(booking.coach_id)
            if coach is not None and coach.is_active:
                return coach
        return await self.repos.coaches.least_loaded_active()

    async def _record_payment(self, payment: CapturedPayment, *, learner_id: int, enrollment_id: int | None) -> None:
        await self.repos.payments.create(
            gateway_payment_id=payment.id,
            gateway_order_id=payment.order_id,
            learner_id=learner_id,
            enrollment_id=enrollment_id,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            status="captured",
            source="reconciliation",
            captured_at=payment.captured_at,
        )
