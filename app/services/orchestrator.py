"""Scheduling orchestrator.

Every session command enters through ``SchedulingOrchestrator.dispatch``. A
command loads the session once, asks the policy layer, talks to the external
systems strictly in order (calendar first, recording bot second) and commits
the resulting session fields in a single repository update. Failures are
reported as a ``DispatchResult``; nothing raises out of ``dispatch``.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadError

from app.core.config import settings
from app.core.errors import (
    AdapterFailure,
    Conflict,
    Internal,
    NotFound,
    PolicyDenied,
    SchedulingError,
    ValidationError,
)
from app.models.common import utcnow
from app.models.scheduling import Coach, Enrollment, Learner, ScheduledSession
from app.repositories.base import Repositories
from app.services import reschedule_policy
from app.services.adapters import (
    AdapterCallResult,
    AdapterPolicy,
    CalendarAdapter,
    CalendarEvent,
    Notifier,
    RecordingBotAdapter,
    call_adapter,
)
from app.services.scheduling_queue import RECORDING_BOT_REASON, SchedulingQueueService
from app.services.session_states import (
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    NO_SHOW,
    PENDING,
    SCHEDULED,
    ensure_transition,
)

logger = logging.getLogger(__name__)

SCHEDULE = "session.schedule"
RESCHEDULE = "session.reschedule"
REASSIGN_COACH = "session.reassignCoach"
CANCEL = "session.cancel"
START = "session.start"
COMPLETE = "session.complete"
NO_SHOW_COMMAND = "session.noShow"

OPERATOR = "operator"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    session_id: int = Field(gt=0)


class SchedulePayload(_Payload):
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str = Field(pattern=r"^\d{2}:\d{2}$")
    coach_id: int | None = Field(default=None, gt=0)


class ReschedulePayload(_Payload):
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str = Field(pattern=r"^\d{2}:\d{2}$")
    initiated_by: str = Field(min_length=1, max_length=40)
    reason: str | None = Field(default=None, max_length=2000)


class ReassignPayload(_Payload):
    coach_id: int = Field(gt=0)
    initiated_by: str = Field(min_length=1, max_length=40)
    reason: str | None = Field(default=None, max_length=2000)


class CancelPayload(_Payload):
    cancelled_by: str = Field(min_length=1, max_length=255)
    reason: str | None = Field(default=None, max_length=2000)


class SessionRefPayload(_Payload):
    pass


class DispatchResult(BaseModel):
    success: bool
    command: str
    status: str
    request_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class _Run:
    command: str
    request_id: str
    warnings: list[str] = field(default_factory=list)


def session_snapshot(session: ScheduledSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "enrollment_id": session.enrollment_id,
        "learner_id": session.learner_id,
        "coach_id": session.coach_id,
        "sequence_number": session.sequence_number,
        "session_type": session.session_type,
        "status": session.status,
        "starts_at": session.starts_at.isoformat() if session.starts_at else None,
        "duration_minutes": session.duration_minutes,
        "calendar_event_id": session.calendar_event_id,
        "meeting_url": session.meeting_url,
        "recording_bot_id": session.recording_bot_id,
        "cancellation_reason": session.cancellation_reason,
    }


def parse_slot(day: str, clock: str, timezone_name: str | None = None) -> datetime:
    tz = ZoneInfo(timezone_name or settings.scheduling_timezone)
    try:
        naive = datetime.strptime(f"{day} {clock}", "%Y-%m-%d %H:%M")
    except ValueError as exc:
        raise ValidationError(f"Invalid date/time '{day} {clock}'") from exc
    return naive.replace(tzinfo=tz)


def _first_error(exc: PayloadError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid payload"
    first = errors[0]
    loc = ".".join(str(x) for x in first.get("loc") or ()) or "payload"
    return f"{loc}: {first.get('msg', 'invalid value')}"


class SchedulingOrchestrator:
    def __init__(
        self,
        repos: Repositories,
        *,
        calendar: CalendarAdapter,
        bots: RecordingBotAdapter,
        notifier: Notifier,
        queue: SchedulingQueueService | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.repos = repos
        self.calendar = calendar
        self.bots = bots
        self.notifier = notifier
        self.clock = clock or utcnow
        self.timeout = float(timeout if timeout is not None else settings.adapter_timeout_seconds)
        self.queue = queue or SchedulingQueueService(repos, notifier=notifier, clock=self.clock, timeout=self.timeout)
        if self.queue.orchestrator is None:
            self.queue.orchestrator = self

        self._handlers: dict[str, tuple[type[_Payload], Any]] = {
            SCHEDULE: (SchedulePayload, self._schedule),
            RESCHEDULE: (ReschedulePayload, self._reschedule),
            REASSIGN_COACH: (ReassignPayload, self._reassign_coach),
            CANCEL: (CancelPayload, self._cancel),
            START: (SessionRefPayload, self._start),
            COMPLETE: (SessionRefPayload, self._complete),
            NO_SHOW_COMMAND: (SessionRefPayload, self._no_show),
        }

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(
        self,
        command: str,
        payload: dict[str, Any] | None,
        request_id: str | None = None,
    ) -> DispatchResult:
        run = _Run(command=command, request_id=request_id or uuid.uuid4().hex)
        started = time.perf_counter()
        logger.info("dispatch_start command=%s request_id=%s", command, run.request_id)

        try:
            status, data = await self._run(command, payload, run)
            result = DispatchResult(
                success=True,
                command=command,
                status=status,
                request_id=run.request_id,
                data=data,
                warnings=run.warnings,
            )
        except SchedulingError as exc:
            result = DispatchResult(
                success=False,
                command=command,
                status=exc.status,
                request_id=run.request_id,
                data=dict(exc.details),
                error=exc.message,
                warnings=run.warnings,
            )
        except Exception:
            logger.exception("dispatch_unexpected_error command=%s request_id=%s", command, run.request_id)
            result = DispatchResult(
                success=False,
                command=command,
                status=Internal.status,
                request_id=run.request_id,
                error="Unexpected error while processing the command",
                warnings=run.warnings,
            )

        logger.info(
            "dispatch_complete command=%s request_id=%s status=%s warnings=%d elapsed_ms=%d",
            command,
            run.request_id,
            result.status,
            len(result.warnings),
            int((time.perf_counter() - started) * 1000),
        )
        return result

    async def _run(self, command: str, payload: dict[str, Any] | None, run: _Run) -> tuple[str, dict[str, Any]]:
        entry = self._handlers.get(command)
        if entry is None:
            raise ValidationError(f"Unknown command '{command}'. Expected one of: {', '.join(self._handlers)}")
        model, handler = entry
        try:
            parsed = model.model_validate(payload or {})
        except PayloadError as exc:
            raise ValidationError(_first_error(exc)) from exc
        return await handler(parsed, run)

    # -- loading ---------------------------------------------------------

    async def _load_session(self, session_id: int) -> ScheduledSession:
        session = await self.repos.sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    async def _load_enrollment(self, enrollment_id: int) -> Enrollment:
        enrollment = await self.repos.enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        return enrollment

    async def _coach(self, coach_id: int | None) -> Coach | None:
        if coach_id is None:
            return None
        return await self.repos.coaches.get(coach_id)

    async def _learner(self, learner_id: int) -> Learner | None:
        return await self.repos.learners.get(learner_id)

    # -- adapter plumbing --------------------------------------------------

    async def _call(self, run: _Run, adapter: str, policy: AdapterPolicy, fn: Callable[[], Awaitable[Any]]) -> AdapterCallResult:
        result = await call_adapter(adapter, policy, fn, timeout=self.timeout, request_id=run.request_id)
        if not result.ok and policy is AdapterPolicy.BEST_EFFORT:
            run.warnings.append(f"{adapter}: {result.error}")
        return result

    async def _create_event(
        self,
        run: _Run,
        session: ScheduledSession,
        *,
        starts_at: datetime,
        coach: Coach | None,
    ) -> CalendarEvent:
        learner = await self._learner(session.learner_id)
        attendees = [x for x in [learner.parent_email if learner else None, coach.email if coach else None] if x]
        title = f"Coaching session {session.sequence_number}"
        if learner is not None:
            title = f"{title}: {learner.name}"
        end = starts_at + timedelta(minutes=session.duration_minutes)
        organizer = coach.email if coach else None
        result = await self._call(
            run,
            "calendar",
            AdapterPolicy.MANDATORY,
            lambda: self.calendar.create_event(
                attendees=attendees,
                start=starts_at,
                end=end,
                title=title,
                organizer_email=organizer,
            ),
        )
        return result.unwrap()

    async def _schedule_bot(
        self,
        run: _Run,
        session: ScheduledSession,
        *,
        meeting_url: str | None,
        starts_at: datetime,
    ) -> tuple[str | None, str | None]:
        """Returns ``(bot_id, failure_reason)``; exactly one of them is set."""
        if not meeting_url:
            reason = "meeting link missing"
            run.warnings.append(f"recording_bot: {reason}")
            return None, reason
        metadata = {
            "session_id": str(session.id),
            "enrollment_id": str(session.enrollment_id),
            "request_id": run.request_id,
        }
        result = await self._call(
            run,
            "recording_bot",
            AdapterPolicy.BEST_EFFORT,
            lambda: self.bots.schedule_bot(meeting_url, starts_at, metadata),
        )
        if result.ok:
            return str(result.value), None
        return None, result.error or "unknown error"

    async def _cancel_bot(self, run: _Run, bot_id: str | None) -> None:
        if bot_id:
            await self._call(run, "recording_bot", AdapterPolicy.BEST_EFFORT, lambda: self.bots.cancel_bot(bot_id))

    async def _notify(self, run: _Run, template_code: str, recipient: str | None, variables: dict[str, Any]) -> None:
        if not recipient:
            return
        await self._call(
            run,
            "notifications",
            AdapterPolicy.BEST_EFFORT,
            lambda: self.notifier.notify(template_code, recipient, variables),
        )

    async def _notify_learner(self, run: _Run, template_code: str, session: ScheduledSession) -> None:
        learner = await self._learner(session.learner_id)
        if learner is None:
            return
        await self._notify(
            run,
            template_code,
            learner.parent_phone or learner.parent_email,
            {"learner_name": learner.name, **session_snapshot(session)},
        )

    async def _escalate_bot_failure(self, run: _Run, session: ScheduledSession, reason: str) -> int:
        item = await self.queue.escalate(
            session,
            f"{RECORDING_BOT_REASON}: {reason}",
            context={"command": run.command, "request_id": run.request_id},
        )
        return item.id

    async def _find_clash(
        self, coach_id: int | None, session: ScheduledSession, starts_at: datetime
    ) -> ScheduledSession | None:
        if coach_id is None:
            return None
        end = starts_at + timedelta(minutes=session.duration_minutes)
        return await self.repos.sessions.find_overlapping(coach_id, starts_at, end, exclude_session_id=session.id)

    async def _audit(self, run: _Run, action: str, session: ScheduledSession, actor: str = "system", **extra: Any) -> None:
        await self.repos.audit.log(
            action,
            {"session_id": session.id, "enrollment_id": session.enrollment_id, "request_id": run.request_id, **extra},
            actor=actor,
        )

    # -- commands ----------------------------------------------------------

    async def _schedule(self, payload: SchedulePayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        starts_at = parse_slot(payload.date, payload.time)
        coach_id = payload.coach_id or session.coach_id

        if session.status == SCHEDULED:
            if session.starts_at == starts_at and session.coach_id == coach_id and session.calendar_event_id:
                return "noop", {"session": session_snapshot(session)}
            raise ValidationError("Session is already scheduled; use session.reschedule or session.reassignCoach")
        ensure_transition(session.status, SCHEDULED)

        if starts_at <= self.clock():
            raise ValidationError("Session time must be in the future")
        coach = await self._coach(coach_id)
        if coach_id is not None and coach is None:
            raise NotFound(f"Coach {coach_id} not found")
        clash = await self._find_clash(coach_id, session, starts_at)
        if clash is not None:
            reason = f"Conflicting slot: coach {coach_id} already has session {clash.id} at {clash.starts_at.isoformat()}"
            item = await self.queue.escalate(
                session, reason, context={"command": run.command, "request_id": run.request_id}
            )
            raise Conflict(
                reason,
                details={"code": "slot_conflict", "conflicting_session_id": clash.id, "queue_item_id": item.id},
            )

        event = await self._create_event(run, session, starts_at=starts_at, coach=coach)
        bot_id, bot_error = await self._schedule_bot(run, session, meeting_url=event.meeting_url, starts_at=starts_at)

        await self.repos.sessions.update(
            session,
            status=SCHEDULED,
            starts_at=starts_at,
            coach_id=coach_id,
            calendar_event_id=event.event_id,
            meeting_url=event.meeting_url,
            recording_bot_id=bot_id,
        )
        data: dict[str, Any] = {"session": session_snapshot(session), "meeting_url": event.meeting_url}
        if bot_error:
            data["queue_item_id"] = await self._escalate_bot_failure(run, session, bot_error)

        await self._audit(run, "session_scheduled", session, starts_at=starts_at.isoformat(), coach_id=coach_id)
        await self._notify_learner(run, "L_session_scheduled", session)
        return "ok", data

    async def _reschedule(self, payload: ReschedulePayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        enrollment = await self._load_enrollment(session.enrollment_id)
        requested_at = parse_slot(payload.date, payload.time)
        enforce_quota = payload.initiated_by != OPERATOR

        if session.status == SCHEDULED and session.starts_at == requested_at and session.calendar_event_id:
            return "noop", {
                "session": session_snapshot(session),
                "quota_remaining": reschedule_policy.remaining_reschedules(enrollment),
            }

        now = self.clock()
        original_starts_at = session.starts_at
        request = await self.repos.sessions.add_change_request(
            session_id=session.id,
            enrollment_id=enrollment.id,
            kind="reschedule",
            original_starts_at=original_starts_at,
            requested_starts_at=requested_at,
            original_coach_id=session.coach_id,
            requested_coach_id=session.coach_id,
            initiated_by=payload.initiated_by,
            reason=payload.reason,
            status="pending",
        )

        decision = reschedule_policy.evaluate(enrollment, session, requested_at, now, enforce_quota=enforce_quota)
        if not decision.allowed:
            await self.repos.sessions.finish_change_request(
                request, status="rejected", detail=decision.reason, processed_at=now
            )
            await self._audit(run, "session_reschedule_rejected", session, actor=payload.initiated_by, code=decision.code)
            raise PolicyDenied(
                decision.reason,
                details={
                    "code": decision.code,
                    "quota_remaining": reschedule_policy.remaining_reschedules(enrollment),
                },
            )

        clash = await self._find_clash(session.coach_id, session, requested_at)
        if clash is not None:
            detail = "The coach already has another session at the requested time"
            await self.repos.sessions.finish_change_request(request, status="rejected", detail=detail, processed_at=now)
            await self._audit(
                run, "session_reschedule_rejected", session, actor=payload.initiated_by, code="slot_conflict"
            )
            raise PolicyDenied(
                detail,
                details={
                    "code": "slot_conflict",
                    "conflicting_session_id": clash.id,
                    "quota_remaining": reschedule_policy.remaining_reschedules(enrollment),
                },
            )

        expected_used = enrollment.reschedules_used
        coach = await self._coach(session.coach_id)
        end = requested_at + timedelta(minutes=session.duration_minutes)
        organizer = coach.email if coach else None
        old_event_id = session.calendar_event_id

        if old_event_id:
            cal = await self._call(
                run,
                "calendar",
                AdapterPolicy.MANDATORY,
                lambda: self.calendar.update_event(old_event_id, start=requested_at, end=end, organizer_email=organizer),
            )
            if not cal.ok:
                await self.repos.sessions.finish_change_request(
                    request, status="failed", detail=cal.error, processed_at=self.clock()
                )
            event = cal.unwrap()
        else:
            try:
                event = await self._create_event(run, session, starts_at=requested_at, coach=coach)
            except AdapterFailure as exc:
                await self.repos.sessions.finish_change_request(
                    request, status="failed", detail=exc.message, processed_at=self.clock()
                )
                raise

        meeting_url = event.meeting_url or session.meeting_url
        old_bot_id = session.recording_bot_id
        bot_id, bot_error = await self._schedule_bot(run, session, meeting_url=meeting_url, starts_at=requested_at)

        committed = await self.repos.enrollments.reschedule_with_quota(
            enrollment,
            expected_used=expected_used,
            consume_quota=enforce_quota,
            session=session,
            session_fields={
                "starts_at": requested_at,
                "calendar_event_id": event.event_id,
                "meeting_url": meeting_url,
                "recording_bot_id": bot_id,
            },
        )
        if not committed:
            await self._compensate_lost_race(run, session, event, created=not old_event_id, bot_id=bot_id)
            detail = "Another reschedule of this enrollment committed first; the session keeps its current time"
            await self.repos.sessions.finish_change_request(
                request, status="conflict", detail=detail, processed_at=self.clock()
            )
            raise Conflict(detail, details={"session": session_snapshot(session)})

        await self._cancel_bot(run, old_bot_id)
        await self.repos.sessions.finish_change_request(request, status="approved", detail=None, processed_at=self.clock())
        data: dict[str, Any] = {
            "session": session_snapshot(session),
            "meeting_url": meeting_url,
            "quota_remaining": reschedule_policy.remaining_reschedules(enrollment),
            "change_request_id": request.id,
        }
        if bot_error:
            data["queue_item_id"] = await self._escalate_bot_failure(run, session, bot_error)

        await self._audit(
            run,
            "session_rescheduled",
            session,
            actor=payload.initiated_by,
            from_starts_at=original_starts_at.isoformat() if original_starts_at else None,
            to_starts_at=requested_at.isoformat(),
            quota_consumed=enforce_quota,
        )
        await self._notify_learner(run, "L_session_rescheduled", session)
        if coach is not None:
            await self._notify(run, "C_session_rescheduled", coach.email, session_snapshot(session))
        return "ok", data

    async def _compensate_lost_race(
        self,
        run: _Run,
        session: ScheduledSession,
        event: CalendarEvent,
        *,
        created: bool,
        bot_id: str | None,
    ) -> None:
        """Undo the external side effects of a reschedule whose commit lost the race."""
        logger.warning(
            "reschedule_conflict session_id=%s request_id=%s event_id=%s",
            session.id,
            run.request_id,
            event.event_id,
        )
        coach = await self._coach(session.coach_id)
        organizer = coach.email if coach else None
        if created:
            await self._call(
                run,
                "calendar",
                AdapterPolicy.BEST_EFFORT,
                lambda: self.calendar.cancel_event(event.event_id, organizer_email=organizer),
            )
        elif session.starts_at is not None:
            committed_at = session.starts_at
            end = committed_at + timedelta(minutes=session.duration_minutes)
            await self._call(
                run,
                "calendar",
                AdapterPolicy.BEST_EFFORT,
                lambda: self.calendar.update_event(
                    event.event_id, start=committed_at, end=end, organizer_email=organizer
                ),
            )
        await self._cancel_bot(run, bot_id)

    async def _reassign_coach(self, payload: ReassignPayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        enrollment = await self._load_enrollment(session.enrollment_id)
        new_coach = await self._coach(payload.coach_id)
        if new_coach is None:
            raise NotFound(f"Coach {payload.coach_id} not found")

        if session.coach_id == new_coach.id:
            return "noop", {"session": session_snapshot(session)}

        now = self.clock()
        old_coach = await self._coach(session.coach_id)
        request = await self.repos.sessions.add_change_request(
            session_id=session.id,
            enrollment_id=enrollment.id,
            kind="reassign",
            original_starts_at=session.starts_at,
            requested_starts_at=session.starts_at,
            original_coach_id=session.coach_id,
            requested_coach_id=new_coach.id,
            initiated_by=payload.initiated_by,
            reason=payload.reason,
            status="pending",
        )

        denial: str | None = None
        if not new_coach.is_active:
            denial = f"Coach {new_coach.name} is not active"
        elif session.status not in (PENDING, SCHEDULED):
            denial = f"Only pending or scheduled sessions can be reassigned (session is {session.status.replace('_', ' ')})"
        elif session.status == SCHEDULED and session.starts_at is not None and session.starts_at <= now:
            denial = "Cannot reassign a session that has already started or passed"
        elif session.status == SCHEDULED and session.starts_at is not None:
            if await self._find_clash(new_coach.id, session, session.starts_at) is not None:
                denial = f"Coach {new_coach.name} already has another session at that time"
        if denial:
            await self.repos.sessions.finish_change_request(request, status="rejected", detail=denial, processed_at=now)
            raise PolicyDenied(denial)

        data: dict[str, Any] = {}
        old_event_id = session.calendar_event_id
        old_bot_id = session.recording_bot_id

        if session.status == SCHEDULED and old_event_id and session.starts_at is not None:
            starts_at = session.starts_at
            try:
                event = await self._create_event(run, session, starts_at=starts_at, coach=new_coach)
            except AdapterFailure as exc:
                await self.repos.sessions.finish_change_request(
                    request, status="failed", detail=exc.message, processed_at=self.clock()
                )
                raise
            bot_id, bot_error = await self._schedule_bot(
                run, session, meeting_url=event.meeting_url, starts_at=starts_at
            )
            await self.repos.sessions.update(
                session,
                coach_id=new_coach.id,
                calendar_event_id=event.event_id,
                meeting_url=event.meeting_url,
                recording_bot_id=bot_id,
            )
            if bot_error:
                data["queue_item_id"] = await self._escalate_bot_failure(run, session, bot_error)

            old_organizer = old_coach.email if old_coach else None
            await self._call(
                run,
                "calendar",
                AdapterPolicy.BEST_EFFORT,
                lambda: self.calendar.cancel_event(old_event_id, organizer_email=old_organizer),
            )
            await self._cancel_bot(run, old_bot_id)
        else:
            await self.repos.sessions.update(session, coach_id=new_coach.id)

        await self.repos.sessions.finish_change_request(request, status="approved", detail=None, processed_at=self.clock())
        await self._audit(
            run,
            "session_coach_reassigned",
            session,
            actor=payload.initiated_by,
            from_coach_id=old_coach.id if old_coach else None,
            to_coach_id=new_coach.id,
        )

        variables = session_snapshot(session)
        if old_coach is not None:
            await self._notify(run, "C_session_reassigned_away", old_coach.email, variables)
        await self._notify(run, "C_session_assigned", new_coach.email, variables)

        data.update({"session": variables, "meeting_url": session.meeting_url, "change_request_id": request.id})
        return "ok", data

    async def _cancel(self, payload: CancelPayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        if session.status == CANCELLED:
            return "noop", {"session": session_snapshot(session)}
        ensure_transition(session.status, CANCELLED)

        coach = await self._coach(session.coach_id)
        event_id = session.calendar_event_id
        if event_id:
            organizer = coach.email if coach else None
            await self._call(
                run,
                "calendar",
                AdapterPolicy.BEST_EFFORT,
                lambda: self.calendar.cancel_event(event_id, organizer_email=organizer),
            )
        await self._cancel_bot(run, session.recording_bot_id)

        await self.repos.sessions.update(session, status=CANCELLED, cancellation_reason=payload.reason)
        await self.queue.auto_resolve_for_session(session.id, notes="Session cancelled", resolved_by=payload.cancelled_by)
        await self._audit(run, "session_cancelled", session, actor=payload.cancelled_by, reason=payload.reason)
        await self._notify_learner(run, "L_session_cancelled", session)
        return "ok", {"session": session_snapshot(session)}

    async def _start(self, payload: SessionRefPayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        if session.status == IN_PROGRESS:
            return "noop", {"session": session_snapshot(session)}
        ensure_transition(session.status, IN_PROGRESS)
        await self.repos.sessions.update(session, status=IN_PROGRESS)
        await self._audit(run, "session_started", session)
        return "ok", {"session": session_snapshot(session)}

    async def _complete(self, payload: SessionRefPayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        if session.status == COMPLETED:
            return "noop", {"session": session_snapshot(session)}
        ensure_transition(session.status, COMPLETED)

        await self.repos.sessions.update(session, status=COMPLETED, completed_at=self.clock())
        enrollment = await self.repos.enrollments.increment_completed(session.enrollment_id)
        if enrollment.status == "active" and enrollment.sessions_completed >= enrollment.total_sessions:
            await self.repos.enrollments.update(enrollment, status="season_completed", program_end=self.clock())
            await self.repos.audit.log(
                "enrollment_season_completed",
                {"enrollment_id": enrollment.id, "request_id": run.request_id},
            )

        await self._audit(run, "session_completed", session, sessions_completed=enrollment.sessions_completed)
        return "ok", {
            "session": session_snapshot(session),
            "sessions_completed": enrollment.sessions_completed,
            "enrollment_status": enrollment.status,
        }

    async def _no_show(self, payload: SessionRefPayload, run: _Run) -> tuple[str, dict[str, Any]]:
        session = await self._load_session(payload.session_id)
        if session.status == NO_SHOW:
            return "noop", {"session": session_snapshot(session)}
        ensure_transition(session.status, NO_SHOW)

        await self.repos.sessions.update(session, status=NO_SHOW)
        await self._cancel_bot(run, session.recording_bot_id)
        enrollment = await self.repos.enrollments.record_no_show(session.enrollment_id)

        threshold = settings.no_show_at_risk_threshold
        if not enrollment.at_risk and enrollment.consecutive_no_shows >= threshold:
            await self.repos.enrollments.update(enrollment, at_risk=True)
            logger.warning(
                "enrollment_at_risk enrollment_id=%s consecutive_no_shows=%s request_id=%s",
                enrollment.id,
                enrollment.consecutive_no_shows,
                run.request_id,
            )
            await self._notify(
                run,
                "A_enrollment_at_risk",
                settings.operator_notification_recipient,
                {
                    "enrollment_id": enrollment.id,
                    "learner_id": enrollment.learner_id,
                    "consecutive_no_shows": enrollment.consecutive_no_shows,
                },
            )

        await self._audit(run, "session_no_show", session, consecutive_no_shows=enrollment.consecutive_no_shows)
        return "ok", {
            "session": session_snapshot(session),
            "consecutive_no_shows": enrollment.consecutive_no_shows,
            "at_risk": enrollment.at_risk,
        }
