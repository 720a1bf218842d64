"""Manual scheduling queue.

Sessions the system could not fully book on its own land here for an
operator. There is at most one open item per session; repeated escalations
append to that item's history instead of opening another one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.core.config import settings
from app.core.errors import Conflict, Internal, NotFound, ValidationError
from app.models.common import utcnow
from app.models.scheduling import ScheduledSession, SchedulingQueueItem
from app.repositories.base import QueueFilters, Repositories
from app.services.adapters import AdapterPolicy, Notifier, call_adapter
from app.services.session_states import PENDING

if TYPE_CHECKING:
    from app.services.orchestrator import DispatchResult, SchedulingOrchestrator

logger = logging.getLogger(__name__)

OPEN = ("pending", "in_progress")
RECORDING_BOT_REASON = "Recording bot not scheduled"
MAX_PAGE_SIZE = 100


@dataclass(slots=True)
class QueuePage:
    items: list[SchedulingQueueItem]
    total: int
    stats: dict[str, int]
    limit: int
    offset: int


@dataclass(slots=True)
class QueueResolution:
    item: SchedulingQueueItem
    resolved: bool
    results: list[DispatchResult] = field(default_factory=list)
    error: str | None = None
    status: str = "ok"


def _entry(at: datetime, event: str, detail: str | None = None, **extra: Any) -> dict[str, Any]:
    row: dict[str, Any] = {"at": at.isoformat(), "event": event, "detail": detail}
    row.update({k: v for k, v in extra.items() if v is not None})
    return row


def _escalated_only_for(item: SchedulingQueueItem, prefix: str) -> bool:
    reasons = [item.reason] + [x.get("detail") for x in item.history or [] if x.get("event") == "escalated"]
    return all(str(x or "").startswith(prefix) for x in reasons)


class SchedulingQueueService:
    def __init__(
        self,
        repos: Repositories,
        *,
        notifier: Notifier,
        orchestrator: SchedulingOrchestrator | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.repos = repos
        self.notifier = notifier
        self.orchestrator = orchestrator
        self.clock = clock or utcnow
        self.timeout = float(timeout if timeout is not None else settings.adapter_timeout_seconds)

    async def escalate(
        self,
        session: ScheduledSession,
        reason: str,
        *,
        context: dict[str, Any] | None = None,
    ) -> SchedulingQueueItem:
        now = self.clock()
        entry = _entry(now, "escalated", reason, **(context or {}))

        existing = await self.repos.queue.find_open_for_session(session.id)
        if existing is not None:
            await self.repos.queue.update(existing, history=[*(existing.history or []), entry])
            logger.info("scheduling_queue_reescalated queue_id=%s session_id=%s", existing.id, session.id)
            return existing

        item = await self.repos.queue.add(
            session_id=session.id,
            enrollment_id=session.enrollment_id,
            learner_id=session.learner_id,
            coach_id=session.coach_id,
            reason=reason,
            status="pending",
            attempts_made=0,
            history=[entry],
        )
        logger.warning(
            "scheduling_queue_escalated queue_id=%s session_id=%s reason=%s",
            item.id,
            session.id,
            reason,
        )
        await call_adapter(
            "notifications",
            AdapterPolicy.BEST_EFFORT,
            lambda: self.notifier.notify(
                "A_manual_scheduling_needed",
                settings.operator_notification_recipient,
                {
                    "queue_id": item.id,
                    "session_id": session.id,
                    "enrollment_id": session.enrollment_id,
                    "reason": reason,
                },
            ),
            timeout=self.timeout,
            request_id=(context or {}).get("request_id"),
        )
        return item

    async def list(self, filters: QueueFilters) -> QueuePage:
        if filters.limit < 1 or filters.limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if filters.offset < 0:
            raise ValidationError("offset must not be negative")
        if filters.status and filters.status not in ("pending", "in_progress", "resolved"):
            raise ValidationError("status must be pending, in_progress or resolved")
        items, total = await self.repos.queue.list(filters)
        stats = await self.repos.queue.stats()
        return QueuePage(items=items, total=total, stats=stats, limit=filters.limit, offset=filters.offset)

    async def _get(self, queue_id: int) -> SchedulingQueueItem:
        item = await self.repos.queue.get(queue_id)
        if item is None:
            raise NotFound(f"Queue item {queue_id} not found")
        return item

    async def claim(self, queue_id: int, operator: str) -> SchedulingQueueItem:
        item = await self._get(queue_id)
        if item.status == "resolved":
            raise Conflict(f"Queue item {queue_id} is already resolved")
        if item.status == "in_progress":
            if item.assigned_to == operator:
                return item
            raise Conflict(f"Queue item {queue_id} is already claimed by {item.assigned_to}")

        await self.repos.queue.update(
            item,
            status="in_progress",
            assigned_to=operator,
            history=[*(item.history or []), _entry(self.clock(), "claimed", operator=operator)],
        )
        return item

    async def resolve(
        self,
        queue_id: int,
        *,
        notes: str | None,
        resolved_by: str,
        date: str | None = None,
        time: str | None = None,
        coach_id: int | None = None,
        request_id: str | None = None,
    ) -> QueueResolution:
        item = await self._get(queue_id)
        if item.status == "resolved":
            return QueueResolution(item=item, resolved=True, status="noop")
        if (date is None) != (time is None):
            raise ValidationError("date and time must be supplied together")

        results: list[DispatchResult] = []
        if coach_id is not None or date is not None:
            if item.session_id is None:
                raise ValidationError(f"Queue item {queue_id} has no session to correct")
            if self.orchestrator is None:
                raise Internal("Scheduling queue is not wired to an orchestrator")

            if coach_id is not None:
                result = await self.orchestrator.dispatch(
                    "session.reassignCoach",
                    {"session_id": item.session_id, "coach_id": coach_id, "initiated_by": "operator", "reason": notes},
                    request_id=request_id,
                )
                results.append(result)
                if not result.success:
                    return await self._correction_failed(item, results, resolved_by)

            if date is not None:
                session = await self.repos.sessions.get(item.session_id)
                if session is None:
                    raise NotFound(f"Session {item.session_id} not found")
                if session.status == PENDING:
                    result = await self.orchestrator.dispatch(
                        "session.schedule",
                        {"session_id": session.id, "date": date, "time": time},
                        request_id=request_id,
                    )
                else:
                    result = await self.orchestrator.dispatch(
                        "session.reschedule",
                        {
                            "session_id": session.id,
                            "date": date,
                            "time": time,
                            "initiated_by": "operator",
                            "reason": notes,
                        },
                        request_id=request_id,
                    )
                results.append(result)
                if not result.success:
                    return await self._correction_failed(item, results, resolved_by)

        now = self.clock()
        await self.repos.queue.update(
            item,
            status="resolved",
            resolution_notes=notes,
            resolved_by=resolved_by,
            resolved_at=now,
            history=[*(item.history or []), _entry(now, "resolved", notes, operator=resolved_by)],
        )
        await self.repos.audit.log(
            "scheduling_queue_resolved",
            {"queue_id": item.id, "session_id": item.session_id, "corrections": len(results)},
            actor=resolved_by,
        )
        return QueueResolution(item=item, resolved=True, results=results)

    async def _correction_failed(
        self,
        item: SchedulingQueueItem,
        results: list[DispatchResult],
        operator: str,
    ) -> QueueResolution:
        failed = results[-1]
        await self.repos.queue.update(
            item,
            status="pending",
            assigned_to=None,
            attempts_made=int(item.attempts_made or 0) + 1,
            history=[
                *(item.history or []),
                _entry(self.clock(), "correction_failed", failed.error, command=failed.command, operator=operator),
            ],
        )
        logger.warning(
            "scheduling_queue_correction_failed queue_id=%s command=%s status=%s error=%s",
            item.id,
            failed.command,
            failed.status,
            failed.error,
        )
        return QueueResolution(item=item, resolved=False, results=results, error=failed.error, status=failed.status)

    async def auto_resolve_for_session(
        self,
        session_id: int,
        *,
        notes: str,
        resolved_by: str = "system",
        reason_prefix: str | None = None,
    ) -> SchedulingQueueItem | None:
        item = await self.repos.queue.find_open_for_session(session_id)
        if item is None:
            return None
        now = self.clock()
        if reason_prefix is not None and not _escalated_only_for(item, reason_prefix):
            await self.repos.queue.update(item, history=[*(item.history or []), _entry(now, "note", notes)])
            logger.info("scheduling_queue_left_open queue_id=%s session_id=%s", item.id, session_id)
            return None
        await self.repos.queue.update(
            item,
            status="resolved",
            resolution_notes=notes,
            resolved_by=resolved_by,
            resolved_at=now,
            history=[*(item.history or []), _entry(now, "auto_resolved", notes)],
        )
        logger.info("scheduling_queue_auto_resolved queue_id=%s session_id=%s", item.id, session_id)
        return item
