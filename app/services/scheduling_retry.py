"""Deferred retries for sessions whose automatic scheduling failed.

A failed ``schedule`` is tried again after each configured delay (1h, 6h and
24h by default) before the session lands in the manual scheduling queue.
Only transient failures are retried; a validation error or a slot conflict
goes to an operator straight away.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Protocol

from arq.connections import ArqRedis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.errors import AdapterFailure, Internal
from app.models.scheduling import ScheduledSession
from app.services.orchestrator import SCHEDULE, DispatchResult, SchedulingOrchestrator

logger = logging.getLogger(__name__)

RETRY_JOB = "retry_session_schedule"
TRANSIENT = (AdapterFailure.status, Internal.status)

RETRYING = "retrying"
ESCALATED = "escalated"


class RetryEnqueuer(Protocol):
    async def enqueue(
        self,
        *,
        session_id: int,
        date: str,
        time: str,
        attempt: int,
        defer_by: timedelta,
        request_id: str | None,
    ) -> str | None: ...


class ArqRetryEnqueuer:
    """Defers the next attempt as an arq job on the worker's Redis."""

    def __init__(self, pool: ArqRedis) -> None:
        self.pool = pool

    async def enqueue(
        self,
        *,
        session_id: int,
        date: str,
        time: str,
        attempt: int,
        defer_by: timedelta,
        request_id: str | None,
    ) -> str | None:
        job = await self.pool.enqueue_job(
            RETRY_JOB,
            session_id,
            date,
            time,
            attempt,
            request_id,
            _job_id=f"schedule-retry:{session_id}:{attempt}",
            _defer_by=defer_by,
        )
        # None means a job with this id is already queued.
        return job.job_id if job is not None else None


class SchedulingRetryService:
    def __init__(
        self,
        orchestrator: SchedulingOrchestrator,
        *,
        enqueuer: RetryEnqueuer | None = None,
        delays: list[timedelta] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.enqueuer = enqueuer
        if delays is None:
            delays = [timedelta(minutes=m) for m in settings.scheduling_retry_delays]
        self.delays = list(delays)

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    async def handle_failure(
        self,
        session: ScheduledSession,
        *,
        date: str,
        time: str,
        result: DispatchResult,
        attempt: int,
        reason: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Defer another attempt or escalate; returns ``retrying`` or ``escalated``.

        ``attempt`` counts the attempts already made, the immediate one included.
        """
        context = dict(context or {})
        request_id = context.get("request_id")
        if self.enqueuer is not None and result.status in TRANSIENT and attempt < self.max_attempts:
            delay = self.delays[attempt - 1]
            try:
                job_id = await self.enqueuer.enqueue(
                    session_id=session.id,
                    date=date,
                    time=time,
                    attempt=attempt + 1,
                    defer_by=delay,
                    request_id=request_id,
                )
            except (RedisError, OSError) as exc:
                logger.warning("scheduling_retry_enqueue_failed session_id=%s error=%s", session.id, exc)
            else:
                logger.info(
                    "scheduling_retry_deferred session_id=%s attempt=%d delay_s=%d job_id=%s request_id=%s",
                    session.id,
                    attempt + 1,
                    int(delay.total_seconds()),
                    job_id,
                    request_id,
                )
                return RETRYING

        context["attempts"] = attempt
        await self.orchestrator.queue.escalate(session, f"{reason}: {result.error}", context=context)
        return ESCALATED

    async def run_attempt(
        self,
        session_id: int,
        date: str,
        time: str,
        *,
        attempt: int,
        request_id: str | None = None,
    ) -> DispatchResult | None:
        """Deferred attempt; None when the session no longer needs scheduling."""
        session = await self.orchestrator.repos.sessions.get(session_id)
        if session is None or session.status != "pending" or session.starts_at is not None:
            logger.info("scheduling_retry_skipped session_id=%s attempt=%d", session_id, attempt)
            return None
        if await self.orchestrator.repos.queue.find_open_for_session(session_id) is not None:
            logger.info("scheduling_retry_skipped_queued session_id=%s attempt=%d", session_id, attempt)
            return None

        result = await self.orchestrator.dispatch(
            SCHEDULE,
            {"session_id": session_id, "date": date, "time": time},
            request_id=request_id,
        )
        if not result.success:
            await self.handle_failure(
                session,
                date=date,
                time=time,
                result=result,
                attempt=attempt,
                reason=f"Automatic scheduling failed after {attempt} attempts",
                context={"request_id": request_id},
            )
        return result
