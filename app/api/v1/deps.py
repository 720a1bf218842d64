from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator

from arq import create_pool
from arq.connections import RedisSettings
from fastapi import Depends, Header
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import SchedulingError
from app.db.session import get_db
from app.repositories.base import Repositories
from app.repositories.sql import sql_repositories
from app.services.adapters import CalendarAdapter, Notifier, PaymentGateway, RecordingBotAdapter
from app.services.calendar import GoogleCalendarAdapter
from app.services.notifications import RedisNotifier
from app.services.orchestrator import SchedulingOrchestrator
from app.services.payments import RazorpayGateway
from app.services.recording import RecallBotAdapter
from app.services.refunds import EnrollmentTerminationService
from app.services.scheduling_queue import SchedulingQueueService
from app.services.scheduling_retry import ArqRetryEnqueuer, RetryEnqueuer, SchedulingRetryService

logger = logging.getLogger(__name__)

# Status carried on a dispatch result -> HTTP status code.
HTTP_STATUS = {
    "ok": 200,
    "noop": 200,
    "validation_error": 422,
    "not_found": 404,
    "policy_denied": 409,
    "conflict": 409,
    "adapter_failure": 502,
    "internal": 500,
}


def http_status_for(result_status: str) -> int:
    return HTTP_STATUS.get(result_status, 500)


def error_detail(exc: SchedulingError) -> dict:
    return {"status": exc.status, "error": exc.message, **({"details": exc.details} if exc.details else {})}


def get_request_id(x_request_id: str | None = Header(default=None, alias="X-Request-Id")) -> str:
    return (x_request_id or "").strip()[:80] or uuid.uuid4().hex


async def get_repositories(db: AsyncSession = Depends(get_db)) -> Repositories:
    return sql_repositories(db)


def get_calendar() -> CalendarAdapter:
    return GoogleCalendarAdapter()


def get_bots() -> RecordingBotAdapter:
    return RecallBotAdapter()


def get_gateway() -> PaymentGateway:
    return RazorpayGateway()


def get_notifier() -> Notifier:
    return RedisNotifier()


def build_orchestrator(
    repos: Repositories,
    *,
    calendar: CalendarAdapter,
    bots: RecordingBotAdapter,
    notifier: Notifier,
) -> SchedulingOrchestrator:
    queue = SchedulingQueueService(repos, notifier=notifier)
    return SchedulingOrchestrator(repos, calendar=calendar, bots=bots, notifier=notifier, queue=queue)


async def get_orchestrator(
    repos: Repositories = Depends(get_repositories),
    calendar: CalendarAdapter = Depends(get_calendar),
    bots: RecordingBotAdapter = Depends(get_bots),
    notifier: Notifier = Depends(get_notifier),
) -> SchedulingOrchestrator:
    return build_orchestrator(repos, calendar=calendar, bots=bots, notifier=notifier)


async def get_queue_service(
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
) -> SchedulingQueueService:
    return orchestrator.queue


async def get_termination_service(
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> EnrollmentTerminationService:
    return EnrollmentTerminationService(
        orchestrator.repos,
        gateway=gateway,
        orchestrator=orchestrator,
        notifier=notifier,
    )


async def get_retry_enqueuer() -> AsyncIterator[RetryEnqueuer | None]:
    try:
        pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    except (RedisError, OSError) as exc:
        # Without Redis a failed attempt goes straight to the manual queue.
        logger.warning("scheduling_retry_pool_unavailable error=%s", exc)
        yield None
        return
    try:
        yield ArqRetryEnqueuer(pool)
    finally:
        await pool.aclose()


async def get_retry_service(
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    enqueuer: RetryEnqueuer | None = Depends(get_retry_enqueuer),
) -> SchedulingRetryService:
    return SchedulingRetryService(orchestrator, enqueuer=enqueuer)
