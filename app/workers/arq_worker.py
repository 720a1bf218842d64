from __future__ import annotations

from dataclasses import asdict

from arq.connections import RedisSettings
from arq.cron import cron

from app.api.v1.deps import build_orchestrator
from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.repositories.sql import sql_repositories
from app.services.calendar import GoogleCalendarAdapter
from app.services.notifications import RedisNotifier
from app.services.payments import RazorpayGateway
from app.services.recording import RecallBotAdapter
from app.services.scheduling_retry import ArqRetryEnqueuer, SchedulingRetryService
from app.workers.reconciliation import PaymentReconciliationWorker
from app.workers.recording_sweep import RecordingSweep


async def startup(ctx) -> None:
    configure_logging()


async def payment_reconciliation_job(ctx) -> dict:
    request_id = f"arq-{ctx.get('job_id') or 'cron'}"
    notifier = RedisNotifier()
    async with SessionLocal() as db:
        repos = sql_repositories(db)
        orchestrator = build_orchestrator(
            repos,
            calendar=GoogleCalendarAdapter(),
            bots=RecallBotAdapter(),
            notifier=notifier,
        )
        worker = PaymentReconciliationWorker(
            repos,
            gateway=RazorpayGateway(),
            orchestrator=orchestrator,
            notifier=notifier,
            retries=SchedulingRetryService(orchestrator, enqueuer=ArqRetryEnqueuer(ctx["redis"])),
        )
        summary = await worker.run_once(request_id=request_id)
    return summary.as_dict()


async def recording_sweep_job(ctx) -> dict:
    request_id = f"arq-{ctx.get('job_id') or 'cron'}"
    async with SessionLocal() as db:
        repos = sql_repositories(db)
        orchestrator = build_orchestrator(
            repos,
            calendar=GoogleCalendarAdapter(),
            bots=RecallBotAdapter(),
            notifier=RedisNotifier(),
        )
        sweep = RecordingSweep(repos, bots=orchestrator.bots, queue=orchestrator.queue)
        summary = await sweep.run_once(request_id=request_id)
    return asdict(summary)


async def retry_session_schedule(
    ctx,
    session_id: int,
    date: str,
    time: str,
    attempt: int,
    request_id: str | None = None,
) -> dict:
    async with SessionLocal() as db:
        repos = sql_repositories(db)
        orchestrator = build_orchestrator(
            repos,
            calendar=GoogleCalendarAdapter(),
            bots=RecallBotAdapter(),
            notifier=RedisNotifier(),
        )
        retries = SchedulingRetryService(orchestrator, enqueuer=ArqRetryEnqueuer(ctx["redis"]))
        result = await retries.run_attempt(session_id, date, time, attempt=attempt, request_id=request_id)
    if result is None:
        return {"skipped": True, "session_id": session_id, "attempt": attempt}
    return result.model_dump()


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    on_startup = startup
    functions = [payment_reconciliation_job, recording_sweep_job, retry_session_schedule]
    cron_jobs = [
        # 30 17 * * * (UTC)
        cron(payment_reconciliation_job, hour={17}, minute={30}, run_at_startup=False),
        cron(recording_sweep_job, minute={0, 30}),
    ]
