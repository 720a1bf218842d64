from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.v1.deps import get_bots, get_gateway, get_notifier, get_orchestrator, get_request_id, get_retry_service
from app.core.errors import AdapterFailure
from app.schemas.scheduling import CronRunOut
from app.services.adapters import Notifier, PaymentGateway, RecordingBotAdapter
from app.services.cron_auth import require_trigger
from app.services.orchestrator import SchedulingOrchestrator
from app.services.scheduling_retry import SchedulingRetryService
from app.workers.reconciliation import PaymentReconciliationWorker
from app.workers.recording_sweep import RecordingSweep

router = APIRouter(prefix="/cron", tags=["cron"])
logger = logging.getLogger(__name__)


async def _payment_reconciliation(
    orchestrator: SchedulingOrchestrator,
    gateway: PaymentGateway,
    notifier: Notifier,
    retries: SchedulingRetryService,
    request_id: str,
) -> CronRunOut:
    worker = PaymentReconciliationWorker(
        orchestrator.repos,
        gateway=gateway,
        orchestrator=orchestrator,
        notifier=notifier,
        retries=retries,
    )
    try:
        summary = await worker.run_once(request_id=request_id)
    except AdapterFailure as exc:
        logger.error("payment_reconciliation_failed request_id=%s error=%s", request_id, exc.message)
        raise HTTPException(status_code=502, detail={"success": False, "request_id": request_id, "error": exc.message}) from exc
    return CronRunOut(
        success=True,
        request_id=request_id,
        processed=summary.total,
        recovered=summary.recovered,
        already_enrolled=summary.already_enrolled,
        failed=summary.failed,
        total=summary.total,
    )


@router.post(
    "/payment-reconciliation",
    response_model=CronRunOut,
    dependencies=[Depends(require_trigger("payment-reconciliation"))],
)
async def run_payment_reconciliation(
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    retries: SchedulingRetryService = Depends(get_retry_service),
    request_id: str = Depends(get_request_id),
) -> CronRunOut:
    return await _payment_reconciliation(orchestrator, gateway, notifier, retries, request_id)


@router.get(
    "/payment-reconciliation",
    response_model=CronRunOut,
    dependencies=[Depends(require_trigger("payment-reconciliation"))],
)
async def run_payment_reconciliation_get(
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    retries: SchedulingRetryService = Depends(get_retry_service),
    request_id: str = Depends(get_request_id),
) -> CronRunOut:
    return await _payment_reconciliation(orchestrator, gateway, notifier, retries, request_id)


@router.post(
    "/recording-sweep",
    response_model=CronRunOut,
    dependencies=[Depends(require_trigger("recording-sweep"))],
)
async def run_recording_sweep(
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    bots: RecordingBotAdapter = Depends(get_bots),
    request_id: str = Depends(get_request_id),
) -> CronRunOut:
    sweep = RecordingSweep(orchestrator.repos, bots=bots, queue=orchestrator.queue)
    summary = await sweep.run_once(request_id=request_id)
    return CronRunOut(
        success=True,
        request_id=request_id,
        processed=summary.checked,
        recovered=summary.scheduled,
        failed=summary.failed,
        total=summary.checked,
    )
