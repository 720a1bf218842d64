from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.v1.deps import (
    error_detail,
    get_queue_service,
    get_request_id,
    get_termination_service,
    http_status_for,
)
from app.core.errors import SchedulingError
from app.models.scheduling import SchedulingQueueItem
from app.repositories.base import QueueFilters
from app.schemas.scheduling import (
    QueueItemOut,
    QueueListOut,
    QueueResolveIn,
    QueueResolveOut,
    TerminateIn,
    TerminationOut,
)
from app.services.auth import AuthUser, require_admin
from app.services.refunds import EnrollmentTerminationService
from app.services.scheduling_queue import SchedulingQueueService

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def _to_queue_item_out(row: SchedulingQueueItem) -> QueueItemOut:
    return QueueItemOut(
        id=row.id,
        session_id=row.session_id,
        enrollment_id=row.enrollment_id,
        learner_id=row.learner_id,
        coach_id=row.coach_id,
        reason=row.reason,
        status=row.status,
        attempts_made=int(row.attempts_made or 0),
        history=list(row.history or []),
        assigned_to=row.assigned_to,
        resolution_notes=row.resolution_notes,
        resolved_by=row.resolved_by,
        resolved_at=row.resolved_at,
        created_at=row.created_at,
    )


@router.get("/scheduling/queue", response_model=QueueListOut)
async def list_scheduling_queue(
    status: str | None = Query(default=None),
    enrollment_id: int | None = Query(default=None),
    coach_id: int | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    queue: SchedulingQueueService = Depends(get_queue_service),
    _: AuthUser = Depends(require_admin),
) -> QueueListOut:
    filters = QueueFilters(
        status=status,
        enrollment_id=enrollment_id,
        coach_id=coach_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    page = await queue.list(filters)
    return QueueListOut(
        items=[_to_queue_item_out(x) for x in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        stats=page.stats,
    )


@router.post("/scheduling/queue/{queue_id}/claim", response_model=QueueItemOut)
async def claim_queue_item(
    queue_id: int,
    queue: SchedulingQueueService = Depends(get_queue_service),
    user: AuthUser = Depends(require_admin),
) -> QueueItemOut:
    item = await queue.claim(queue_id, user.actor)
    return _to_queue_item_out(item)


@router.post("/scheduling/queue/{queue_id}/resolve", response_model=QueueResolveOut)
async def resolve_queue_item(
    queue_id: int,
    payload: QueueResolveIn,
    queue: SchedulingQueueService = Depends(get_queue_service),
    request_id: str = Depends(get_request_id),
    user: AuthUser = Depends(require_admin),
) -> QueueResolveOut:
    try:
        resolution = await queue.resolve(
            queue_id,
            notes=payload.notes,
            resolved_by=user.actor,
            date=payload.date,
            time=payload.time,
            coach_id=payload.coach_id,
            request_id=request_id,
        )
    except SchedulingError as exc:
        raise HTTPException(status_code=http_status_for(exc.status), detail=error_detail(exc)) from exc

    if not resolution.resolved:
        raise HTTPException(
            status_code=http_status_for(resolution.status),
            detail={
                "status": resolution.status,
                "error": f"Correction failed, item returned to the queue: {resolution.error}",
                "request_id": request_id,
                "queue_item": _to_queue_item_out(resolution.item).model_dump(mode="json"),
            },
        )
    return QueueResolveOut(
        item=_to_queue_item_out(resolution.item),
        resolved=True,
        results=[x.model_dump(mode="json") for x in resolution.results],
    )


@router.post("/enrollments/{enrollment_id}/terminate", response_model=TerminationOut)
async def terminate_enrollment(
    enrollment_id: int,
    payload: TerminateIn,
    service: EnrollmentTerminationService = Depends(get_termination_service),
    request_id: str = Depends(get_request_id),
    user: AuthUser = Depends(require_admin),
) -> TerminationOut:
    try:
        result = await service.terminate(
            enrollment_id,
            reason=payload.reason,
            requested_by=user.actor,
            request_id=request_id,
        )
    except SchedulingError as exc:
        logger.warning("enrollment_termination_failed enrollment_id=%s error=%s", enrollment_id, exc.message)
        raise HTTPException(status_code=http_status_for(exc.status), detail=error_detail(exc)) from exc
    return TerminationOut(
        enrollment_id=result.enrollment_id,
        refund_kind=result.refund.kind,
        refund_amount_minor=result.refund.amount_minor,
        refund_id=result.refund_id,
        cancelled_sessions=result.cancelled_sessions,
        warnings=result.warnings,
    )
