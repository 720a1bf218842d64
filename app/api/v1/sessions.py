from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from app.api.v1.deps import get_orchestrator, get_repositories, get_request_id, http_status_for
from app.core.config import settings
from app.models.scheduling import ScheduledSession
from app.repositories.base import Repositories
from app.schemas.scheduling import CancelIn, ReassignIn, RescheduleIn, ScheduleIn, SessionOut
from app.services.auth import AuthUser, get_current_user, require_role
from app.services.orchestrator import (
    CANCEL,
    COMPLETE,
    NO_SHOW_COMMAND,
    REASSIGN_COACH,
    RESCHEDULE,
    SCHEDULE,
    START,
    DispatchResult,
    SchedulingOrchestrator,
)

router = APIRouter(tags=["sessions"])


def _to_session_out(row: ScheduledSession) -> SessionOut:
    return SessionOut(
        id=row.id,
        enrollment_id=row.enrollment_id,
        learner_id=row.learner_id,
        coach_id=row.coach_id,
        sequence_number=row.sequence_number,
        session_type=row.session_type,
        status=row.status,
        starts_at=row.starts_at,
        duration_minutes=row.duration_minutes,
        calendar_event_id=row.calendar_event_id,
        meeting_url=row.meeting_url,
        recording_bot_id=row.recording_bot_id,
        cancellation_reason=row.cancellation_reason,
        completed_at=row.completed_at,
    )


def _respond(result: DispatchResult) -> DispatchResult:
    if not result.success:
        raise HTTPException(
            status_code=http_status_for(result.status),
            detail={
                "status": result.status,
                "error": result.error,
                "request_id": result.request_id,
                "data": result.data,
                "warnings": result.warnings,
            },
        )
    return result


async def _dispatch(
    orchestrator: SchedulingOrchestrator,
    command: str,
    payload: dict[str, Any],
    request_id: str,
) -> DispatchResult:
    return _respond(await orchestrator.dispatch(command, payload, request_id=request_id))


@router.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: int,
    repos: Repositories = Depends(get_repositories),
    _: AuthUser = Depends(get_current_user),
) -> SessionOut:
    row = await repos.sessions.get(session_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _to_session_out(row)


@router.get("/enrollments/{enrollment_id}/sessions", response_model=list[SessionOut])
async def list_enrollment_sessions(
    enrollment_id: int,
    repos: Repositories = Depends(get_repositories),
    _: AuthUser = Depends(get_current_user),
) -> list[SessionOut]:
    if await repos.enrollments.get(enrollment_id) is None:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return [_to_session_out(x) for x in await repos.sessions.list_for_enrollment(enrollment_id)]


@router.post("/sessions/{session_id}/schedule", response_model=DispatchResult)
async def schedule_session(
    session_id: int,
    payload: ScheduleIn,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    _: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    return await _dispatch(orchestrator, SCHEDULE, {"session_id": session_id, **payload.model_dump()}, request_id)


@router.post("/sessions/{session_id}/reschedule", response_model=DispatchResult)
async def reschedule_session(
    session_id: int,
    payload: RescheduleIn,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    user: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    if payload.initiated_by == "operator":
        require_role(user, settings.admin_role_set)
    return await _dispatch(orchestrator, RESCHEDULE, {"session_id": session_id, **payload.model_dump()}, request_id)


@router.post("/sessions/{session_id}/reassign", response_model=DispatchResult)
async def reassign_session(
    session_id: int,
    payload: ReassignIn,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    user: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    initiated_by = "operator" if settings.admin_role_set.intersection(user.roles) else "coach"
    body = {"session_id": session_id, "initiated_by": initiated_by, **payload.model_dump()}
    return await _dispatch(orchestrator, REASSIGN_COACH, body, request_id)


@router.post("/sessions/{session_id}/cancel", response_model=DispatchResult)
async def cancel_session(
    session_id: int,
    payload: CancelIn,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    user: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    body = {"session_id": session_id, "cancelled_by": user.actor, "reason": payload.reason}
    return await _dispatch(orchestrator, CANCEL, body, request_id)


@router.post("/sessions/{session_id}/start", response_model=DispatchResult)
async def start_session(
    session_id: int,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    _: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    return await _dispatch(orchestrator, START, {"session_id": session_id}, request_id)


@router.post("/sessions/{session_id}/complete", response_model=DispatchResult)
async def complete_session(
    session_id: int,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    _: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    return await _dispatch(orchestrator, COMPLETE, {"session_id": session_id}, request_id)


@router.post("/sessions/{session_id}/no-show", response_model=DispatchResult)
async def mark_no_show(
    session_id: int,
    orchestrator: SchedulingOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
    _: AuthUser = Depends(get_current_user),
) -> DispatchResult:
    return await _dispatch(orchestrator, NO_SHOW_COMMAND, {"session_id": session_id}, request_id)
