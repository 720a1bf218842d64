from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class ScheduleIn(BaseModel):
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str = Field(pattern=r"^\d{2}:\d{2}$")
    coach_id: int | None = Field(default=None, gt=0)


class RescheduleIn(BaseModel):
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str = Field(pattern=r"^\d{2}:\d{2}$")
    initiated_by: Literal["learner", "parent", "coach", "operator"] = "parent"
    reason: str | None = Field(default=None, max_length=2000)


class ReassignIn(BaseModel):
    coach_id: int = Field(gt=0)
    reason: str | None = Field(default=None, max_length=2000)


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class SessionOut(BaseModel):
    id: int
    enrollment_id: int
    learner_id: int
    coach_id: int | None = None
    sequence_number: int
    session_type: str
    status: str
    starts_at: datetime | None = None
    duration_minutes: int
    calendar_event_id: str | None = None
    meeting_url: str | None = None
    recording_bot_id: str | None = None
    cancellation_reason: str | None = None
    completed_at: datetime | None = None


class QueueItemOut(BaseModel):
    id: int
    session_id: int | None = None
    enrollment_id: int | None = None
    learner_id: int | None = None
    coach_id: int | None = None
    reason: str
    status: str
    attempts_made: int
    history: list[dict] = Field(default_factory=list)
    assigned_to: str | None = None
    resolution_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime


class QueueListOut(BaseModel):
    items: list[QueueItemOut]
    total: int
    limit: int
    offset: int
    stats: dict[str, int]


class QueueResolveIn(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)
    date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    coach_id: int | None = Field(default=None, gt=0)


class QueueResolveOut(BaseModel):
    item: QueueItemOut
    resolved: bool
    results: list[dict] = Field(default_factory=list)


class TerminateIn(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class TerminationOut(BaseModel):
    enrollment_id: int
    refund_kind: str
    refund_amount_minor: int
    refund_id: str | None = None
    cancelled_sessions: list[int] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CronRunOut(BaseModel):
    success: bool
    request_id: str
    processed: int = 0
    recovered: int = 0
    already_enrolled: int = 0
    failed: int = 0
    total: int = 0
