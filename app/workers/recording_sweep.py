from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.config import settings
from app.models.common import utcnow
from app.repositories.base import Repositories
from app.services.adapters import AdapterPolicy, RecordingBotAdapter, call_adapter
from app.services.scheduling_queue import RECORDING_BOT_REASON, SchedulingQueueService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepSummary:
    checked: int = 0
    scheduled: int = 0
    failed: int = 0
    resolved_queue_items: int = 0


class RecordingSweep:
    """Books recording bots for upcoming sessions that still have none."""

    def __init__(
        self,
        repos: Repositories,
        *,
        bots: RecordingBotAdapter,
        queue: SchedulingQueueService,
        clock: Callable[[], datetime] | None = None,
        horizon_hours: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.repos = repos
        self.bots = bots
        self.queue = queue
        self.clock = clock or utcnow
        self.horizon = timedelta(
            hours=horizon_hours if horizon_hours is not None else settings.recording_sweep_horizon_hours
        )
        self.timeout = float(timeout if timeout is not None else settings.adapter_timeout_seconds)

    async def run_once(self, *, request_id: str | None = None, limit: int = 50) -> SweepSummary:
        now = self.clock()
        rows = await self.repos.sessions.upcoming_without_bot(now, now + self.horizon, limit=limit)
        summary = SweepSummary(checked=len(rows))

        for session in rows:
            metadata = {
                "session_id": str(session.id),
                "enrollment_id": str(session.enrollment_id),
                "source": "recording_sweep",
            }
            result = await call_adapter(
                "recording_bot",
                AdapterPolicy.BEST_EFFORT,
                lambda: self.bots.schedule_bot(session.meeting_url or "", session.starts_at, metadata),
                timeout=self.timeout,
                request_id=request_id,
            )
            if not result.ok:
                summary.failed += 1
                continue

            await self.repos.sessions.update(session, recording_bot_id=str(result.value))
            summary.scheduled += 1
            item = await self.queue.auto_resolve_for_session(
                session.id,
                notes="Recording bot scheduled by sweep",
                reason_prefix=RECORDING_BOT_REASON,
            )
            if item is not None:
                summary.resolved_queue_items += 1

        logger.info(
            "recording_sweep_done checked=%d scheduled=%d failed=%d resolved=%d request_id=%s",
            summary.checked,
            summary.scheduled,
            summary.failed,
            summary.resolved_queue_items,
            request_id,
        )
        return summary
