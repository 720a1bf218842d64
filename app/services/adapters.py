"""Narrow interfaces of the external systems and the single helper used to call them.

Every adapter call made by the orchestrator goes through ``call_adapter`` with
a declared policy: a *mandatory* call aborts the command when it fails, a
*best-effort* call only degrades it. Timeouts count as failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

from app.core.errors import AdapterFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdapterPolicy(str, Enum):
    MANDATORY = "mandatory"
    BEST_EFFORT = "best_effort"


@dataclass(slots=True)
class AdapterCallResult(Generic[T]):
    adapter: str
    policy: AdapterPolicy
    ok: bool
    value: T | None = None
    error: str | None = None

    def unwrap(self) -> T:
        if not self.ok:
            raise AdapterFailure(self.adapter, self.error or "call failed")
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class CalendarEvent:
    event_id: str
    meeting_url: str | None = None


@dataclass(frozen=True, slots=True)
class CapturedPayment:
    """A gateway capture seen during one reconciliation run; never persisted."""

    id: str
    order_id: str | None
    amount_minor: int
    currency: str
    captured_at: datetime | None = None
    notes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GatewayRefund:
    id: str
    amount_minor: int
    notes: dict[str, Any] = field(default_factory=dict)


class CalendarAdapter(Protocol):
    async def create_event(
        self,
        *,
        attendees: list[str],
        start: datetime,
        end: datetime,
        title: str,
        organizer_email: str | None = None,
    ) -> CalendarEvent: ...

    async def update_event(
        self,
        event_id: str,
        *,
        start: datetime,
        end: datetime,
        organizer_email: str | None = None,
    ) -> CalendarEvent: ...

    async def cancel_event(self, event_id: str, *, organizer_email: str | None = None) -> None: ...


class PaymentGateway(Protocol):
    async def list_captured(self, from_ts: datetime, to_ts: datetime) -> list[CapturedPayment]: ...

    async def refund(self, payment_id: str, amount_minor: int, notes: dict[str, str] | None = None) -> str: ...

    async def list_refunds(self, payment_id: str) -> list[GatewayRefund]: ...


class RecordingBotAdapter(Protocol):
    async def schedule_bot(self, meeting_url: str, join_at: datetime, metadata: dict[str, str]) -> str: ...

    async def cancel_bot(self, bot_id: str) -> None: ...


class Notifier(Protocol):
    async def notify(self, template_code: str, recipient: str, variables: dict[str, Any]) -> None: ...


async def call_adapter(
    adapter: str,
    policy: AdapterPolicy,
    fn: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    request_id: str | None = None,
) -> AdapterCallResult[T]:
    try:
        value = await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "adapter_timeout adapter=%s policy=%s timeout=%.1fs request_id=%s",
            adapter,
            policy.value,
            timeout,
            request_id,
        )
        return AdapterCallResult(adapter=adapter, policy=policy, ok=False, error=f"timed out after {timeout:g}s")
    except Exception as exc:
        logger.warning(
            "adapter_failed adapter=%s policy=%s request_id=%s error=%s",
            adapter,
            policy.value,
            request_id,
            exc,
        )
        return AdapterCallResult(adapter=adapter, policy=policy, ok=False, error=str(exc) or exc.__class__.__name__)
    return AdapterCallResult(adapter=adapter, policy=policy, ok=True, value=value)
