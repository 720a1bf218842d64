from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app.core.config import settings
from app.core.errors import Conflict, NotFound, ValidationError
from app.models.common import utcnow
from app.models.scheduling import Enrollment, PaymentRecord
from app.repositories.base import Repositories
from app.services.adapters import AdapterPolicy, Notifier, PaymentGateway, call_adapter
from app.services.orchestrator import CANCEL, DispatchResult, SchedulingOrchestrator
from app.services.payments import amount_display_from_minor
from app.services.session_states import is_terminal

logger = logging.getLogger(__name__)

REFUND_PENDING = "refund_pending"
REFUNDED = ("refunded", "partially_refunded")


@dataclass(frozen=True, slots=True)
class RefundQuote:
    amount_minor: int
    kind: str
    remaining_sessions: int


def quote_refund(
    *,
    amount_minor: int,
    total_sessions: int,
    sessions_completed: int,
    captured_at: datetime | None,
    now: datetime,
    full_refund_window_hours: int | None = None,
) -> RefundQuote:
    """Full refund inside the grace window when nothing was delivered, otherwise pro-rata."""
    window = timedelta(hours=full_refund_window_hours if full_refund_window_hours is not None else settings.full_refund_window_hours)
    total = max(int(total_sessions), 1)
    completed = min(max(int(sessions_completed), 0), total)
    remaining = total - completed

    if completed == 0 and captured_at is not None and now - captured_at <= window:
        return RefundQuote(amount_minor=int(amount_minor), kind="full", remaining_sessions=remaining)

    share = (Decimal(int(amount_minor)) * Decimal(remaining) / Decimal(total)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return RefundQuote(amount_minor=int(share), kind="pro_rata", remaining_sessions=remaining)


@dataclass(slots=True)
class TerminationResult:
    enrollment_id: int
    refund: RefundQuote
    refund_id: str | None
    cancelled_sessions: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class EnrollmentTerminationService:
    def __init__(
        self,
        repos: Repositories,
        *,
        gateway: PaymentGateway,
        orchestrator: SchedulingOrchestrator,
        notifier: Notifier,
        clock: Callable[[], datetime] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.repos = repos
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.clock = clock or utcnow
        self.timeout = float(timeout if timeout is not None else settings.adapter_timeout_seconds)

    async def terminate(
        self,
        enrollment_id: int,
        *,
        reason: str,
        requested_by: str,
        request_id: str | None = None,
    ) -> TerminationResult:
        enrollment = await self.repos.enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        if enrollment.status == "terminated":
            raise Conflict(f"Enrollment {enrollment_id} is already terminated")
        if not enrollment.payment_id:
            raise ValidationError(f"Enrollment {enrollment_id} has no captured payment to refund")
        payment = await self.repos.payments.get_by_gateway_id(enrollment.payment_id)
        if payment is None:
            raise ValidationError(f"Payment {enrollment.payment_id} is not recorded locally")

        now = self.clock()
        quote = quote_refund(
            amount_minor=payment.amount_minor,
            total_sessions=enrollment.total_sessions,
            sessions_completed=enrollment.sessions_completed,
            captured_at=payment.captured_at,
            now=now,
        )

        refund_id = await self._issue_refund(enrollment, payment, quote, reason=reason, request_id=request_id)
        if payment.refunded_minor and payment.refunded_minor != quote.amount_minor:
            quote = replace(quote, amount_minor=int(payment.refunded_minor))

        out = TerminationResult(enrollment_id=enrollment.id, refund=quote, refund_id=refund_id)
        for session in await self.repos.sessions.list_for_enrollment(enrollment.id):
            if is_terminal(session.status):
                continue
            cancelled: DispatchResult = await self.orchestrator.dispatch(
                CANCEL,
                {"session_id": session.id, "cancelled_by": requested_by, "reason": f"Enrollment terminated: {reason}"},
                request_id=request_id,
            )
            if cancelled.success:
                out.cancelled_sessions.append(session.id)
            else:
                out.warnings.append(f"session {session.id}: {cancelled.error}")
            out.warnings.extend(cancelled.warnings)

        await self.repos.enrollments.update(
            enrollment,
            status="terminated",
            terminated_at=now,
            termination_reason=reason,
        )
        await self.repos.audit.log(
            "enrollment_terminated",
            {
                "enrollment_id": enrollment.id,
                "refund_kind": quote.kind,
                "refund_amount_minor": quote.amount_minor,
                "refund_id": refund_id,
                "cancelled_sessions": out.cancelled_sessions,
                "request_id": request_id,
            },
            actor=requested_by,
        )
        logger.info(
            "enrollment_terminated enrollment_id=%s refund=%s kind=%s request_id=%s",
            enrollment.id,
            amount_display_from_minor(quote.amount_minor),
            quote.kind,
            request_id,
        )
        await call_adapter(
            "notifications",
            AdapterPolicy.BEST_EFFORT,
            lambda: self.notifier.notify(
                "A_enrollment_terminated",
                settings.operator_notification_recipient,
                {
                    "enrollment_id": enrollment.id,
                    "refund_amount": amount_display_from_minor(quote.amount_minor),
                    "currency": payment.currency,
                    "reason": reason,
                },
            ),
            timeout=self.timeout,
            request_id=request_id,
        )
        return out

    async def _issue_refund(
        self,
        enrollment: Enrollment,
        payment: PaymentRecord,
        quote: RefundQuote,
        *,
        reason: str,
        request_id: str | None,
    ) -> str | None:
        """Refund at most once per payment.

        The payment is marked ``refund_pending`` before the gateway call. A
        retry that finds the marker asks the gateway for a refund tagged with
        this enrollment before issuing a new one.
        """
        if payment.status in REFUNDED:
            logger.info(
                "refund_already_issued payment_id=%s refund_id=%s request_id=%s",
                payment.gateway_payment_id,
                payment.refund_id,
                request_id,
            )
            return payment.refund_id
        if quote.amount_minor <= 0:
            return None

        marker = str(enrollment.id)
        if payment.status == REFUND_PENDING:
            existing = (
                await call_adapter(
                    "payments",
                    AdapterPolicy.MANDATORY,
                    lambda: self.gateway.list_refunds(payment.gateway_payment_id),
                    timeout=self.timeout,
                    request_id=request_id,
                )
            ).unwrap()
            issued = next((x for x in existing if str(x.notes.get("enrollment_id")) == marker), None)
            if issued is not None:
                logger.warning(
                    "refund_recovered payment_id=%s refund_id=%s request_id=%s",
                    payment.gateway_payment_id,
                    issued.id,
                    request_id,
                )
                await self._mark_refunded(payment, issued.id, issued.amount_minor)
                return issued.id
        else:
            await self.repos.payments.update(payment, status=REFUND_PENDING)

        result = await call_adapter(
            "payments",
            AdapterPolicy.MANDATORY,
            lambda: self.gateway.refund(
                payment.gateway_payment_id,
                quote.amount_minor,
                {"enrollment_id": marker, "reason": reason},
            ),
            timeout=self.timeout,
            request_id=request_id,
        )
        refund_id = str(result.unwrap())
        await self._mark_refunded(payment, refund_id, quote.amount_minor)
        return refund_id

    async def _mark_refunded(self, payment: PaymentRecord, refund_id: str, amount_minor: int) -> None:
        await self.repos.payments.update(
            payment,
            status="refunded" if amount_minor >= payment.amount_minor else "partially_refunded",
            refund_id=refund_id,
            refunded_minor=int(amount_minor),
        )
