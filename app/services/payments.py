from __future__ import annotations

import base64
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from app.core.config import settings
from app.services.adapters import CapturedPayment, GatewayRefund

RAZORPAY_BASE_URL = "https://api.razorpay.com/v1"
_PAGE_SIZE = 100
_MAX_SKIP = 1000


class PaymentProviderError(RuntimeError):
    pass


def _basic_auth(key_id: str, key_secret: str) -> str:
    raw = f"{key_id}:{key_secret}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def amount_display_from_minor(amount_minor: int) -> str:
    amount = (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return format(amount, "f")


def _captured_from_payload(payload: dict[str, Any]) -> CapturedPayment:
    created_at = payload.get("created_at")
    captured_at = None
    if isinstance(created_at, (int, float)):
        captured_at = datetime.fromtimestamp(int(created_at), tz=timezone.utc)
    notes = payload.get("notes")
    return CapturedPayment(
        id=str(payload.get("id") or ""),
        order_id=str(payload.get("order_id") or "") or None,
        amount_minor=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or "INR").upper(),
        captured_at=captured_at,
        notes=notes if isinstance(notes, dict) else {},
    )


class RazorpayGateway:
    def __init__(
        self,
        *,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str = RAZORPAY_BASE_URL,
    ) -> None:
        self.key_id = settings.razorpay_key_id if key_id is None else key_id
        self.key_secret = settings.razorpay_key_secret if key_secret is None else key_secret
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        if not self.key_id or not self.key_secret:
            raise PaymentProviderError("Razorpay credentials are missing")
        return {"Authorization": f"Basic {_basic_auth(self.key_id, self.key_secret)}"}

    async def list_captured(self, from_ts: datetime, to_ts: datetime) -> list[CapturedPayment]:
        headers = self._headers()
        out: list[CapturedPayment] = []
        skip = 0
        async with httpx.AsyncClient(timeout=30) as client:
            while skip < _MAX_SKIP:
                params = {
                    "from": int(from_ts.timestamp()),
                    "to": int(to_ts.timestamp()),
                    "count": _PAGE_SIZE,
                    "skip": skip,
                }
                res = await client.get(f"{self.base_url}/payments", params=params, headers=headers)
                if not res.is_success:
                    raise PaymentProviderError(f"Razorpay list payments error ({res.status_code}): {res.text}")
                items = (res.json() or {}).get("items") or []
                if not isinstance(items, list):
                    break
                for item in items:
                    if isinstance(item, dict) and item.get("status") == "captured" and item.get("id"):
                        out.append(_captured_from_payload(item))
                if len(items) < _PAGE_SIZE:
                    break
                skip += _PAGE_SIZE
        return out

    async def refund(self, payment_id: str, amount_minor: int, notes: dict[str, str] | None = None) -> str:
        if not payment_id:
            raise PaymentProviderError("Razorpay payment id missing")
        if amount_minor <= 0:
            raise PaymentProviderError("Refund amount must be positive")
        body: dict[str, Any] = {"amount": int(amount_minor), "speed": "normal"}
        if notes:
            # Razorpay accepts at most 15 note keys of 256 chars each.
            body["notes"] = {str(k)[:40]: str(v)[:256] for k, v in list(notes.items())[:15]}
        async with httpx.AsyncClient(timeout=30) as client:
            res = await client.post(
                f"{self.base_url}/payments/{payment_id}/refund",
                json=body,
                headers=self._headers(),
            )
        if not res.is_success:
            raise PaymentProviderError(f"Razorpay refund error ({res.status_code}): {res.text}")
        refund_id = str((res.json() or {}).get("id") or "")
        if not refund_id:
            raise PaymentProviderError("Razorpay refund did not return an id")
        return refund_id

    async def list_refunds(self, payment_id: str) -> list[GatewayRefund]:
        if not payment_id:
            raise PaymentProviderError("Razorpay payment id missing")
        async with httpx.AsyncClient(timeout=30) as client:
            res = await client.get(
                f"{self.base_url}/payments/{payment_id}/refunds",
                params={"count": _PAGE_SIZE},
                headers=self._headers(),
            )
        if not res.is_success:
            raise PaymentProviderError(f"Razorpay list refunds error ({res.status_code}): {res.text}")
        out: list[GatewayRefund] = []
        for item in (res.json() or {}).get("items") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            if item.get("status") == "failed":
                continue
            notes = item.get("notes")
            out.append(
                GatewayRefund(
                    id=str(item["id"]),
                    amount_minor=int(item.get("amount") or 0),
                    notes=notes if isinstance(notes, dict) else {},
                )
            )
        return out
