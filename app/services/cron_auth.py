"""Authentication for job triggers (scheduler webhooks and internal callers).

Three credentials are accepted: the shared cron secret as a bearer token
(valid for every job), the internal API key (only for jobs listed in
``INTERNAL_API_KEY_JOBS``) and an HMAC-SHA256 signed request. A missing or
wrong credential is a 401; a valid credential that is not allowed to run the
requested job is a 403.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings

BEARER = "cron_secret"
INTERNAL_KEY = "internal_api_key"
SIGNATURE = "signature"


def sign_trigger(path: str, timestamp: int | str, key: str | None = None) -> str:
    secret = (settings.cron_signing_key if key is None else key).encode("utf-8")
    message = f"{timestamp}.{path}".encode("utf-8")
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def _same(a: str, b: str) -> bool:
    return bool(a) and bool(b) and hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _signature_valid(path: str, timestamp: str | None, signature: str | None, now: float) -> bool:
    if not settings.cron_signing_key or not timestamp or not signature:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    if abs(now - ts) > settings.cron_signature_tolerance_seconds:
        return False
    return _same(sign_trigger(path, ts), signature.strip().lower())


def authenticate_trigger(
    job: str,
    *,
    path: str,
    authorization: str | None = None,
    internal_api_key: str | None = None,
    timestamp: str | None = None,
    signature: str | None = None,
    now: float | None = None,
) -> str:
    """Return the credential kind that authorised the call, or raise 401/403."""
    current = time.time() if now is None else now

    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and _same(token.strip(), settings.cron_secret):
            return BEARER

    if _signature_valid(path, timestamp, signature, current):
        return SIGNATURE

    if internal_api_key and _same(internal_api_key.strip(), settings.internal_api_key):
        if job not in settings.internal_api_key_job_set:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Internal API key is not allowed to trigger {job}",
            )
        return INTERNAL_KEY

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_trigger(job: str):
    async def dependency(
        request: Request,
        authorization: str | None = Header(default=None),
        x_internal_api_key: str | None = Header(default=None, alias="X-Internal-Api-Key"),
        x_cron_timestamp: str | None = Header(default=None, alias="X-Cron-Timestamp"),
        x_cron_signature: str | None = Header(default=None, alias="X-Cron-Signature"),
    ) -> str:
        return authenticate_trigger(
            job,
            path=request.url.path,
            authorization=authorization,
            internal_api_key=x_internal_api_key,
            timestamp=x_cron_timestamp,
            signature=x_cron_signature,
        )

    return dependency
