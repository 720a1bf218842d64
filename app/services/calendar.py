"""Google Calendar + Meet adapter.

Authenticates as a service account with domain-wide delegation so that every
event is organised by the coach (``organizer_email``), falling back to the
configured default organizer.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Any

import httpx
import jwt

from app.core.config import settings
from app.services.adapters import CalendarEvent

CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"


class CalendarProviderError(RuntimeError):
    pass


def _meeting_url(payload: dict[str, Any]) -> str | None:
    link = str(payload.get("hangoutLink") or "")
    if link:
        return link
    conference = payload.get("conferenceData") or {}
    entry_points = conference.get("entryPoints") if isinstance(conference, dict) else None
    if isinstance(entry_points, list):
        for entry in entry_points:
            if isinstance(entry, dict) and entry.get("entryPointType") == "video" and entry.get("uri"):
                return str(entry["uri"])
    return None


class GoogleCalendarAdapter:
    def __init__(
        self,
        *,
        service_account_email: str | None = None,
        private_key: str | None = None,
        default_organizer: str | None = None,
        token_uri: str | None = None,
        timezone_name: str | None = None,
    ) -> None:
        self.service_account_email = (
            settings.google_service_account_email if service_account_email is None else service_account_email
        )
        raw_key = settings.google_private_key if private_key is None else private_key
        # Keys supplied through env vars usually carry escaped newlines.
        self.private_key = raw_key.replace("\\n", "\n")
        self.default_organizer = settings.google_default_organizer if default_organizer is None else default_organizer
        self.token_uri = token_uri or settings.google_token_uri
        self.timezone_name = timezone_name or settings.scheduling_timezone

    def _assertion(self, subject: str) -> str:
        now = int(time.time())
        claims = {
            "iss": self.service_account_email,
            "sub": subject,
            "scope": CALENDAR_SCOPE,
            "aud": self.token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS256")

    async def _access_token(self, organizer_email: str | None) -> str:
        subject = organizer_email or self.default_organizer
        if not self.service_account_email or not self.private_key:
            raise CalendarProviderError("Google service account credentials are missing")
        if not subject:
            raise CalendarProviderError("No calendar organizer to impersonate")
        async with httpx.AsyncClient(timeout=20) as client:
            res = await client.post(
                self.token_uri,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": self._assertion(subject),
                },
            )
        if not res.is_success:
            raise CalendarProviderError(f"Google token error ({res.status_code}): {res.text}")
        token = str((res.json() or {}).get("access_token") or "")
        if not token:
            raise CalendarProviderError("Google token endpoint did not return an access_token")
        return token

    def _when(self, value: datetime) -> dict[str, str]:
        return {"dateTime": value.isoformat(), "timeZone": self.timezone_name}

    async def create_event(
        self,
        *,
        attendees: list[str],
        start: datetime,
        end: datetime,
        title: str,
        organizer_email: str | None = None,
    ) -> CalendarEvent:
        token = await self._access_token(organizer_email)
        body: dict[str, Any] = {
            "summary": title,
            "start": self._when(start),
            "end": self._when(end),
            "attendees": [{"email": email} for email in attendees if email],
            "conferenceData": {
                "createRequest": {
                    "requestId": uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
            "reminders": {"useDefault": True},
        }
        async with httpx.AsyncClient(timeout=30) as client:
            res = await client.post(
                f"{CALENDAR_API_URL}/calendars/primary/events",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        if not res.is_success:
            raise CalendarProviderError(f"Google create event error ({res.status_code}): {res.text}")
        payload = res.json() or {}
        event_id = str(payload.get("id") or "")
        if not event_id:
            raise CalendarProviderError("Google create event did not return an event id")
        return CalendarEvent(event_id=event_id, meeting_url=_meeting_url(payload))

    async def update_event(
        self,
        event_id: str,
        *,
        start: datetime,
        end: datetime,
        organizer_email: str | None = None,
    ) -> CalendarEvent:
        if not event_id:
            raise CalendarProviderError("Calendar event id missing")
        token = await self._access_token(organizer_email)
        async with httpx.AsyncClient(timeout=30) as client:
            res = await client.patch(
                f"{CALENDAR_API_URL}/calendars/primary/events/{event_id}",
                params={"sendUpdates": "all"},
                json={"start": self._when(start), "end": self._when(end)},
                headers={"Authorization": f"Bearer {token}"},
            )
        if not res.is_success:
            raise CalendarProviderError(f"Google update event error ({res.status_code}): {res.text}")
        payload = res.json() or {}
        return CalendarEvent(event_id=str(payload.get("id") or event_id), meeting_url=_meeting_url(payload))

    async def cancel_event(self, event_id: str, *, organizer_email: str | None = None) -> None:
        if not event_id:
            return
        token = await self._access_token(organizer_email)
        async with httpx.AsyncClient(timeout=20) as client:
            res = await client.delete(
                f"{CALENDAR_API_URL}/calendars/primary/events/{event_id}",
                params={"sendUpdates": "all"},
                headers={"Authorization": f"Bearer {token}"},
            )
        # 410 Gone: already deleted.
        if not res.is_success and res.status_code not in (404, 410):
            raise CalendarProviderError(f"Google cancel event error ({res.status_code}): {res.text}")
