from __future__ import annotations

from datetime import datetime

import httpx

from app.core.config import settings


class RecordingProviderError(RuntimeError):
    pass


class RecallBotAdapter:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        bot_name: str | None = None,
    ) -> None:
        self.api_key = settings.recall_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.recall_base_url).rstrip("/")
        self.bot_name = bot_name or settings.recall_bot_name

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise RecordingProviderError("RECALL_API_KEY missing")
        return {"Authorization": f"Token {self.api_key}", "Content-Type": "application/json"}

    async def schedule_bot(self, meeting_url: str, join_at: datetime, metadata: dict[str, str]) -> str:
        if not meeting_url:
            raise RecordingProviderError("Meeting URL missing")
        body = {
            "meeting_url": meeting_url,
            "join_at": join_at.isoformat(),
            "bot_name": self.bot_name,
            "metadata": {str(k): str(v) for k, v in metadata.items()},
        }
        async with httpx.AsyncClient(timeout=30) as client:
            res = await client.post(f"{self.base_url}/bot", json=body, headers=self._headers())
        if not res.is_success:
            raise RecordingProviderError(f"Recall create bot error ({res.status_code}): {res.text}")
        bot_id = str((res.json() or {}).get("id") or "")
        if not bot_id:
            raise RecordingProviderError("Recall create bot did not return an id")
        return bot_id

    async def cancel_bot(self, bot_id: str) -> None:
        if not bot_id:
            return
        async with httpx.AsyncClient(timeout=20) as client:
            res = await client.delete(f"{self.base_url}/bot/{bot_id}", headers=self._headers())
        if res.status_code == 404:
            return
        if not res.is_success:
            raise RecordingProviderError(f"Recall delete bot error ({res.status_code}): {res.text}")
