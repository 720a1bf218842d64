from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis

from app.core.config import settings
from app.db.redis import redis_client

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisNotifier:
    """Hands messages to the messaging service through Redis.

    The outbound list is consumed by the WhatsApp/email sender; the pub/sub
    channel feeds live operator dashboards. Delivery is never confirmed here.
    """

    def __init__(self, client: Redis | None = None, *, queue_key: str | None = None) -> None:
        self.client = client or redis_client
        self.queue_key = queue_key or settings.notification_queue_key

    async def notify(self, template_code: str, recipient: str, variables: dict[str, Any]) -> None:
        msg = {
            "template_code": template_code,
            "recipient": recipient,
            "variables": variables,
            "queued_at": _now_iso(),
        }
        raw = json.dumps(msg, default=str)
        await self.client.lpush(self.queue_key, raw)
        try:
            await self.client.publish(f"notif:{recipient}", raw)
        except Exception:
            logger.debug("Realtime publish failed for recipient=%s", recipient)
