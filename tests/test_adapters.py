import asyncio
import json

import pytest

from app.core.errors import AdapterFailure
from app.services.adapters import AdapterPolicy, call_adapter
from app.services.notifications import RedisNotifier
from app.services.payments import PaymentProviderError, RazorpayGateway, _captured_from_payload, amount_display_from_minor
from app.services.recording import RecallBotAdapter, RecordingProviderError


@pytest.mark.asyncio
async def test_call_adapter_wraps_success_and_failure() -> None:
    async def ok():
        return "evt-1"

    async def broken():
        raise RuntimeError("503 from provider")

    good = await call_adapter("calendar", AdapterPolicy.MANDATORY, ok, timeout=1)
    bad = await call_adapter("calendar", AdapterPolicy.BEST_EFFORT, broken, timeout=1)

    assert good.ok and good.unwrap() == "evt-1"
    assert not bad.ok
    assert "503 from provider" in bad.error
    with pytest.raises(AdapterFailure) as exc:
        bad.unwrap()
    assert exc.value.adapter == "calendar"


@pytest.mark.asyncio
async def test_call_adapter_timeout_is_a_failure() -> None:
    async def slow():
        await asyncio.sleep(1)

    result = await call_adapter("recording_bot", AdapterPolicy.BEST_EFFORT, slow, timeout=0.01)

    assert not result.ok
    assert result.error.startswith("timed out")


def test_amount_display_from_minor() -> None:
    assert amount_display_from_minor(499950) == "4999.50"
    assert amount_display_from_minor(5) == "0.05"


def test_captured_from_payload() -> None:
    payment = _captured_from_payload(
        {
            "id": "pay_29QQoUBi66xm2f",
            "order_id": "order_9A33XWu170gUtm",
            "amount": 499900,
            "currency": "inr",
            "created_at": 1772400000,
            "notes": {"learner_id": "12"},
        }
    )
    assert payment.id == "pay_29QQoUBi66xm2f"
    assert payment.order_id == "order_9A33XWu170gUtm"
    assert payment.currency == "INR"
    assert payment.captured_at is not None
    assert payment.notes == {"learner_id": "12"}

    bare = _captured_from_payload({"id": "pay_1", "amount": 100, "notes": []})
    assert bare.order_id is None
    assert bare.captured_at is None
    assert bare.notes == {}


@pytest.mark.asyncio
async def test_gateway_and_bot_refuse_to_run_without_credentials() -> None:
    with pytest.raises(PaymentProviderError):
        await RazorpayGateway(key_id="", key_secret="").refund("pay_1", 100)
    with pytest.raises(RecordingProviderError):
        await RecallBotAdapter(api_key="").schedule_bot("", None, {})


class _FakeRedis:
    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.published: list[tuple[str, str]] = []

    async def lpush(self, key: str, value: str) -> None:
        self.lists.setdefault(key, []).insert(0, value)

    async def publish(self, channel: str, value: str) -> None:
        self.published.append((channel, value))


@pytest.mark.asyncio
async def test_redis_notifier_queues_message() -> None:
    client = _FakeRedis()
    notifier = RedisNotifier(client, queue_key="notifications:test")

    await notifier.notify("L_session_scheduled", "+919800000000", {"session_id": 4})

    raw = client.lists["notifications:test"][0]
    msg = json.loads(raw)
    assert msg["template_code"] == "L_session_scheduled"
    assert msg["variables"] == {"session_id": 4}
    assert client.published == [("notif:+919800000000", raw)]
