import asyncio

import pytest
from fastapi.testclient import TestClient

from app.api.v1 import deps
from app.core.config import settings
from app.main import app
from app.services.auth import AuthUser, get_current_user

PARENT = AuthUser(user_id="41", email="kavya.parent@example.com", display_name="Parent", roles=["parent"])
OPERATOR = AuthUser(user_id="7", email="ops@example.com", display_name="Ops", roles=["operator"])


@pytest.fixture
def client(env):
    state = {"user": PARENT}
    app.dependency_overrides[deps.get_orchestrator] = lambda: env.orchestrator
    app.dependency_overrides[deps.get_repositories] = lambda: env.repos
    app.dependency_overrides[deps.get_gateway] = lambda: env.gateway
    app.dependency_overrides[deps.get_notifier] = lambda: env.notifier
    app.dependency_overrides[deps.get_bots] = lambda: env.bots
    app.dependency_overrides[deps.get_retry_enqueuer] = lambda: None
    app.dependency_overrides[get_current_user] = lambda: state["user"]
    test_client = TestClient(app)
    test_client.state = state
    yield test_client
    app.dependency_overrides.clear()


def _seed(env, **kwargs):
    enrollment = env.add_enrollment(env.add_learner(), env.add_coach(), **kwargs)
    return enrollment, env.add_session(enrollment)


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_missing_token_is_unauthorized(env) -> None:
    app.dependency_overrides[deps.get_repositories] = lambda: env.repos
    try:
        res = TestClient(app).get("/api/v1/sessions/1")
    finally:
        app.dependency_overrides.clear()
    assert res.status_code == 401


def test_get_session(client, env) -> None:
    _, session = _seed(env)

    res = client.get(f"/api/v1/sessions/{session.id}")
    missing = client.get("/api/v1/sessions/999")

    assert res.status_code == 200
    assert res.json()["calendar_event_id"] == "evt-seed"
    assert missing.status_code == 404


def test_reschedule_round_trip_and_quota_denial(client, env) -> None:
    _, session = _seed(env, max_reschedules=1)
    url = f"/api/v1/sessions/{session.id}/reschedule"

    ok = client.post(url, json={"date": "2026-03-06", "time": "19:00"}, headers={"X-Request-Id": "req-42"})
    denied = client.post(url, json={"date": "2026-03-07", "time": "19:00"})

    assert ok.status_code == 200
    assert ok.json()["request_id"] == "req-42"
    assert ok.json()["data"]["quota_remaining"] == 0
    assert denied.status_code == 409
    assert denied.json()["detail"]["status"] == "policy_denied"
    assert denied.json()["detail"]["data"]["code"] == "quota_exhausted"


def test_operator_reschedule_requires_admin_role(client, env) -> None:
    _, session = _seed(env)

    res = client.post(
        f"/api/v1/sessions/{session.id}/reschedule",
        json={"date": "2026-03-06", "time": "19:00", "initiated_by": "operator"},
    )

    assert res.status_code == 403


def test_invalid_body_is_rejected_before_dispatch(client, env) -> None:
    _, session = _seed(env)

    res = client.post(f"/api/v1/sessions/{session.id}/schedule", json={"date": "06/03/2026", "time": "7pm"})

    assert res.status_code == 422
    assert env.calendar.calls == []


def test_cancel_records_actor(client, env) -> None:
    _, session = _seed(env)

    res = client.post(f"/api/v1/sessions/{session.id}/cancel", json={"reason": "travel"})

    assert res.status_code == 200
    assert session.status == "cancelled"
    assert env.store.audit[-1].actor == "kavya.parent@example.com"


def test_queue_requires_admin(client) -> None:
    assert client.get("/api/v1/admin/scheduling/queue").status_code == 403


def test_queue_listing_and_failed_resolution(client, env) -> None:
    client.state["user"] = OPERATOR
    enrollment = env.add_enrollment(env.add_learner(), env.add_coach())
    session = env.add_session(enrollment, status="pending")
    item = asyncio.run(env.orchestrator.queue.escalate(session, "Automatic scheduling failed"))

    listing = client.get("/api/v1/admin/scheduling/queue", params={"status": "pending"})
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["id"] == item.id

    env.calendar.fail.add("create")
    res = client.post(
        f"/api/v1/admin/scheduling/queue/{item.id}/resolve",
        json={"notes": "phone booking", "date": "2026-03-05", "time": "18:00"},
    )
    assert res.status_code == 502
    assert res.json()["detail"]["queue_item"]["status"] == "pending"
    assert res.json()["detail"]["queue_item"]["attempts_made"] == 1


def test_cron_requires_credentials(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "cron_secret", "cron-s3cret")

    denied = client.post("/api/v1/cron/payment-reconciliation")
    ok = client.post("/api/v1/cron/payment-reconciliation", headers={"Authorization": "Bearer cron-s3cret"})

    assert denied.status_code == 401
    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert ok.json()["processed"] == 0


def test_cron_reports_gateway_outage(client, env, monkeypatch) -> None:
    monkeypatch.setattr(settings, "cron_secret", "cron-s3cret")
    env.gateway.fail_list = True

    res = client.get("/api/v1/cron/payment-reconciliation", headers={"Authorization": "Bearer cron-s3cret"})

    assert res.status_code == 502
    assert res.json()["detail"]["success"] is False


def test_claim_conflict_is_mapped_to_409(client, env) -> None:
    client.state["user"] = OPERATOR
    enrollment = env.add_enrollment(env.add_learner(), env.add_coach())
    session = env.add_session(enrollment, status="pending")
    item = asyncio.run(env.orchestrator.queue.escalate(session, "Automatic scheduling failed"))
    asyncio.run(env.orchestrator.queue.claim(item.id, "someone-else@example.com"))

    res = client.post(f"/api/v1/admin/scheduling/queue/{item.id}/claim")
    missing = client.post("/api/v1/admin/scheduling/queue/999/claim")

    assert res.status_code == 409
    assert res.json()["detail"]["status"] == "conflict"
    assert missing.status_code == 404


def test_cron_checks_credentials_before_opening_resources(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "cron_secret", "cron-s3cret")
    built: list[str] = []
    app.dependency_overrides[deps.get_orchestrator] = lambda: built.append("orchestrator")
    app.dependency_overrides[deps.get_gateway] = lambda: built.append("gateway")
    app.dependency_overrides[deps.get_retry_enqueuer] = lambda: built.append("redis")

    res = client.post("/api/v1/cron/payment-reconciliation")
    sweep = client.post("/api/v1/cron/recording-sweep")

    assert res.status_code == 401
    assert sweep.status_code == 401
    assert built == []
