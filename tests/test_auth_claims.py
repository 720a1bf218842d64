import pytest
from fastapi import HTTPException

from app.services.auth import AuthUser, _parse_payload, require_role


def test_parse_payload_success() -> None:
    user = _parse_payload(
        {
            "sub": "ops-7",
            "email": "Ops@Example.com",
            "display_name": "Ops",
            "roles": ["Operator"],
        }
    )
    assert user.user_id == "ops-7"
    assert user.email == "ops@example.com"
    assert user.roles == ["operator"]
    assert user.actor == "ops@example.com"


def test_parse_payload_accepts_single_role_claim() -> None:
    user = _parse_payload({"sub": "9", "role": "admin"})
    assert user.roles == ["admin"]


def test_parse_payload_requires_subject() -> None:
    with pytest.raises(HTTPException) as exc:
        _parse_payload({"email": "u@example.com"})
    assert exc.value.status_code == 401


def test_require_role_forbids_non_admin() -> None:
    user = AuthUser(user_id="1", email="coach@example.com", display_name="Coach", roles=["coach"])
    with pytest.raises(HTTPException) as exc:
        require_role(user, {"admin", "operator"})
    assert exc.value.status_code == 403
