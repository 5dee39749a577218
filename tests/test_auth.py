from __future__ import annotations

import time

import jwt
import pytest

from relay.infra.auth import extract_bearer, is_valid_agent_id, validate_tunnel_token
from relay.settings import Settings

SECRET = "unit-test-secret-0123456789abcdef"


def _token(roles=None, scope=None, aud="slide-relay", iss="local", secret=SECRET) -> str:
    claims = {"sub": "u1", "aud": aud, "iss": iss, "exp": int(time.time()) + 60}
    if roles is not None:
        claims["roles"] = roles
    if scope is not None:
        claims["scope"] = scope
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def jwt_mode(monkeypatch):
    monkeypatch.setattr(
        "relay.infra.auth.settings",
        Settings(AUTH_MODE="jwt_hs256", JWT_HS256_SECRET=SECRET, JWT_AUD="slide-relay", JWT_ISS="local"),
    )


class TestJwtGuard:
    def test_missing_token_is_401(self, client, jwt_mode) -> None:
        assert client.get("/api/v1/cases").status_code == 401

    def test_viewer_can_read(self, client, jwt_mode) -> None:
        resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {_token(['viewer'])}"})
        assert resp.status_code == 200

    def test_roles_from_scope(self, client, jwt_mode) -> None:
        resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {_token(scope='operator')}"})
        assert resp.status_code == 200

    def test_wrong_audience_is_401(self, client, jwt_mode) -> None:
        token = _token(["viewer"], aud="someone-else")
        assert client.get("/api/v1/cases", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_bad_signature_is_401(self, client, jwt_mode) -> None:
        token = _token(["viewer"], secret="another-secret-0123456789abcdef")
        assert client.get("/api/v1/cases", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_edge_role_cannot_read(self, client, jwt_mode) -> None:
        resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {_token(['edge'])}"})
        assert resp.status_code == 403

    def test_viewer_cannot_sync(self, client, jwt_mode) -> None:
        resp = client.post(
            "/sync/v1/events",
            json={"origin_id": "lab-01", "events": []},
            headers={"Authorization": f"Bearer {_token(['viewer'])}"},
        )
        assert resp.status_code == 403


class TestTunnelToken:
    def test_match(self) -> None:
        assert validate_tunnel_token("s3cret", "s3cret")

    def test_mismatch(self) -> None:
        assert not validate_tunnel_token("s3cret-", "s3cret")

    def test_fail_closed_without_configured_secret(self) -> None:
        assert not validate_tunnel_token("", "")
        assert not validate_tunnel_token("anything", "")

    def test_missing_token(self) -> None:
        assert not validate_tunnel_token(None, "s3cret")


def test_extract_bearer_prefers_header() -> None:
    assert extract_bearer("Bearer abc", "xyz") == "abc"
    assert extract_bearer(None, "xyz") == "xyz"
    assert extract_bearer("Basic abc", None) is None


@pytest.mark.parametrize(
    "agent_id, ok",
    [("lab-01", True), ("LAB_2", True), ("a" * 64, True), ("a" * 65, False), ("bad id", False), ("", False),
     (None, False), ("x/y", False)],
)
def test_agent_id_format(agent_id, ok) -> None:
    assert is_valid_agent_id(agent_id) is ok
