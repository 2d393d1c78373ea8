"""Tests for JWT handling and role-based permissions."""

import pytest
from jose import JWTError

from indexer_agent.auth import ROLE_PERMISSIONS, Permission, Role
from indexer_agent.auth.jwt import create_access_token, decode_access_token
from tests.conftest import DEP_A, allocate_input


# ── JWT utility tests ─────────────────────────────────────────────────────────

class TestJWTUtils:
    def test_create_and_decode_access_token(self):
        claims = decode_access_token(create_access_token("alice", "operator"))
        assert claims["sub"] == "alice"
        assert claims["role"] == "operator"
        assert claims["type"] == "access"
        assert claims["iss"] == "indexer-agent"

    def test_role_enum_accepted(self):
        assert decode_access_token(create_access_token("worker", Role.SYSTEM))["role"] == "system"

    def test_decode_invalid_token_raises(self):
        with pytest.raises(JWTError):
            decode_access_token("invalid.token.here")

    def test_expired_token_rejected(self):
        with pytest.raises(JWTError):
            decode_access_token(create_access_token("alice", "admin", expires_minutes=-1))


class TestRoles:
    def test_admin_has_everything(self):
        assert ROLE_PERMISSIONS[Role.ADMIN] == set(Permission)

    def test_operator_cannot_configure_rules_or_delete(self):
        perms = ROLE_PERMISSIONS[Role.OPERATOR]
        assert Permission.ACTIONS_APPROVE in perms
        assert Permission.RULES_CONFIGURE not in perms
        assert Permission.ACTIONS_DELETE not in perms

    def test_viewer_is_read_only(self):
        assert all(p.value.endswith(":read") for p in ROLE_PERMISSIONS[Role.VIEWER])


# ── Endpoint guards ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestEndpointGuards:
    async def test_missing_token_is_401(self, api):
        client = await api(None)
        resp = await client.get("/api/actions")
        assert resp.status_code == 401

    async def test_bad_token_is_401(self, api):
        client = await api(None)
        resp = await client.get("/api/actions", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    async def test_viewer_cannot_queue(self, viewer_client):
        resp = await viewer_client.post("/api/actions", json={"actions": [allocate_input().model_dump(mode="json")]})
        assert resp.status_code == 403

    async def test_viewer_can_read(self, viewer_client):
        resp = await viewer_client.get("/api/actions")
        assert resp.status_code == 200

    async def test_operator_cannot_set_rules(self, operator_client):
        resp = await operator_client.put(
            "/api/indexing-rules",
            json={"identifier": DEP_A, "identifier_type": "deployment", "allocation_amount": "1"},
        )
        assert resp.status_code == 403

    async def test_metrics_needs_no_token(self, api):
        client = await api(None)
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "executor_cycles" in resp.text

    async def test_unknown_role_is_403(self, api):
        client = await api(None)
        token = create_access_token("mallory", "superuser")
        resp = await client.get("/api/actions", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403
