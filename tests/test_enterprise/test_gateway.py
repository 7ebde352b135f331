"""
Tests for the API gateway.

Tests error classification, the API-key admission dependency and the
health response.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from orglink.enterprise.gateway import (
    ApiKeyContext,
    create_api_key_dependency,
    error_payload,
    get_health_response,
    http_status_for,
    install_error_handlers,
)
from orglink.enterprise.models import ApiKey, PlanStatus
from orglink.enterprise.rate_limit import ApiTrafficGuard
from orglink.enterprise.workspaces import (
    EnterpriseWorkspaceService,
    generate_api_key,
    hash_api_key,
)
from orglink.exceptions import (
    AmbiguousMatchError,
    AuthorizationError,
    ConflictError,
    LimitReachedError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)


def _inline_dispatch(task):
    task()


# ── Error Classification ─────────────────────────────────────


class TestErrorClassification:
    """Error kind to HTTP status and body."""

    @pytest.mark.parametrize(
        "error,status",
        [
            (ValidationError("bad"), 400),
            (AuthorizationError("no"), 403),
            (NotFoundError("missing"), 404),
            (ConflictError("twice"), 409),
            (UnavailableError("suspended"), 409),
            (LimitReachedError("API_KEYS", 2, 2), 409),
            (AmbiguousMatchError("two matches"), 422),
        ],
    )
    def test_status(self, error, status):
        assert http_status_for(error) == status

    def test_limit_reached_payload(self):
        payload = error_payload(LimitReachedError("LINKED_ORGS", 3, 3))
        assert payload == {
            "error": "LIMIT_REACHED",
            "resource": "LINKED_ORGS",
            "limit": 3,
            "current": 3,
            "message": "Limit reached for Linked Organizations",
        }

    def test_handler_renders_error(self):
        app = FastAPI()
        install_error_handlers(app)

        @app.get("/boom")
        def boom():
            raise NotFoundError("Workspace not found", details={"workspace_id": "ws-x"})

        resp = TestClient(app).get("/boom")
        assert resp.status_code == 404
        assert resp.json()["workspace_id"] == "ws-x"
        assert resp.json()["kind"] == "not_found"


# ── API Key Dependency ───────────────────────────────────────


class TestApiKeyDependency:
    """Authentication, entitlement and admission for API-key routes."""

    @pytest.fixture
    def workspaces(self, store, clock):
        return EnterpriseWorkspaceService(store, clock=clock)

    @pytest.fixture
    def client(self, store):
        guard = ApiTrafficGuard(dispatch=_inline_dispatch)
        api_key_dep = create_api_key_dependency(store, guard)
        app = FastAPI()

        @app.get("/whoami")
        async def whoami(ctx: ApiKeyContext = Depends(api_key_dep)):
            return ctx.model_dump()

        return TestClient(app)

    def test_adds_no_query_parameters(self, client):
        operation = client.app.openapi()["paths"]["/whoami"]["get"]
        assert "parameters" not in operation

    def test_missing_key_401(self, client):
        resp = client.get("/whoami")
        assert resp.status_code == 401
        assert "Missing API key" in resp.json()["detail"]["message"]

    def test_bad_prefix_401(self, client):
        resp = client.get("/whoami", headers={"X-API-Key": "sk_live_nope"})
        assert resp.status_code == 401
        assert resp.json()["detail"]["message"] == "Invalid API key format"

    def test_unknown_key_401(self, client):
        resp = client.get("/whoami", headers={"Authorization": "Bearer olk_not_a_real_key"})
        assert resp.status_code == 401

    def test_valid_bearer_key(self, client, workspaces):
        raw, key = workspaces.issue_api_key("ws-1")
        resp = client.get("/whoami", headers={"Authorization": f"Bearer {raw}"})
        assert resp.status_code == 200
        assert resp.json() == {
            "api_key_id": key.id,
            "workspace_id": "ws-1",
            "enterprise_id": "ent-1",
            "key_prefix": key.key_prefix,
        }
        assert resp.headers["X-RateLimit-Limit"] == "100"
        assert resp.headers["X-RateLimit-Remaining"] == "99"
        assert resp.headers["X-Workspace-RateLimit-Remaining"] == "99"

    def test_x_api_key_header(self, client, workspaces):
        raw, _ = workspaces.issue_api_key("ws-1")
        assert client.get("/whoami", headers={"X-API-Key": raw}).status_code == 200

    def test_revoked_key_401(self, client, store, clock):
        raw = generate_api_key()
        store.create_api_key(
            ApiKey(workspace_id="ws-1", key_hash=hash_api_key(raw), revoked_at=clock())
        )
        assert client.get("/whoami", headers={"X-API-Key": raw}).status_code == 401

    def test_expired_key_401(self, client, workspaces, clock):
        raw, _ = workspaces.issue_api_key("ws-1", expires_at=clock() - timedelta(days=400))
        assert client.get("/whoami", headers={"X-API-Key": raw}).status_code == 401

    def test_lapsed_enterprise_plan_403(self, client, workspaces, store):
        raw, _ = workspaces.issue_api_key("ws-1")
        store.update_organization("ent-1", plan_status=PlanStatus.EXPIRED)
        resp = client.get("/whoami", headers={"X-API-Key": raw})
        assert resp.status_code == 403
        assert resp.json()["detail"]["error"] == "forbidden"

    def test_rate_limited_429(self, client, workspaces):
        raw, _ = workspaces.issue_api_key("ws-1", rate_limit_per_minute=2)
        headers = {"X-API-Key": raw}
        assert client.get("/whoami", headers=headers).status_code == 200
        assert client.get("/whoami", headers=headers).status_code == 200

        resp = client.get("/whoami", headers=headers)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.json()["detail"]["error"] == "rate_limited"


# ── Health ───────────────────────────────────────────────────


class TestHealthCheck:
    """Health response shape."""

    def test_health_response(self):
        resp = get_health_response()
        assert resp["status"] == "healthy"
        assert resp["service"] == "orglink"
        assert "timestamp" in resp
        assert "version" in resp
