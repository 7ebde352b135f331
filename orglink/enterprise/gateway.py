"""
API Gateway.

Maps orglink errors to HTTP responses and provides the API-key
admission dependency for FastAPI routes.

Architecture:
    Request → APIKeyAuth → Enterprise entitlement → ApiTrafficGuard → Route Handler

Error mapping:
    VALIDATION → 400, AUTHORIZATION → 403, NOT_FOUND → 404,
    CONFLICT → 409 (LIMIT_REACHED body carries resource/limit/current),
    UNAVAILABLE → 409, AMBIGUOUS_MATCH → 422

Usage:
    guard = ApiTrafficGuard(audit=audit)
    api_key_dep = create_api_key_dependency(store, guard)

    @app.get("/api/v1/usage")
    async def usage(ctx: ApiKeyContext = Depends(api_key_dep)):
        ...
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from orglink import __version__
from orglink.enterprise.quota import QuotaSnapshotResolver, has_active_enterprise_plan
from orglink.enterprise.rate_limit import ApiTrafficGuard
from orglink.enterprise.storage import EnterpriseStore
from orglink.enterprise.workspaces import API_KEY_PREFIX, hash_api_key
from orglink.exceptions import ErrorKind, OrgLinkError

logger = logging.getLogger(__name__)


# ── Error Classification ─────────────────────────────────────


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNAVAILABLE: 409,
    ErrorKind.AMBIGUOUS_MATCH: 422,
}


def http_status_for(error: OrgLinkError) -> int:
    """HTTP status code for an orglink error."""
    return _STATUS_BY_KIND.get(error.kind, 400)


def error_payload(error: OrgLinkError) -> dict[str, Any]:
    """JSON body for an orglink error."""
    return error.to_dict()


def install_error_handlers(app: Any) -> None:
    """Register a FastAPI exception handler for every OrgLinkError."""
    @app.exception_handler(OrgLinkError)
    async def handle_orglink_error(request: Request, exc: OrgLinkError) -> JSONResponse:
        status = http_status_for(exc)
        logger.info(
            "request_failed",
            extra={
                "status": status,
                "error_code": exc.code.value,
                "path": request.url.path,
            },
        )
        return JSONResponse(status_code=status, content=error_payload(exc))


# ── API Key Authentication ───────────────────────────────────


class ApiKeyContext(BaseModel):
    """Identity resolved from a valid API key."""

    api_key_id: str
    workspace_id: str
    enterprise_id: str
    key_prefix: str = ""


def _extract_api_key(authorization: str, x_api_key: str) -> str:
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip()
    return x_api_key.strip()


def create_api_key_dependency(
    store: EnterpriseStore,
    traffic_guard: ApiTrafficGuard,
    workspace_minute_limit: Optional[int] = None,
    burst_limit: Optional[int] = None,
) -> Callable:
    """
    Create a FastAPI dependency for API key authentication and admission.

    The key is read from `Authorization: Bearer <key>` or `X-API-Key`.
    The key's workspace must be governed by an enterprise with an active
    plan. Admission runs the per-key then the per-workspace limiter.
    """
    resolver = QuotaSnapshotResolver(store)

    async def authenticate(request: Request, response: Response) -> ApiKeyContext:
        raw_key = _extract_api_key(
            request.headers.get("Authorization", ""),
            request.headers.get("X-API-Key", ""),
        )
        if not raw_key:
            raise HTTPException(
                status_code=401,
                detail={
                    "error": "unauthorized",
                    "message": "Missing API key. Use: Authorization: Bearer <api_key>",
                },
            )

        if not raw_key.startswith(API_KEY_PREFIX):
            raise HTTPException(
                status_code=401,
                detail={"error": "unauthorized", "message": "Invalid API key format"},
            )

        api_key = store.find_api_key_by_hash(hash_api_key(raw_key))
        if api_key is None or not api_key.is_active:
            raise HTTPException(
                status_code=401,
                detail={"error": "unauthorized", "message": "Invalid, revoked or expired API key"},
            )

        enterprise_id = resolver.resolve_enterprise_id_for_workspace(api_key.workspace_id)
        enterprise = store.get_organization(enterprise_id) if enterprise_id else None
        if enterprise is None or not has_active_enterprise_plan(enterprise):
            raise HTTPException(
                status_code=403,
                detail={"error": "forbidden", "message": "Enterprise plan required for API access"},
            )

        decision = traffic_guard.admit(
            api_key_id=api_key.id,
            workspace_id=api_key.workspace_id,
            key_minute_limit=api_key.rate_limit_per_minute,
            workspace_minute_limit=workspace_minute_limit,
            burst_limit=burst_limit,
            method=request.method,
            endpoint=request.url.path,
        )

        headers = {
            "X-RateLimit-Limit": str(decision.minute_limit),
            "X-RateLimit-Remaining": str(decision.result.remaining),
            "X-RateLimit-Reset": str(decision.result.retry_after_seconds),
        }

        if not decision.allowed:
            message = (
                "Workspace rate limit exceeded. Please slow down."
                if decision.rejected_by == "workspace"
                else "Rate limit exceeded. Please slow down."
            )
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "rate_limited",
                    "message": message,
                    "retry_after_seconds": decision.result.retry_after_seconds,
                },
                headers={**headers, "Retry-After": str(decision.result.retry_after_seconds)},
            )

        for name, value in headers.items():
            response.headers[name] = value
        if decision.workspace_result is not None:
            response.headers["X-Workspace-RateLimit-Limit"] = str(decision.workspace_minute_limit)
            response.headers["X-Workspace-RateLimit-Remaining"] = str(
                decision.workspace_result.remaining
            )

        logger.info(
            "api_request_admitted",
            extra={
                "workspace_id": api_key.workspace_id,
                "enterprise_id": enterprise.id,
                "path": request.url.path,
                "method": request.method,
            },
        )

        return ApiKeyContext(
            api_key_id=api_key.id,
            workspace_id=api_key.workspace_id,
            enterprise_id=enterprise.id,
            key_prefix=api_key.key_prefix,
        )

    return authenticate


# ── Health Check (No Auth) ───────────────────────────────────


def get_health_response() -> dict[str, Any]:
    """Generate a health check response (no auth required)."""
    return {
        "status": "healthy",
        "service": "orglink",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }
