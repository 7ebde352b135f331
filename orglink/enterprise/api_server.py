"""
Enterprise API Server.

FastAPI application exposing the quota guard, the link request workflow
and API-key admission control over REST.

Actor identity (user id and acting organization id) is established by
the upstream session layer and forwarded in trusted headers:

    X-Actor-User-Id: user-7
    X-Actor-Organization-Id: ent-1

Usage:
    from orglink.enterprise.api_server import create_api_app

    app = create_api_app(store=store, provisioner=StoreBackedProvisioner(store))
    uvicorn.run(app, host="127.0.0.1", port=8000)

Endpoints:
    GET  /api/v1/health                                              - Health check (no auth)
    GET  /api/v1/enterprises/{ent}/quota                             - Quota snapshot
    POST /api/v1/enterprises/{ent}/workspaces                        - Create workspace
    GET  /api/v1/enterprises/{ent}/workspaces/{ws}/link-requests     - Requester view
    POST /api/v1/enterprises/{ent}/workspaces/{ws}/link-requests     - Link existing org
    POST /api/v1/enterprises/{ent}/workspaces/{ws}/organizations     - Spawn org
    POST /api/v1/enterprises/{ent}/workspaces/{ws}/api-keys          - Issue API key
    POST /api/v1/enterprises/{ent}/workspaces/{ws}/invites           - Invite member
    POST /api/v1/enterprises/{ent}/link-requests/{id}/cancel         - Cancel request
    GET  /api/v1/org/link-requests                                   - Recipient view
    POST /api/v1/org/link-requests/{id}/approve                      - Approve
    POST /api/v1/org/link-requests/{id}/deny                         - Deny
    GET  /api/v1/usage                                               - API-key usage (rate limited)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orglink import __version__
from orglink.config.schema import OrgLinkSettings
from orglink.enterprise.audit import AuditLogger, LoggingAuditLogger, NullAuditLogger
from orglink.enterprise.gateway import (
    ApiKeyContext,
    create_api_key_dependency,
    get_health_response,
    install_error_handlers,
)
from orglink.enterprise.models import LinkMethod, WorkspaceRole
from orglink.enterprise.provisioning import OrganizationProvisioner, SignupRequest
from orglink.enterprise.quota import QuotaSnapshotResolver
from orglink.enterprise.rate_limit import ApiTrafficGuard
from orglink.enterprise.linking import LinkRequestService
from orglink.enterprise.storage import EnterpriseStore
from orglink.enterprise.workspaces import EnterpriseWorkspaceService
from orglink.exceptions import AuthorizationError, ErrorCode, NotFoundError
from orglink.observability.logging_config import clear_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)


# ── Request/Response Models ──────────────────────────────────


class LinkRequestCreate(BaseModel):
    """Request body for asking an existing organization to link."""
    link_method: Optional[LinkMethod] = None
    identifier: Optional[str] = None
    organization_id: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=2000)


class WorkspaceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)


class ApiKeyCreateRequest(BaseModel):
    name: str = "Default Key"
    rate_limit_per_minute: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None


class InviteCreateRequest(BaseModel):
    email: str
    role: WorkspaceRole = WorkspaceRole.VIEWER


class APIResponse(BaseModel):
    """Standard API response envelope."""
    ok: bool = True
    data: Any = None
    error: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class ActorContext(BaseModel):
    """The authenticated user and the organization they act for."""
    user_id: str
    organization_id: str


def get_actor(request: Request) -> ActorContext:
    """Read the actor from trusted upstream headers."""
    user_id = request.headers.get("X-Actor-User-Id", "").strip()
    organization_id = request.headers.get("X-Actor-Organization-Id", "").strip()
    if not user_id or not organization_id:
        raise HTTPException(
            status_code=401,
            detail={"error": "unauthorized", "message": "Missing actor identity headers"},
        )
    return ActorContext(user_id=user_id, organization_id=organization_id)


def _require_enterprise_actor(actor: ActorContext, enterprise_id: str) -> None:
    if actor.organization_id != enterprise_id:
        raise AuthorizationError(
            "Only the enterprise organization can perform this action",
            code=ErrorCode.ENTERPRISE_ACTOR_REQUIRED,
            details={"enterprise_id": enterprise_id},
        )


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


# ── App Factory ──────────────────────────────────────────────


def create_api_app(
    store: EnterpriseStore,
    provisioner: Optional[OrganizationProvisioner] = None,
    settings: Optional[OrgLinkSettings] = None,
    audit: Optional[AuditLogger] = None,
    traffic_guard: Optional[ApiTrafficGuard] = None,
) -> FastAPI:
    """
    Create the FastAPI application with all enterprise routes.

    Args:
        store: Enterprise store shared by every service.
        provisioner: Creates organizations for the spawn endpoint (optional).
        settings: Deployment settings (default: schema defaults).
        audit: Audit sink (default: log-based, unless disabled in settings).
        traffic_guard: API admission guard (default: built from settings).

    Returns:
        Configured FastAPI app.
    """
    settings = settings or OrgLinkSettings()
    if audit is None:
        audit = LoggingAuditLogger() if settings.audit.enabled else NullAuditLogger()

    app = FastAPI(
        title="orglink API",
        description="Enterprise quotas, organization linking and API admission control.",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Request-ID"] = correlation_id
        return response

    links = LinkRequestService(store, provisioner=provisioner, audit=audit)
    workspaces = EnterpriseWorkspaceService(store)
    resolver = QuotaSnapshotResolver(store)

    guard = traffic_guard or ApiTrafficGuard(
        audit=audit,
        default_minute_limit=settings.rate_limit.minute_limit,
        default_burst_limit=settings.rate_limit.burst_limit,
    )
    api_key_dep = create_api_key_dependency(
        store, guard, burst_limit=settings.rate_limit.burst_limit
    )

    # ── Health ───────────────────────────────────────────

    @app.get("/api/v1/health", tags=["Health"])
    async def health_check():
        """Health check endpoint (no authentication required)."""
        return get_health_response()

    # ── Quota ────────────────────────────────────────────

    @app.get("/api/v1/enterprises/{enterprise_id}/quota", tags=["Quota"])
    def get_quota(enterprise_id: str, actor: ActorContext = Depends(get_actor)):
        """Current usage vs. limits for an enterprise."""
        _require_enterprise_actor(actor, enterprise_id)
        snapshot = resolver.resolve_snapshot(enterprise_id)
        return APIResponse(
            data=snapshot.to_summary(),
            meta={"workspace_count": len(snapshot.workspace_ids)},
        )

    # ── Workspaces ───────────────────────────────────────

    @app.post("/api/v1/enterprises/{enterprise_id}/workspaces", tags=["Workspaces"])
    def create_workspace(
        enterprise_id: str,
        body: WorkspaceCreateRequest,
        actor: ActorContext = Depends(get_actor),
    ):
        _require_enterprise_actor(actor, enterprise_id)
        workspace = workspaces.create_workspace(
            enterprise_id, body.name, created_by_user_id=actor.user_id
        )
        return APIResponse(data=_dump(workspace), meta={"created": True})

    @app.post(
        "/api/v1/enterprises/{enterprise_id}/workspaces/{workspace_id}/api-keys",
        tags=["Workspaces"],
    )
    def issue_api_key(
        enterprise_id: str,
        workspace_id: str,
        body: ApiKeyCreateRequest,
        actor: ActorContext = Depends(get_actor),
    ):
        """
        Issue an API key for a workspace.

        The raw key appears in this response only.
        """
        _require_enterprise_actor(actor, enterprise_id)
        if store.get_workspace_link(workspace_id, enterprise_id) is None:
            raise AuthorizationError(
                "Workspace is not scoped to your enterprise organization",
                code=ErrorCode.WORKSPACE_NOT_SCOPED,
                details={"workspace_id": workspace_id},
            )
        raw_key, key = workspaces.issue_api_key(
            workspace_id,
            name=body.name,
            rate_limit_per_minute=body.rate_limit_per_minute,
            expires_at=body.expires_at,
        )
        data = key.model_dump(mode="json", exclude={"key_hash"})
        data["api_key"] = raw_key
        return APIResponse(data=data, meta={"created": True})

    @app.post(
        "/api/v1/enterprises/{enterprise_id}/workspaces/{workspace_id}/invites",
        tags=["Workspaces"],
    )
    def invite_member(
        enterprise_id: str,
        workspace_id: str,
        body: InviteCreateRequest,
        actor: ActorContext = Depends(get_actor),
    ):
        _require_enterprise_actor(actor, enterprise_id)
        if store.get_workspace_link(workspace_id, enterprise_id) is None:
            raise AuthorizationError(
                "Workspace is not scoped to your enterprise organization",
                code=ErrorCode.WORKSPACE_NOT_SCOPED,
                details={"workspace_id": workspace_id},
            )
        invite = workspaces.invite_member(workspace_id, body.email, role=body.role)
        return APIResponse(data=_dump(invite), meta={"created": True})

    # ── Link Requests (enterprise side) ──────────────────

    @app.get(
        "/api/v1/enterprises/{enterprise_id}/workspaces/{workspace_id}/link-requests",
        tags=["Link Requests"],
    )
    def list_workspace_link_requests(
        enterprise_id: str,
        workspace_id: str,
        actor: ActorContext = Depends(get_actor),
    ):
        """List every link request for a workspace, newest first."""
        _require_enterprise_actor(actor, enterprise_id)
        requests = links.list_for_workspace(workspace_id, enterprise_id)
        return APIResponse(
            data=[_dump(r) for r in requests],
            meta={"count": len(requests)},
        )

    @app.post(
        "/api/v1/enterprises/{enterprise_id}/workspaces/{workspace_id}/link-requests",
        tags=["Link Requests"],
    )
    def create_link_request(
        enterprise_id: str,
        workspace_id: str,
        body: LinkRequestCreate,
        actor: ActorContext = Depends(get_actor),
    ):
        """Ask an existing organization to link with the workspace."""
        _require_enterprise_actor(actor, enterprise_id)
        request = links.create_link_request(
            workspace_id=workspace_id,
            enterprise_id=enterprise_id,
            requested_by_user_id=actor.user_id,
            link_method=body.link_method,
            identifier=body.identifier,
            organization_id=body.organization_id,
            message=body.message,
        )
        return APIResponse(data=_dump(request))

    @app.post(
        "/api/v1/enterprises/{enterprise_id}/workspaces/{workspace_id}/organizations",
        tags=["Link Requests"],
    )
    def create_enterprise_organization(
        enterprise_id: str,
        workspace_id: str,
        body: SignupRequest,
        actor: ActorContext = Depends(get_actor),
    ):
        """Spawn a new organization under the workspace."""
        _require_enterprise_actor(actor, enterprise_id)
        result = links.create_enterprise_organization(
            workspace_id=workspace_id,
            enterprise_id=enterprise_id,
            created_by_user_id=actor.user_id,
            signup=body,
        )
        return APIResponse(data=_dump(result), meta={"created": True})

    @app.post(
        "/api/v1/enterprises/{enterprise_id}/link-requests/{request_id}/cancel",
        tags=["Link Requests"],
    )
    def cancel_link_request(
        enterprise_id: str,
        request_id: str,
        actor: ActorContext = Depends(get_actor),
    ):
        _require_enterprise_actor(actor, enterprise_id)
        request = links.cancel(request_id, enterprise_id, requested_by_user_id=actor.user_id)
        return APIResponse(data=_dump(request))

    # ── Link Requests (recipient side) ───────────────────

    @app.get("/api/v1/org/link-requests", tags=["Link Requests"])
    def list_incoming_link_requests(actor: ActorContext = Depends(get_actor)):
        """PENDING requests addressed to the actor's organization."""
        requests = links.list_pending_for_organization(actor.organization_id)
        return APIResponse(
            data=[_dump(r) for r in requests],
            meta={"count": len(requests)},
        )

    @app.post("/api/v1/org/link-requests/{request_id}/approve", tags=["Link Requests"])
    def approve_link_request(request_id: str, actor: ActorContext = Depends(get_actor)):
        approval = links.approve(request_id, actor.organization_id, actor.user_id)
        return APIResponse(data=_dump(approval))

    @app.post("/api/v1/org/link-requests/{request_id}/deny", tags=["Link Requests"])
    def deny_link_request(request_id: str, actor: ActorContext = Depends(get_actor)):
        request = links.deny(request_id, actor.organization_id, actor.user_id)
        return APIResponse(data=_dump(request))

    # ── API-key Routes ───────────────────────────────────

    @app.get("/api/v1/usage", tags=["Usage"])
    def get_usage(ctx: ApiKeyContext = Depends(api_key_dep)):
        """Quota usage for the enterprise governing the key's workspace."""
        snapshot = resolver.resolve_snapshot_for_workspace(ctx.workspace_id)
        if snapshot is None:
            raise NotFoundError(
                "Enterprise not found",
                code=ErrorCode.ENTERPRISE_NOT_FOUND,
                details={"workspace_id": ctx.workspace_id},
            )
        return APIResponse(
            data=snapshot.to_summary(),
            meta={"workspace_id": ctx.workspace_id, "key_prefix": ctx.key_prefix},
        )

    # ── Error Handlers ───────────────────────────────────

    install_error_handlers(app)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Malformed bodies are VALIDATION failures like any other."""
        return JSONResponse(
            status_code=400,
            content={
                "error": ErrorCode.INVALID_INPUT.value,
                "kind": "validation",
                "message": "Invalid request",
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                    for err in exc.errors()
                ],
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Return consistent JSON error responses."""
        detail = exc.detail
        if isinstance(detail, dict):
            return JSONResponse(
                status_code=exc.status_code,
                content={"ok": False, "error": detail},
                headers=getattr(exc, "headers", None),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "ok": False,
                "error": {"message": str(detail)},
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Catch-all error handler."""
        logger.error("unhandled_api_error", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error": {"message": "Internal server error"},
            },
        )

    return app
