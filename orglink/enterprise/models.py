"""
Enterprise Data Models.

Pydantic models for organizations, workspaces, realized workspace
links, link requests, API keys, members, invites, quota snapshots
and audit events.

Quota values (QuotaLimits, QuotaUsage, QuotaSnapshot) are frozen:
a snapshot is computed fresh for every guard check and never mutated.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ────────────────────────────────────────────────────


class PlanType(str, Enum):
    """Subscription plan tiers with ascending capabilities."""
    FREE = "FREE"
    BASIC = "BASIC"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"


class PlanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class OrgStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class SupportTier(str, Enum):
    STANDARD = "STANDARD"
    PRIORITY = "PRIORITY"
    INSTANT = "INSTANT"


class OrgPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class WorkspaceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class WorkspaceRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    ANALYST = "ANALYST"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class InviteStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REVOKED = "REVOKED"


class LinkIntent(str, Enum):
    """Why a link request exists."""
    LINK_EXISTING = "LINK_EXISTING"
    CREATE_UNDER_ENTERPRISE = "CREATE_UNDER_ENTERPRISE"


class LinkRequestStatus(str, Enum):
    """Link request lifecycle. APPROVED, DENIED and CANCELED are terminal."""
    PENDING = "PENDING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    CANCELED = "CANCELED"

    @property
    def is_open(self) -> bool:
        return self in OPEN_LINK_REQUEST_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_open


OPEN_LINK_REQUEST_STATUSES = frozenset({
    LinkRequestStatus.PENDING,
    LinkRequestStatus.PENDING_APPROVAL,
})


class LinkMethod(str, Enum):
    """How the requester identified the target organization."""
    EMAIL = "EMAIL"
    DOMAIN = "DOMAIN"
    SLUG = "SLUG"
    ORG_ID = "ORG_ID"


class QuotaResource(str, Enum):
    """The four resources an enterprise quota governs."""
    WORKSPACES = "WORKSPACES"
    LINKED_ORGS = "LINKED_ORGS"
    API_KEYS = "API_KEYS"
    MEMBERS = "MEMBERS"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    OTHER = "OTHER"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Organization ─────────────────────────────────────────────


class Organization(BaseModel):
    """An organization (tenant). Enterprises are organizations on the ENTERPRISE plan."""

    id: str = ""
    name: str
    slug: Optional[str] = None
    email: str = ""
    website: str = ""
    status: OrgStatus = OrgStatus.PENDING
    plan_type: PlanType = PlanType.FREE
    plan_status: PlanStatus = PlanStatus.ACTIVE
    plan_end_at: Optional[datetime] = None
    support_tier: SupportTier = SupportTier.STANDARD
    priority: OrgPriority = OrgPriority.NORMAL
    is_restricted: bool = False
    deleted_at: Optional[datetime] = None
    # Raw stored ceilings; normalized by the quota module
    enterprise_max_workspaces: Any = None
    enterprise_max_linked_orgs: Any = None
    enterprise_max_api_keys: Any = None
    enterprise_max_members: Any = None
    created_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_eligible(self) -> bool:
        """Approved, not deleted, not restricted: may be the target of a link."""
        return (
            self.status == OrgStatus.APPROVED
            and self.deleted_at is None
            and not self.is_restricted
        )


# ── Workspace ────────────────────────────────────────────────


class Workspace(BaseModel):
    """A container scoped to an enterprise."""

    id: str = ""
    name: str
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    created_at: Optional[datetime] = None


class WorkspaceOrganization(BaseModel):
    """A realized (workspace, organization) association. Unique per pair."""

    id: str = ""
    workspace_id: str
    organization_id: str
    linked_by: Optional[str] = None
    created_at: Optional[datetime] = None


class WorkspaceMember(BaseModel):
    id: str = ""
    workspace_id: str
    user_id: str
    role: WorkspaceRole = WorkspaceRole.VIEWER
    created_at: Optional[datetime] = None


class Invite(BaseModel):
    id: str = ""
    workspace_id: str
    email: str
    role: WorkspaceRole = WorkspaceRole.VIEWER
    status: InviteStatus = InviteStatus.PENDING
    created_at: Optional[datetime] = None


class ApiKey(BaseModel):
    """A workspace API key. Only the hash and prefix are stored."""

    id: str = ""
    workspace_id: str
    name: str = "Default Key"
    key_hash: str = ""
    key_prefix: str = ""
    rate_limit_per_minute: Optional[int] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Not revoked and not expired."""
        if self.revoked_at is not None:
            return False
        if self.expires_at is None:
            return True
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return utcnow() <= expires_at


# ── Link Request ─────────────────────────────────────────────


class LinkRequest(BaseModel):
    """A stateful intent to associate an organization with an enterprise workspace."""

    id: str = ""
    enterprise_id: str
    workspace_id: str
    organization_id: Optional[str] = None
    requested_by_user_id: str
    request_identifier: str = ""
    message: Optional[str] = None
    intent_type: LinkIntent = LinkIntent.LINK_EXISTING
    status: LinkRequestStatus = LinkRequestStatus.PENDING
    decided_at: Optional[datetime] = None
    decision_by_org_user_id: Optional[str] = None
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LinkApproval(BaseModel):
    """Result of approving a link request: the updated request and the realized link."""

    request: LinkRequest
    link: WorkspaceOrganization


# ── Quota ────────────────────────────────────────────────────


class QuotaLimits(BaseModel):
    """Four integer ceilings, each >= 1 after normalization."""

    model_config = ConfigDict(frozen=True)

    max_workspaces: int = Field(10, ge=1)
    max_linked_orgs: int = Field(50, ge=1)
    max_api_keys: int = Field(10, ge=1)
    max_members: int = Field(100, ge=1)


class QuotaUsage(BaseModel):
    """Current counts for the four quota resources."""

    model_config = ConfigDict(frozen=True)

    workspaces: int = 0
    linked_orgs: int = 0
    api_keys: int = 0
    members: int = 0


class QuotaSnapshot(BaseModel):
    """
    Point-in-time usage vs. limits for one enterprise.

    `tracked_linked_organization_ids` is the union of organizations
    realized-linked to the enterprise's workspaces and organizations
    referenced by its open link requests. The enterprise's own id is
    never a member.
    """

    model_config = ConfigDict(frozen=True)

    enterprise_id: str
    limits: QuotaLimits
    usage: QuotaUsage
    workspace_ids: tuple[str, ...] = ()
    tracked_linked_organization_ids: frozenset[str] = frozenset()

    def limit_and_current(self, resource: QuotaResource) -> tuple[int, int]:
        """Return (limit, current usage) for a resource."""
        resource = QuotaResource(resource)
        if resource == QuotaResource.WORKSPACES:
            return self.limits.max_workspaces, self.usage.workspaces
        if resource == QuotaResource.LINKED_ORGS:
            return self.limits.max_linked_orgs, self.usage.linked_orgs
        if resource == QuotaResource.API_KEYS:
            return self.limits.max_api_keys, self.usage.api_keys
        return self.limits.max_members, self.usage.members

    def to_summary(self) -> dict[str, Any]:
        """Render as `{resource: {limit, current}}` for dashboards and the API."""
        summary: dict[str, Any] = {"enterprise_id": self.enterprise_id}
        for resource in QuotaResource:
            limit, current = self.limit_and_current(resource)
            summary[resource.value] = {"limit": limit, "current": current}
        return summary


# ── Audit ────────────────────────────────────────────────────


class AuditEvent(BaseModel):
    """A structured audit record handed to the audit collaborator."""

    actor_id: Optional[str] = None
    action: AuditAction = AuditAction.OTHER
    entity: str
    target_id: Optional[str] = None
    details: str = ""
    snapshot: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
