"""
Enterprise quotas and organization linking.

Per-enterprise ceilings on workspaces, linked organizations, API keys
and members; the consent-based link request workflow; and API-key and
workspace admission control.
"""

from orglink.enterprise.models import (
    LinkApproval,
    LinkIntent,
    LinkMethod,
    LinkRequest,
    LinkRequestStatus,
    Organization,
    QuotaLimits,
    QuotaResource,
    QuotaSnapshot,
    QuotaUsage,
    Workspace,
    WorkspaceOrganization,
)
from orglink.enterprise.quota import (
    DEFAULT_QUOTA_LIMITS,
    QuotaSnapshotResolver,
    assert_available,
    normalize_quota_limits,
)
from orglink.enterprise.rate_limit import (
    ApiTrafficGuard,
    DualWindowRateLimiter,
    RateLimitResult,
)

__all__ = [
    "ApiTrafficGuard",
    "DEFAULT_QUOTA_LIMITS",
    "DualWindowRateLimiter",
    "LinkApproval",
    "LinkIntent",
    "LinkMethod",
    "LinkRequest",
    "LinkRequestStatus",
    "Organization",
    "QuotaLimits",
    "QuotaResource",
    "QuotaSnapshot",
    "QuotaSnapshotResolver",
    "QuotaUsage",
    "RateLimitResult",
    "Workspace",
    "WorkspaceOrganization",
    "assert_available",
    "normalize_quota_limits",
]
