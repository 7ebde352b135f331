"""
Enterprise Quotas.

Two pieces:

- `QuotaSnapshotResolver` reads current limits and usage for an
  enterprise from an `EnterpriseStore` and returns an immutable
  `QuotaSnapshot`. Pass it the transactional store (`tx`) when the
  snapshot feeds a decision that must commit atomically.
- `assert_available()` is the quota guard: a pure function of a
  snapshot, a resource and an increment that either returns or raises
  `LimitReachedError`.

Linked-organization usage counts the union of organizations realized-
linked to the enterprise's workspaces and organizations named by its
open (PENDING / PENDING_APPROVAL) link requests. Counting open requests
is what stops a batch of pending requests from being approved one after
another past the ceiling.

Usage:
    resolver = QuotaSnapshotResolver(store)
    snapshot = resolver.resolve_snapshot(enterprise_id)
    assert_available(snapshot, QuotaResource.LINKED_ORGS, linked_organization_id=org_id)
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

from orglink.enterprise.models import (
    OPEN_LINK_REQUEST_STATUSES,
    Organization,
    OrgStatus,
    PlanStatus,
    PlanType,
    QuotaLimits,
    QuotaResource,
    QuotaSnapshot,
    QuotaUsage,
    utcnow,
)
from orglink.enterprise.storage import EnterpriseStore
from orglink.exceptions import ErrorCode, LimitReachedError, NotFoundError

logger = logging.getLogger(__name__)


DEFAULT_QUOTA_LIMITS = QuotaLimits(
    max_workspaces=10,
    max_linked_orgs=50,
    max_api_keys=10,
    max_members=100,
)

_LIMIT_FIELDS = {
    "max_workspaces": "enterprise_max_workspaces",
    "max_linked_orgs": "enterprise_max_linked_orgs",
    "max_api_keys": "enterprise_max_api_keys",
    "max_members": "enterprise_max_members",
}


# ── Limit normalization ──────────────────────────────────────


def to_nullable_number(value: Any) -> Optional[float]:
    """Coerce a stored limit to a finite number, or None if it isn't one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(Decimal(value.strip()))
        except (InvalidOperation, ValueError):
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def normalize_limit(value: Any, fallback: int) -> int:
    """Floor a limit; anything missing, non-finite or below 1 becomes `fallback`."""
    number = to_nullable_number(value)
    if number is None:
        return fallback
    rounded = math.floor(number)
    return fallback if rounded < 1 else rounded


def normalize_quota_limits(source: Any = None) -> QuotaLimits:
    """
    Build QuotaLimits from an Organization, a mapping, or None.

    Mappings may use either the QuotaLimits field names
    (`max_linked_orgs`) or the stored column names
    (`enterprise_max_linked_orgs`).
    """
    values: dict[str, int] = {}
    for field, column in _LIMIT_FIELDS.items():
        fallback = getattr(DEFAULT_QUOTA_LIMITS, field)
        if source is None:
            raw = None
        elif isinstance(source, Mapping):
            raw = source.get(field, source.get(column))
        else:
            raw = getattr(source, column, getattr(source, field, None))
        values[field] = normalize_limit(raw, fallback)
    return QuotaLimits(**values)


def has_active_enterprise_plan(
    organization: Organization,
    now: Optional[datetime] = None,
) -> bool:
    """Enterprise tier, active plan, approved, unrestricted and not past its end date."""
    if organization.plan_type != PlanType.ENTERPRISE:
        return False
    if organization.plan_status != PlanStatus.ACTIVE:
        return False
    if organization.status != OrgStatus.APPROVED:
        return False
    if organization.is_restricted:
        return False
    end_at = organization.plan_end_at
    if end_at is not None:
        if end_at.tzinfo is None:
            end_at = end_at.replace(tzinfo=timezone.utc)
        if end_at < (now or utcnow()):
            return False
    return True


# ── Quota guard ──────────────────────────────────────────────


def assert_available(
    snapshot: QuotaSnapshot,
    resource: QuotaResource | str,
    *,
    increment: Any = None,
    linked_organization_id: Optional[str] = None,
) -> None:
    """
    Raise LimitReachedError if `increment` more of `resource` would exceed the limit.

    `increment` defaults to 1 and is clamped to >= 0. For LINKED_ORGS,
    an organization already tracked by the snapshot costs nothing, so
    re-linking or approving an already-counted request never fails.
    A zero increment always passes. Never mutates the snapshot.
    """
    resource = QuotaResource(resource)
    limit, current = snapshot.limit_and_current(resource)

    if isinstance(increment, (int, float)) and not isinstance(increment, bool):
        effective = max(0, increment)
    else:
        effective = 1

    if (
        resource == QuotaResource.LINKED_ORGS
        and linked_organization_id
        and linked_organization_id in snapshot.tracked_linked_organization_ids
    ):
        effective = 0

    if effective <= 0:
        return

    if current + effective > limit:
        raise LimitReachedError(resource.value, limit, current)


def limit_reached_payload(error: LimitReachedError) -> dict[str, Any]:
    """HTTP 409 body for a quota conflict."""
    return error.to_dict()


# ── Snapshot resolver ────────────────────────────────────────


class QuotaSnapshotResolver:
    """
    Reads enterprise quota state from a store.

    Side-effect free. Build one on the transactional store when the
    snapshot must be consistent with a write that follows it.
    """

    def __init__(
        self,
        store: EnterpriseStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._clock = clock or utcnow

    def resolve_snapshot(self, enterprise_id: str) -> QuotaSnapshot:
        """
        Compute a fresh snapshot for an enterprise.

        Raises:
            NotFoundError: If the enterprise organization doesn't exist.
        """
        enterprise = self.store.get_organization(enterprise_id)
        if enterprise is None:
            raise NotFoundError(
                "Enterprise organization not found",
                code=ErrorCode.ENTERPRISE_NOT_FOUND,
                details={"enterprise_id": enterprise_id},
            )

        limits = normalize_quota_limits(enterprise)

        # Workspaces governed by the enterprise are those it is linked to
        workspace_ids = tuple(dict.fromkeys(
            link.workspace_id
            for link in self.store.list_workspace_links(organization_id=enterprise_id)
        ))

        if not workspace_ids:
            return QuotaSnapshot(
                enterprise_id=enterprise_id,
                limits=limits,
                usage=QuotaUsage(),
                workspace_ids=(),
                tracked_linked_organization_ids=frozenset(),
            )

        tracked: set[str] = set()
        for link in self.store.list_workspace_links(workspace_ids=workspace_ids):
            if link.organization_id and link.organization_id != enterprise_id:
                tracked.add(link.organization_id)

        for request in self.store.find_link_requests(
            enterprise_id=enterprise_id,
            statuses=OPEN_LINK_REQUEST_STATUSES,
        ):
            if request.organization_id and request.organization_id != enterprise_id:
                tracked.add(request.organization_id)

        usage = QuotaUsage(
            workspaces=len(workspace_ids),
            linked_orgs=len(tracked),
            api_keys=self.store.count_active_api_keys(workspace_ids),
            members=(
                self.store.count_members(workspace_ids)
                + self.store.count_pending_invites(workspace_ids)
            ),
        )

        return QuotaSnapshot(
            enterprise_id=enterprise_id,
            limits=limits,
            usage=usage,
            workspace_ids=workspace_ids,
            tracked_linked_organization_ids=frozenset(tracked),
        )

    def resolve_enterprise_id_for_workspace(self, workspace_id: str) -> Optional[str]:
        """
        Find the enterprise that governs a workspace's quota.

        A workspace may be linked to several organizations. Prefer the
        first (oldest link) with an active enterprise plan; fall back
        to the first merely tagged ENTERPRISE; otherwise None.
        """
        links = self.store.list_workspace_links(workspace_ids=[workspace_id])
        if not links:
            return None

        organization_ids = list(dict.fromkeys(link.organization_id for link in links))
        organizations = {
            org.id: org for org in self.store.find_organizations(ids=organization_ids)
        }

        now = self._clock()
        for organization_id in organization_ids:
            org = organizations.get(organization_id)
            if org is not None and has_active_enterprise_plan(org, now):
                return org.id

        for organization_id in organization_ids:
            org = organizations.get(organization_id)
            if org is not None and org.plan_type == PlanType.ENTERPRISE:
                return org.id

        return None

    def resolve_snapshot_for_workspace(self, workspace_id: str) -> Optional[QuotaSnapshot]:
        """Snapshot of the workspace's governing enterprise, or None if it has none."""
        enterprise_id = self.resolve_enterprise_id_for_workspace(workspace_id)
        if enterprise_id is None:
            return None
        return self.resolve_snapshot(enterprise_id)

    def assert_available_for_enterprise(
        self,
        enterprise_id: str,
        resource: QuotaResource | str,
        *,
        increment: Any = None,
        linked_organization_id: Optional[str] = None,
    ) -> QuotaSnapshot:
        """Resolve a snapshot and guard it. Returns the snapshot on success."""
        snapshot = self.resolve_snapshot(enterprise_id)
        self._guard(snapshot, resource, increment, linked_organization_id)
        return snapshot

    def assert_available_for_workspace(
        self,
        workspace_id: str,
        resource: QuotaResource | str,
        *,
        increment: Any = None,
        linked_organization_id: Optional[str] = None,
    ) -> Optional[QuotaSnapshot]:
        """
        Guard against the workspace's enterprise quota.

        Returns None without enforcing anything when the workspace has
        no governing enterprise.
        """
        snapshot = self.resolve_snapshot_for_workspace(workspace_id)
        if snapshot is None:
            return None
        self._guard(snapshot, resource, increment, linked_organization_id)
        return snapshot

    def _guard(
        self,
        snapshot: QuotaSnapshot,
        resource: QuotaResource | str,
        increment: Any,
        linked_organization_id: Optional[str],
    ) -> None:
        try:
            assert_available(
                snapshot,
                resource,
                increment=increment,
                linked_organization_id=linked_organization_id,
            )
        except LimitReachedError as e:
            logger.info(
                "quota_limit_reached",
                extra={
                    "enterprise_id": snapshot.enterprise_id,
                    "resource": e.resource,
                    "limit": e.limit,
                    "current": e.current,
                },
            )
            raise
