"""
Enterprise Storage.

`EnterpriseStore` is the storage collaborator the quota resolver and
the link request state machine talk to: single-record find/create/
update, bulk counts, and `transaction()`, a scoped transactional
context exposing the same operations that commits all-or-nothing.

`InMemoryEnterpriseStore` is the single-process implementation. Its
transactions hold one re-entrant lock for their whole duration and
restore a copy of every table on error, which makes them serializable:
two approvals against the same enterprise cannot both read "2 of 3
used" and both commit. A database-backed store must give at least
snapshot/serializable isolation (or row locks on the enterprise's
link requests) to keep the same guarantee.

Usage:
    store = InMemoryEnterpriseStore()
    with store.transaction() as tx:
        request = tx.update_link_request(
            request_id,
            expected_statuses={LinkRequestStatus.PENDING},
            status=LinkRequestStatus.DENIED,
        )
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol

from orglink.enterprise.models import (
    ApiKey,
    Invite,
    InviteStatus,
    LinkRequest,
    LinkRequestStatus,
    Organization,
    Workspace,
    WorkspaceMember,
    WorkspaceOrganization,
    utcnow,
)
from orglink.exceptions import ConflictError, ErrorCode, NotFoundError

logger = logging.getLogger(__name__)


class EnterpriseStore(Protocol):
    """Read/write operations the core needs from persistence."""

    # Organizations
    def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    def find_organizations(
        self,
        *,
        ids: Optional[Iterable[str]] = None,
        email: Optional[str] = None,
        slug: Optional[str] = None,
        website_contains: Optional[str] = None,
        eligible_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Organization]: ...

    def create_organization(self, organization: Organization) -> Organization: ...

    def update_organization(self, organization_id: str, **changes: Any) -> Organization: ...

    # Workspaces and realized links
    def get_workspace(self, workspace_id: str) -> Optional[Workspace]: ...

    def create_workspace(self, workspace: Workspace) -> Workspace: ...

    def get_workspace_link(
        self, workspace_id: str, organization_id: str
    ) -> Optional[WorkspaceOrganization]: ...

    def list_workspace_links(
        self,
        *,
        workspace_ids: Optional[Iterable[str]] = None,
        organization_id: Optional[str] = None,
    ) -> list[WorkspaceOrganization]: ...

    def create_workspace_link(
        self, workspace_id: str, organization_id: str, linked_by: Optional[str] = None
    ) -> WorkspaceOrganization: ...

    # Link requests
    def get_link_request(self, request_id: str) -> Optional[LinkRequest]: ...

    def find_link_requests(
        self,
        *,
        enterprise_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        statuses: Optional[Iterable[LinkRequestStatus]] = None,
    ) -> list[LinkRequest]: ...

    def create_link_request(self, request: LinkRequest) -> LinkRequest: ...

    def update_link_request(
        self,
        request_id: str,
        *,
        expected_statuses: Optional[Iterable[LinkRequestStatus]] = None,
        **changes: Any,
    ) -> Optional[LinkRequest]: ...

    # API keys, members, invites
    def get_api_key(self, api_key_id: str) -> Optional[ApiKey]: ...

    def find_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]: ...

    def create_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def count_active_api_keys(self, workspace_ids: Iterable[str]) -> int: ...

    def add_member(self, member: WorkspaceMember) -> WorkspaceMember: ...

    def count_members(self, workspace_ids: Iterable[str]) -> int: ...

    def create_invite(self, invite: Invite) -> Invite: ...

    def count_pending_invites(self, workspace_ids: Iterable[str]) -> int: ...

    # Atomicity
    def transaction(self) -> Any:
        """Context manager yielding a store whose writes commit all-or-nothing."""
        ...


_TABLES = (
    "organizations",
    "workspaces",
    "workspace_links",
    "link_requests",
    "api_keys",
    "members",
    "invites",
)

_MODELS = {
    "organizations": Organization,
    "workspaces": Workspace,
    "workspace_links": WorkspaceOrganization,
    "link_requests": LinkRequest,
    "api_keys": ApiKey,
    "members": WorkspaceMember,
    "invites": Invite,
}


class InMemoryEnterpriseStore:
    """
    Process-local EnterpriseStore backed by dicts.

    Every operation takes the store lock; `transaction()` holds it for
    the whole block, so a transaction observes no interleaved writes
    and its reads stay valid until it commits.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, Any]] = {name: {} for name in _TABLES}
        # Insertion order breaks created_at ties when sorting newest-first
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._transaction_depth = 0

    # ── Seeding ──────────────────────────────────────────────

    @classmethod
    def from_seed(
        cls,
        data: dict[str, list[dict[str, Any]]],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "InMemoryEnterpriseStore":
        """Build a store from a mapping of table name -> list of records."""
        store = cls(clock=clock)
        unknown = set(data) - set(_TABLES)
        if unknown:
            raise ValueError(f"Unknown seed tables: {sorted(unknown)}")
        for table in _TABLES:
            for raw in data.get(table) or []:
                store._insert(table, _MODELS[table](**raw))
        return store

    # ── Internals ────────────────────────────────────────────

    def _insert(self, table: str, record: Any) -> Any:
        changes: dict[str, Any] = {}
        if not record.id:
            changes["id"] = uuid.uuid4().hex
        if getattr(record, "created_at", "") is None:
            changes["created_at"] = self._clock()
        if changes:
            record = record.model_copy(update=changes)
        if record.id in self._tables[table]:
            raise ValueError(f"Duplicate {table} id {record.id}")
        self._tables[table][record.id] = record
        self._sequence[record.id] = self._next_sequence
        self._next_sequence += 1
        return record

    def _newest_first(self, records: list[Any]) -> list[Any]:
        return sorted(
            records,
            key=lambda r: (r.created_at.timestamp() if r.created_at else 0.0, self._sequence.get(r.id, 0)),
            reverse=True,
        )

    def _oldest_first(self, records: list[Any]) -> list[Any]:
        return list(reversed(self._newest_first(records)))

    # ── Atomicity ────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator["InMemoryEnterpriseStore"]:
        """
        Run a block of operations as one serializable unit.

        Nested transactions join the outermost one. On any exception
        every table is restored to its state at the outermost entry.
        """
        with self._lock:
            if self._transaction_depth > 0:
                self._transaction_depth += 1
                try:
                    yield self
                finally:
                    self._transaction_depth -= 1
                return

            backup = copy.deepcopy(self._tables)
            sequence_backup = dict(self._sequence)
            next_sequence_backup = self._next_sequence
            self._transaction_depth = 1
            try:
                yield self
            except BaseException:
                self._tables = backup
                self._sequence = sequence_backup
                self._next_sequence = next_sequence_backup
                logger.debug("transaction_rolled_back")
                raise
            finally:
                self._transaction_depth = 0

    # ── Organizations ────────────────────────────────────────

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._lock:
            return self._tables["organizations"].get(organization_id)

    def find_organizations(
        self,
        *,
        ids: Optional[Iterable[str]] = None,
        email: Optional[str] = None,
        slug: Optional[str] = None,
        website_contains: Optional[str] = None,
        eligible_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Organization]:
        id_filter = set(ids) if ids is not None else None
        with self._lock:
            results = []
            for org in self._oldest_first(list(self._tables["organizations"].values())):
                if id_filter is not None and org.id not in id_filter:
                    continue
                if email is not None and org.email != email.strip().lower():
                    continue
                if slug is not None and org.slug != slug:
                    continue
                if website_contains is not None and website_contains.lower() not in org.website.lower():
                    continue
                if eligible_only and not org.is_eligible:
                    continue
                results.append(org)
                if limit is not None and len(results) >= limit:
                    break
            return results

    def create_organization(self, organization: Organization) -> Organization:
        with self._lock:
            return self._insert("organizations", organization)

    def update_organization(self, organization_id: str, **changes: Any) -> Organization:
        with self._lock:
            org = self._tables["organizations"].get(organization_id)
            if org is None:
                raise NotFoundError(
                    f"Organization {organization_id} not found",
                    code=ErrorCode.ORGANIZATION_NOT_FOUND,
                )
            updated = org.model_copy(update=changes)
            self._tables["organizations"][organization_id] = updated
            return updated

    # ── Workspaces ───────────────────────────────────────────

    def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        with self._lock:
            return self._tables["workspaces"].get(workspace_id)

    def create_workspace(self, workspace: Workspace) -> Workspace:
        with self._lock:
            return self._insert("workspaces", workspace)

    def get_workspace_link(
        self, workspace_id: str, organization_id: str
    ) -> Optional[WorkspaceOrganization]:
        with self._lock:
            for link in self._tables["workspace_links"].values():
                if link.workspace_id == workspace_id and link.organization_id == organization_id:
                    return link
            return None

    def list_workspace_links(
        self,
        *,
        workspace_ids: Optional[Iterable[str]] = None,
        organization_id: Optional[str] = None,
    ) -> list[WorkspaceOrganization]:
        """Links matching the filters, oldest first."""
        workspace_filter = set(workspace_ids) if workspace_ids is not None else None
        with self._lock:
            links = [
                link for link in self._tables["workspace_links"].values()
                if (workspace_filter is None or link.workspace_id in workspace_filter)
                and (organization_id is None or link.organization_id == organization_id)
            ]
            return self._oldest_first(links)

    def create_workspace_link(
        self, workspace_id: str, organization_id: str, linked_by: Optional[str] = None
    ) -> WorkspaceOrganization:
        with self._lock:
            if self.get_workspace_link(workspace_id, organization_id) is not None:
                raise ConflictError(
                    "Organization is already linked to this workspace",
                    code=ErrorCode.ALREADY_LINKED,
                    details={"workspace_id": workspace_id, "organization_id": organization_id},
                )
            return self._insert(
                "workspace_links",
                WorkspaceOrganization(
                    workspace_id=workspace_id,
                    organization_id=organization_id,
                    linked_by=linked_by,
                ),
            )

    # ── Link Requests ────────────────────────────────────────

    def get_link_request(self, request_id: str) -> Optional[LinkRequest]:
        with self._lock:
            return self._tables["link_requests"].get(request_id)

    def find_link_requests(
        self,
        *,
        enterprise_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        statuses: Optional[Iterable[LinkRequestStatus]] = None,
    ) -> list[LinkRequest]:
        """Link requests matching the filters, newest first."""
        status_filter = set(statuses) if statuses is not None else None
        with self._lock:
            requests = [
                r for r in self._tables["link_requests"].values()
                if (enterprise_id is None or r.enterprise_id == enterprise_id)
                and (workspace_id is None or r.workspace_id == workspace_id)
                and (organization_id is None or r.organization_id == organization_id)
                and (status_filter is None or r.status in status_filter)
            ]
            return self._newest_first(requests)

    def create_link_request(self, request: LinkRequest) -> LinkRequest:
        with self._lock:
            if request.updated_at is None:
                request = request.model_copy(update={"updated_at": self._clock()})
            return self._insert("link_requests", request)

    def update_link_request(
        self,
        request_id: str,
        *,
        expected_statuses: Optional[Iterable[LinkRequestStatus]] = None,
        **changes: Any,
    ) -> Optional[LinkRequest]:
        """
        Filtered update: apply `changes` only if the row exists and its
        status is in `expected_statuses`. Returns None when nothing matched.
        """
        with self._lock:
            request = self._tables["link_requests"].get(request_id)
            if request is None:
                return None
            if expected_statuses is not None and request.status not in set(expected_statuses):
                return None
            changes.setdefault("updated_at", self._clock())
            updated = request.model_copy(update=changes)
            self._tables["link_requests"][request_id] = updated
            return updated

    # ── API Keys ─────────────────────────────────────────────

    def get_api_key(self, api_key_id: str) -> Optional[ApiKey]:
        with self._lock:
            return self._tables["api_keys"].get(api_key_id)

    def find_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        with self._lock:
            for key in self._tables["api_keys"].values():
                if key.key_hash == key_hash:
                    return key
            return None

    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._lock:
            return self._insert("api_keys", api_key)

    def count_active_api_keys(self, workspace_ids: Iterable[str]) -> int:
        workspace_filter = set(workspace_ids)
        with self._lock:
            return sum(
                1 for key in self._tables["api_keys"].values()
                if key.workspace_id in workspace_filter and key.revoked_at is None
            )

    # ── Members & Invites ────────────────────────────────────

    def add_member(self, member: WorkspaceMember) -> WorkspaceMember:
        with self._lock:
            return self._insert("members", member)

    def count_members(self, workspace_ids: Iterable[str]) -> int:
        workspace_filter = set(workspace_ids)
        with self._lock:
            return sum(
                1 for m in self._tables["members"].values()
                if m.workspace_id in workspace_filter
            )

    def create_invite(self, invite: Invite) -> Invite:
        with self._lock:
            return self._insert("invites", invite)

    def count_pending_invites(self, workspace_ids: Iterable[str]) -> int:
        workspace_filter = set(workspace_ids)
        with self._lock:
            return sum(
                1 for i in self._tables["invites"].values()
                if i.workspace_id in workspace_filter and i.status == InviteStatus.PENDING
            )
