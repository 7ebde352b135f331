"""
Enterprise Workspace Operations.

Quota-guarded writes for the resources other than linked
organizations: workspaces, API keys, members and invites. Each guard
check and its write share one store transaction.

Usage:
    workspaces = EnterpriseWorkspaceService(store)

    ws = workspaces.create_workspace("ent-1", "EMEA Ops", created_by_user_id="user-1")

    # The raw key is returned ONLY once; only its hash is stored.
    raw_key, key = workspaces.issue_api_key(ws.id, name="Reporting")
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime
from typing import Callable, Optional

from orglink.enterprise.models import (
    ApiKey,
    Invite,
    QuotaResource,
    Workspace,
    WorkspaceMember,
    WorkspaceRole,
    utcnow,
)
from orglink.enterprise.quota import QuotaSnapshotResolver
from orglink.enterprise.storage import EnterpriseStore
from orglink.exceptions import ErrorCode, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "olk_"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


class EnterpriseWorkspaceService:
    """Creates quota-governed workspace resources."""

    def __init__(
        self,
        store: EnterpriseStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._clock = clock or utcnow

    def _require_workspace(self, tx: EnterpriseStore, workspace_id: str) -> Workspace:
        workspace = tx.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError(
                "Workspace not found",
                code=ErrorCode.WORKSPACE_NOT_FOUND,
                details={"workspace_id": workspace_id},
            )
        return workspace

    def create_workspace(
        self,
        enterprise_id: str,
        name: str,
        created_by_user_id: Optional[str] = None,
    ) -> Workspace:
        """Create a workspace owned by an enterprise (WORKSPACES quota)."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Workspace name is required")

        with self.store.transaction() as tx:
            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_enterprise(
                enterprise_id, QuotaResource.WORKSPACES
            )
            workspace = tx.create_workspace(Workspace(name=name))
            tx.create_workspace_link(workspace.id, enterprise_id, linked_by=created_by_user_id)

        logger.info(
            "workspace_created",
            extra={"workspace_id": workspace.id, "enterprise_id": enterprise_id},
        )
        return workspace

    def issue_api_key(
        self,
        workspace_id: str,
        name: str = "Default Key",
        rate_limit_per_minute: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[str, ApiKey]:
        """
        Issue an API key for a workspace (API_KEYS quota).

        Returns:
            Tuple of (raw_key, key_record).
        """
        raw_key = generate_api_key()

        with self.store.transaction() as tx:
            self._require_workspace(tx, workspace_id)
            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_workspace(
                workspace_id, QuotaResource.API_KEYS
            )
            key = tx.create_api_key(
                ApiKey(
                    workspace_id=workspace_id,
                    name=name.strip() or "Default Key",
                    key_hash=hash_api_key(raw_key),
                    key_prefix=raw_key[:12],
                    rate_limit_per_minute=rate_limit_per_minute,
                    expires_at=expires_at,
                )
            )

        logger.info(
            "api_key_created",
            extra={"workspace_id": workspace_id, "key_prefix": key.key_prefix},
        )
        return raw_key, key

    def add_member(
        self,
        workspace_id: str,
        user_id: str,
        role: WorkspaceRole = WorkspaceRole.VIEWER,
    ) -> WorkspaceMember:
        """Add a member to a workspace (MEMBERS quota)."""
        with self.store.transaction() as tx:
            self._require_workspace(tx, workspace_id)
            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_workspace(
                workspace_id, QuotaResource.MEMBERS
            )
            member = tx.add_member(
                WorkspaceMember(workspace_id=workspace_id, user_id=user_id, role=role)
            )

        logger.info(
            "member_added",
            extra={"workspace_id": workspace_id, "role": member.role.value},
        )
        return member

    def invite_member(
        self,
        workspace_id: str,
        email: str,
        role: WorkspaceRole = WorkspaceRole.VIEWER,
    ) -> Invite:
        """Invite someone to a workspace. Pending invites count as members."""
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("A valid email is required")

        with self.store.transaction() as tx:
            self._require_workspace(tx, workspace_id)
            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_workspace(
                workspace_id, QuotaResource.MEMBERS
            )
            invite = tx.create_invite(Invite(workspace_id=workspace_id, email=email, role=role))

        logger.info("member_invited", extra={"workspace_id": workspace_id})
        return invite
