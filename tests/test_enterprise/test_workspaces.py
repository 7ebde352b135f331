"""
Tests for quota-guarded workspace operations and API key issuance.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from orglink.enterprise.models import WorkspaceRole
from orglink.enterprise.quota import QuotaSnapshotResolver
from orglink.enterprise.workspaces import (
    API_KEY_PREFIX,
    EnterpriseWorkspaceService,
    generate_api_key,
    hash_api_key,
)
from orglink.exceptions import ErrorCode, LimitReachedError, NotFoundError, ValidationError


@pytest.fixture
def workspaces(store, clock):
    return EnterpriseWorkspaceService(store, clock=clock)


class TestApiKeyHelpers:
    """Key generation and hashing."""

    def test_generate_has_prefix(self):
        key = generate_api_key()
        assert key.startswith(API_KEY_PREFIX)
        assert len(key) > 30

    def test_keys_are_unique(self):
        assert generate_api_key() != generate_api_key()

    def test_hash_is_deterministic_sha256(self):
        assert hash_api_key("olk_demo_reporting_key_0001") == (
            "7cef62a76e038eb497b080f794226979644d9671d7ab1ac53467a3c1e2a95758"
        )


class TestCreateWorkspace:
    """Workspace creation under the quota."""

    def test_creates_and_links(self, workspaces, store):
        ws = workspaces.create_workspace("ent-1", "  APAC  ", created_by_user_id="user-ent")
        assert ws.name == "APAC"
        link = store.get_workspace_link(ws.id, "ent-1")
        assert link is not None
        assert link.linked_by == "user-ent"

    def test_counts_toward_quota(self, workspaces, store):
        workspaces.create_workspace("ent-1", "Three")
        snapshot = QuotaSnapshotResolver(store).resolve_snapshot("ent-1")
        assert snapshot.usage.workspaces == 3

    def test_limit_reached_leaves_nothing_behind(self, workspaces, store):
        store.update_organization("ent-1", enterprise_max_workspaces=2)
        before = len(store.list_workspace_links(organization_id="ent-1"))
        with pytest.raises(LimitReachedError) as exc_info:
            workspaces.create_workspace("ent-1", "Too many")
        assert exc_info.value.resource == "WORKSPACES"
        assert len(store.list_workspace_links(organization_id="ent-1")) == before

    def test_blank_name(self, workspaces):
        with pytest.raises(ValidationError):
            workspaces.create_workspace("ent-1", "  ")

    def test_unknown_enterprise(self, workspaces):
        with pytest.raises(NotFoundError) as exc_info:
            workspaces.create_workspace("ent-missing", "X")
        assert exc_info.value.code is ErrorCode.ENTERPRISE_NOT_FOUND


class TestIssueApiKey:
    """API key issuance under the quota."""

    def test_returns_raw_key_once(self, workspaces, store):
        raw, key = workspaces.issue_api_key("ws-1", name="Reporting", rate_limit_per_minute=30)
        assert raw.startswith(API_KEY_PREFIX)
        assert key.key_hash == hash_api_key(raw)
        assert key.key_prefix == raw[:12]
        assert key.rate_limit_per_minute == 30
        assert store.find_api_key_by_hash(hash_api_key(raw)).id == key.id

    def test_blank_name_gets_default(self, workspaces):
        _, key = workspaces.issue_api_key("ws-1", name="   ")
        assert key.name == "Default Key"

    def test_limit_reached(self, workspaces, store):
        store.update_organization("ent-1", enterprise_max_api_keys=2)
        workspaces.issue_api_key("ws-1")
        workspaces.issue_api_key("ws-suspended")
        with pytest.raises(LimitReachedError) as exc_info:
            workspaces.issue_api_key("ws-1")
        assert (exc_info.value.limit, exc_info.value.current) == (2, 2)

    def test_unknown_workspace(self, workspaces):
        with pytest.raises(NotFoundError) as exc_info:
            workspaces.issue_api_key("ws-missing")
        assert exc_info.value.code is ErrorCode.WORKSPACE_NOT_FOUND

    def test_expired_key_is_inactive(self, workspaces, clock):
        _, key = workspaces.issue_api_key("ws-1", expires_at=clock() - timedelta(days=1))
        assert key.is_active is False


class TestMembers:
    """Workspace membership and invites."""

    def test_add_member(self, workspaces):
        member = workspaces.add_member("ws-1", "user-9", role=WorkspaceRole.ANALYST)
        assert member.role is WorkspaceRole.ANALYST

    def test_invites_count_as_members(self, workspaces, store):
        store.update_organization("ent-1", enterprise_max_members=2)
        workspaces.add_member("ws-1", "user-1")
        workspaces.invite_member("ws-1", "New@Example.com")
        with pytest.raises(LimitReachedError) as exc_info:
            workspaces.add_member("ws-1", "user-2")
        assert exc_info.value.resource == "MEMBERS"

    def test_invite_normalizes_email(self, workspaces):
        invite = workspaces.invite_member("ws-1", "  New@Example.com ")
        assert invite.email == "new@example.com"

    def test_invite_requires_email(self, workspaces):
        with pytest.raises(ValidationError):
            workspaces.invite_member("ws-1", "not-an-email")
