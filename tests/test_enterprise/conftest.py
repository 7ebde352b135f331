"""Shared fixtures for the enterprise test modules."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from orglink.enterprise.storage import InMemoryEnterpriseStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def enterprise_seed(**limit_overrides) -> dict:
    """
    One enterprise (ent-1) governing an ACTIVE and a SUSPENDED workspace,
    plus a handful of approved organizations that can be linked.
    """
    enterprise = {
        "id": "ent-1",
        "name": "Globex Enterprise",
        "slug": "globex",
        "email": "admin@globex.io",
        "website": "https://globex.io",
        "status": "APPROVED",
        "plan_type": "ENTERPRISE",
        "plan_status": "ACTIVE",
        "plan_end_at": "2030-01-01T00:00:00Z",
        "enterprise_max_linked_orgs": 3,
    }
    enterprise.update(limit_overrides)
    return {
        "organizations": [
            enterprise,
            {"id": "org-a", "name": "Acme", "slug": "acme",
             "email": "ops@acme.io", "website": "https://acme.io", "status": "APPROVED"},
            {"id": "org-b", "name": "Beta", "slug": "beta",
             "email": "hi@beta.dev", "website": "beta.dev", "status": "APPROVED"},
            {"id": "org-c", "name": "Gamma", "slug": "gamma",
             "email": "team@gamma.co", "website": "https://www.gamma.co", "status": "APPROVED"},
            {"id": "org-d", "name": "Delta", "slug": "delta",
             "email": "x@delta.org", "website": "delta.org", "status": "APPROVED"},
            {"id": "org-pending", "name": "Pending Co", "slug": "pendingco",
             "email": "p@pending.co", "status": "PENDING"},
        ],
        "workspaces": [
            {"id": "ws-1", "name": "EMEA"},
            {"id": "ws-suspended", "name": "Old", "status": "SUSPENDED"},
        ],
        "workspace_links": [
            {"workspace_id": "ws-1", "organization_id": "ent-1"},
            {"workspace_id": "ws-suspended", "organization_id": "ent-1"},
        ],
    }


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store(clock):
    return InMemoryEnterpriseStore.from_seed(enterprise_seed(), clock=clock)
