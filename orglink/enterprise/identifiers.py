"""
Organization resolution for link requests.

A requester names the organization they want to link with a free-form
identifier: a contact email, a slug, or a website/domain. Three
independent lookups run (email, slug, domain), their results are
merged and deduplicated, and only eligible organizations (approved,
not deleted, not restricted) are considered.

    resolver = OrganizationResolver(store)
    org = resolver.resolve_by_identifier("https://www.acme.io/")
    org = resolver.resolve_by_id("org-42")
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlsplit

from orglink.enterprise.models import Organization
from orglink.enterprise.storage import EnterpriseStore
from orglink.exceptions import (
    AmbiguousMatchError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)

_SLUG_PATTERN = re.compile(r"^[a-z0-9-]{2,}$")
_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.\-]*://", re.IGNORECASE)

# Domain lookups pre-filter with a substring match, then compare exactly
DOMAIN_CANDIDATE_LIMIT = 20


def parse_domain(value: str) -> Optional[str]:
    """
    Reduce a URL or bare domain to its hostname without a leading "www.".

    >>> parse_domain("HTTPS://www.Acme.io/about")
    'acme.io'
    >>> parse_domain("acme.io")
    'acme.io'
    """
    raw = (value or "").strip().lower()
    if not raw:
        return None
    if not _SCHEME_PATTERN.match(raw):
        raw = f"https://{raw}"
    try:
        hostname = urlsplit(raw).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    if hostname.startswith("www."):
        hostname = hostname[len("www."):]
    return hostname or None


def dedupe_organizations(organizations: list[Organization]) -> list[Organization]:
    """Drop repeated ids, keeping first occurrence order."""
    seen: set[str] = set()
    deduped = []
    for org in organizations:
        if org.id in seen:
            continue
        seen.add(org.id)
        deduped.append(org)
    return deduped


class OrganizationResolver:
    """Find the eligible organization a link request targets."""

    def __init__(self, store: EnterpriseStore):
        self.store = store

    def resolve_by_identifier(self, identifier: str) -> Organization:
        """
        Resolve an email, slug or domain to exactly one eligible organization.

        Raises:
            ValidationError: If the identifier is blank.
            NotFoundError: If no eligible organization matches.
            AmbiguousMatchError: If several match and none is an exact
                slug or exact email match.
        """
        normalized = (identifier or "").strip().lower()
        if not normalized:
            raise ValidationError(
                "Organization identifier is required",
                code=ErrorCode.IDENTIFIER_REQUIRED,
            )

        candidates: list[Organization] = []

        if "@" in normalized:
            candidates.extend(
                self.store.find_organizations(email=normalized, eligible_only=True, limit=1)
            )

        slug_candidate = normalized.strip("/")
        if _SLUG_PATTERN.match(slug_candidate):
            candidates.extend(
                self.store.find_organizations(slug=slug_candidate, eligible_only=True, limit=1)
            )

        domain = parse_domain(normalized)
        if domain:
            for org in self.store.find_organizations(
                website_contains=domain,
                eligible_only=True,
                limit=DOMAIN_CANDIDATE_LIMIT,
            ):
                if parse_domain(org.website) == domain:
                    candidates.append(org)

        unique = dedupe_organizations(candidates)
        if not unique:
            raise NotFoundError(
                "No eligible organization found for this identifier",
                code=ErrorCode.ORGANIZATION_NOT_FOUND,
                details={"identifier": identifier.strip()},
            )
        if len(unique) == 1:
            return unique[0]

        for org in unique:
            if org.slug and org.slug.lower() == slug_candidate:
                return org
        for org in unique:
            if org.email.lower() == normalized:
                return org

        raise AmbiguousMatchError(
            "Multiple organizations matched. Use exact organization email or slug.",
            details={
                "identifier": identifier.strip(),
                "candidate_ids": [org.id for org in unique],
            },
        )

    def resolve_by_id(self, organization_id: str) -> Organization:
        """Look up an eligible organization by primary key."""
        normalized = (organization_id or "").strip()
        if not normalized:
            raise ValidationError(
                "Organization identifier is required",
                code=ErrorCode.IDENTIFIER_REQUIRED,
            )

        org = self.store.get_organization(normalized)
        if org is None or not org.is_eligible:
            raise NotFoundError(
                "No eligible organization found for this identifier",
                code=ErrorCode.ORGANIZATION_NOT_FOUND,
                details={"identifier": normalized},
            )
        return org
