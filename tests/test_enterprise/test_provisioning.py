"""
Tests for signup validation and the store-backed provisioner.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from orglink.enterprise.models import OrgStatus
from orglink.enterprise.provisioning import (
    SignupRequest,
    StoreBackedProvisioner,
    slugify,
)


def _signup(**overrides) -> SignupRequest:
    fields = dict(
        org_name="Hooli Labs",
        email="Founder@Hooli.xyz",
        password="correct-horse",
        website=" https://hooli.xyz ",
    )
    fields.update(overrides)
    return SignupRequest(**fields)


class TestSignupRequest:
    """Signup input validation."""

    def test_normalizes(self):
        request = _signup(about="   ")
        assert request.email == "founder@hooli.xyz"
        assert request.website == "https://hooli.xyz"
        assert request.about is None

    def test_blank_name(self):
        with pytest.raises(ValidationError):
            _signup(org_name="   ")

    def test_name_too_long(self):
        with pytest.raises(ValidationError):
            _signup(org_name="x" * 257)

    def test_email_required(self):
        with pytest.raises(ValidationError):
            _signup(email="hooli.xyz")

    def test_short_password(self):
        with pytest.raises(ValidationError):
            _signup(password="short")

    def test_password_hidden_from_repr(self):
        assert "correct-horse" not in repr(_signup())


class TestSlugify:
    """Slug generation from organization names."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Hooli Labs", "hooli-labs"),
            ("  Pied -- Piper!  ", "pied-piper"),
            ("Über", "ber"),
            ("!!!", "org"),
        ],
    )
    def test_slugify(self, name, expected):
        assert slugify(name) == expected


class TestStoreBackedProvisioner:
    """Provisioning organizations into the store."""

    def test_creates_pending_org(self, store):
        result = StoreBackedProvisioner(store).signup(_signup())
        org = store.get_organization(result.organization.id)
        assert org.status is OrgStatus.PENDING
        assert org.slug == "hooli-labs"
        assert org.email == "founder@hooli.xyz"
        assert result.site["organization_id"] == org.id
        assert result.site["url"] == "https://hooli.xyz"

    def test_slug_collision_gets_suffix(self, store):
        provisioner = StoreBackedProvisioner(store)
        first = provisioner.signup(_signup()).organization
        second = provisioner.signup(_signup()).organization
        assert first.slug == "hooli-labs"
        assert second.slug != first.slug
        assert second.slug.startswith("hooli-labs-")
