"""
Organization provisioning collaborator.

Enterprises can spawn a brand-new organization directly under one of
their workspaces. The signup mechanics (credentials, business
registration, site creation) belong to the provisioning collaborator;
the core only needs the resulting organization and site record.

`StoreBackedProvisioner` is a minimal in-process implementation that
writes the organization straight into an EnterpriseStore.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field, field_validator

from orglink.enterprise.models import Organization, OrgStatus
from orglink.enterprise.storage import EnterpriseStore

logger = logging.getLogger(__name__)


class SignupRequest(BaseModel):
    """Signup parameters for a new organization."""

    org_name: str
    email: str
    password: str = Field(..., min_length=8, repr=False)
    website: str = ""
    phone: str = ""
    address: str = ""
    country_id: str = ""
    state_id: Optional[str] = None
    category_id: str = ""
    org_type: str = "PRIVATE"
    about: Optional[str] = None
    logo: Optional[str] = None

    @field_validator("org_name")
    @classmethod
    def validate_org_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Organization name cannot be empty")
        if len(v) > 256:
            raise ValueError("Organization name must be 256 characters or fewer")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("A valid contact email is required")
        return v

    @field_validator("password", "website", "phone", "address")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("about", "logo")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class ProvisionedOrganization(BaseModel):
    """What the provisioning collaborator returns: the organization and its site record."""

    organization: Organization
    site: dict[str, Any] = Field(default_factory=dict)


class OrganizationProvisioner(Protocol):
    def signup(self, request: SignupRequest) -> ProvisionedOrganization: ...


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "org"


class StoreBackedProvisioner:
    """Creates the organization and a placeholder site record in the store."""

    def __init__(self, store: EnterpriseStore):
        self.store = store

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug = base
        while self.store.find_organizations(slug=slug, limit=1):
            slug = f"{base}-{uuid.uuid4().hex[:6]}"
        return slug

    def signup(self, request: SignupRequest) -> ProvisionedOrganization:
        org = self.store.create_organization(
            Organization(
                name=request.org_name,
                slug=self._unique_slug(request.org_name),
                email=request.email,
                website=request.website,
                status=OrgStatus.PENDING,
            )
        )
        site = {
            "id": uuid.uuid4().hex,
            "organization_id": org.id,
            "url": request.website,
            "country_id": request.country_id,
            "state_id": request.state_id,
            "category_id": request.category_id,
        }
        logger.info(
            "organization_provisioned",
            extra={"organization_id": org.id, "slug": org.slug},
        )
        return ProvisionedOrganization(organization=org, site=site)
