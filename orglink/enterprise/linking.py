"""
Enterprise Organization Linking.

Link requests are how an enterprise gains a subordinate organization
under one of its workspaces:

    (none) --create LINK_EXISTING--------------> PENDING
    (none) --create CREATE_UNDER_ENTERPRISE----> PENDING_APPROVAL
    PENDING --approve (target org consents)----> APPROVED
    PENDING --deny (target org refuses)--------> DENIED
    PENDING | PENDING_APPROVAL --cancel--------> CANCELED

APPROVED, DENIED and CANCELED are terminal. Every transition that can
grow the enterprise's linked-organization count re-checks the
LINKED_ORGS quota; approval does so inside the same store transaction
that creates the realized link, against a snapshot read in that
transaction.

Usage:
    service = LinkRequestService(store, provisioner=provisioner, audit=audit)

    request = service.create_link_request(
        workspace_id="ws-1",
        enterprise_id="ent-1",
        requested_by_user_id="user-7",
        identifier="acme.io",
    )

    approval = service.approve(request.id, organization_id=request.organization_id,
                               actor_user_id="user-99")
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel

from orglink.enterprise.audit import AuditLogger, record_best_effort
from orglink.enterprise.identifiers import OrganizationResolver
from orglink.enterprise.models import (
    OPEN_LINK_REQUEST_STATUSES,
    AuditAction,
    AuditEvent,
    LinkApproval,
    LinkIntent,
    LinkMethod,
    LinkRequest,
    LinkRequestStatus,
    Organization,
    OrgPriority,
    PlanStatus,
    PlanType,
    QuotaResource,
    SupportTier,
    WorkspaceStatus,
    utcnow,
)
from orglink.enterprise.provisioning import (
    OrganizationProvisioner,
    SignupRequest,
)
from orglink.enterprise.quota import QuotaSnapshotResolver
from orglink.enterprise.storage import EnterpriseStore
from orglink.exceptions import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    UnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

AUDIT_ENTITY = "EnterpriseOrgLinkRequest"

SPAWNED_ORGANIZATION_MESSAGE = "Created by enterprise workspace. Pending super admin approval."


class EnterpriseOrganizationResult(BaseModel):
    """Result of spawning an organization under an enterprise workspace."""

    organization: Organization
    site: dict[str, Any]
    link_request: LinkRequest


class LinkRequestService:
    """
    Link request state machine.

    Args:
        store: Storage collaborator; must support `transaction()`.
        provisioner: Creates organizations for CREATE_UNDER_ENTERPRISE.
        audit: Optional audit logger; failures never propagate.
        clock: Returns the current UTC datetime.
    """

    def __init__(
        self,
        store: EnterpriseStore,
        provisioner: Optional[OrganizationProvisioner] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provisioner = provisioner
        self.audit = audit
        self._clock = clock or utcnow

    # ── Guards ───────────────────────────────────────────────

    @staticmethod
    def _ensure_workspace_scoped(tx: EnterpriseStore, workspace_id: str, enterprise_id: str) -> None:
        if tx.get_workspace_link(workspace_id, enterprise_id) is None:
            raise AuthorizationError(
                "Workspace is not scoped to your enterprise organization",
                code=ErrorCode.WORKSPACE_NOT_SCOPED,
                details={"workspace_id": workspace_id, "enterprise_id": enterprise_id},
            )

    @staticmethod
    def _load_request(tx: EnterpriseStore, request_id: str) -> LinkRequest:
        request = tx.get_link_request(request_id)
        if request is None:
            raise NotFoundError(
                "Link request not found",
                code=ErrorCode.LINK_REQUEST_NOT_FOUND,
                details={"request_id": request_id},
            )
        return request

    @staticmethod
    def _already_processed(request: LinkRequest) -> ConflictError:
        return ConflictError(
            "Link request already processed",
            code=ErrorCode.ALREADY_PROCESSED,
            details={"request_id": request.id, "status": request.status.value},
        )

    def _load_addressed_request(
        self, tx: EnterpriseStore, request_id: str, organization_id: str
    ) -> LinkRequest:
        """Fetch a request the acting organization is allowed to decide on, still PENDING."""
        request = self._load_request(tx, request_id)
        if request.organization_id != organization_id:
            raise AuthorizationError(
                "Link request is addressed to a different organization",
                details={"request_id": request_id},
            )
        if request.status != LinkRequestStatus.PENDING:
            raise self._already_processed(request)
        return request

    def _audit(
        self,
        action: AuditAction,
        actor_id: Optional[str],
        request: LinkRequest,
        details: str,
    ) -> None:
        record_best_effort(
            self.audit,
            AuditEvent(
                actor_id=actor_id,
                action=action,
                entity=AUDIT_ENTITY,
                target_id=request.id,
                details=details,
                snapshot=request.model_dump(mode="json"),
            ),
        )

    # ── Create: LINK_EXISTING ────────────────────────────────

    def create_link_request(
        self,
        *,
        workspace_id: str,
        enterprise_id: str,
        requested_by_user_id: str,
        link_method: Optional[LinkMethod | str] = None,
        identifier: Optional[str] = None,
        organization_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> LinkRequest:
        """
        Ask an existing organization to link with an enterprise workspace.

        Returns the existing PENDING request unchanged when one already
        targets the same (workspace, enterprise, organization).

        Raises:
            AuthorizationError: Workspace not scoped to the enterprise.
            ValidationError / NotFoundError / AmbiguousMatchError: Target
                organization could not be resolved.
            ConflictError: Target is the enterprise itself or already linked.
            LimitReachedError: Enterprise is at its linked-organization ceiling.
        """
        method = LinkMethod(link_method) if link_method else None
        normalized_identifier = (identifier or "").strip()
        normalized_organization_id = (organization_id or "").strip()

        with self.store.transaction() as tx:
            self._ensure_workspace_scoped(tx, workspace_id, enterprise_id)

            resolver = OrganizationResolver(tx)
            if method == LinkMethod.ORG_ID:
                organization = resolver.resolve_by_id(normalized_organization_id)
                request_identifier = normalized_organization_id
            else:
                organization = resolver.resolve_by_identifier(normalized_identifier)
                request_identifier = normalized_identifier

            if organization.id == enterprise_id:
                raise ConflictError(
                    "Enterprise organization is already linked",
                    code=ErrorCode.ALREADY_LINKED,
                    details={"organization_id": organization.id},
                )

            if tx.get_workspace_link(workspace_id, organization.id) is not None:
                raise ConflictError(
                    "Organization is already linked to this workspace",
                    code=ErrorCode.ALREADY_LINKED,
                    details={"workspace_id": workspace_id, "organization_id": organization.id},
                )

            existing = tx.find_link_requests(
                workspace_id=workspace_id,
                enterprise_id=enterprise_id,
                organization_id=organization.id,
                statuses=[LinkRequestStatus.PENDING],
            )
            if existing:
                logger.info(
                    "link_request_reused",
                    extra={"request_id": existing[0].id, "enterprise_id": enterprise_id},
                )
                return existing[0]

            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_enterprise(
                enterprise_id,
                QuotaResource.LINKED_ORGS,
                linked_organization_id=organization.id,
            )

            request = tx.create_link_request(
                LinkRequest(
                    enterprise_id=enterprise_id,
                    workspace_id=workspace_id,
                    organization_id=organization.id,
                    requested_by_user_id=requested_by_user_id,
                    request_identifier=request_identifier,
                    message=(message or "").strip() or None,
                    intent_type=LinkIntent.LINK_EXISTING,
                    status=LinkRequestStatus.PENDING,
                )
            )

        logger.info(
            "link_request_created",
            extra={
                "request_id": request.id,
                "enterprise_id": enterprise_id,
                "workspace_id": workspace_id,
                "organization_id": organization.id,
            },
        )
        self._audit(
            AuditAction.CREATE,
            requested_by_user_id,
            request,
            f"ENTERPRISE_LINK_REQUEST_CREATED enterprise={enterprise_id} "
            f"workspace={workspace_id} organization={organization.id}",
        )
        return request

    # ── Create: CREATE_UNDER_ENTERPRISE ──────────────────────

    def create_enterprise_organization(
        self,
        *,
        workspace_id: str,
        enterprise_id: str,
        created_by_user_id: str,
        signup: SignupRequest,
    ) -> EnterpriseOrganizationResult:
        """
        Spawn a new organization under an enterprise workspace.

        The quota is checked before anything is provisioned. The new
        organization is upgraded to the managed paid tier, inherits the
        enterprise's plan end date, and gets a PENDING_APPROVAL request.
        """
        if self.provisioner is None:
            raise ValidationError("Organization provisioning is not configured")

        self._ensure_workspace_scoped(self.store, workspace_id, enterprise_id)

        enterprise = self.store.get_organization(enterprise_id)
        if enterprise is None:
            raise NotFoundError(
                "Enterprise organization not found",
                code=ErrorCode.ENTERPRISE_NOT_FOUND,
                details={"enterprise_id": enterprise_id},
            )

        QuotaSnapshotResolver(self.store, clock=self._clock).assert_available_for_enterprise(
            enterprise_id, QuotaResource.LINKED_ORGS
        )

        provisioned = self.provisioner.signup(signup)

        with self.store.transaction() as tx:
            managed = tx.update_organization(
                provisioned.organization.id,
                plan_type=PlanType.BUSINESS,
                plan_status=PlanStatus.ACTIVE,
                support_tier=SupportTier.INSTANT,
                priority=OrgPriority.HIGH,
                plan_end_at=enterprise.plan_end_at,
            )
            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_enterprise(
                enterprise_id,
                QuotaResource.LINKED_ORGS,
                linked_organization_id=managed.id,
            )
            request = tx.create_link_request(
                LinkRequest(
                    enterprise_id=enterprise_id,
                    workspace_id=workspace_id,
                    organization_id=managed.id,
                    requested_by_user_id=created_by_user_id,
                    request_identifier=signup.email,
                    message=SPAWNED_ORGANIZATION_MESSAGE,
                    intent_type=LinkIntent.CREATE_UNDER_ENTERPRISE,
                    status=LinkRequestStatus.PENDING_APPROVAL,
                )
            )

        logger.info(
            "enterprise_organization_created",
            extra={
                "request_id": request.id,
                "enterprise_id": enterprise_id,
                "workspace_id": workspace_id,
                "organization_id": managed.id,
            },
        )
        self._audit(
            AuditAction.CREATE,
            created_by_user_id,
            request,
            f"ENTERPRISE_ORG_CREATED enterprise={enterprise_id} workspace={workspace_id} "
            f"organization={managed.id} request={request.id} status=PENDING_APPROVAL",
        )
        return EnterpriseOrganizationResult(
            organization=managed,
            site=provisioned.site,
            link_request=request,
        )

    # ── Decide ───────────────────────────────────────────────

    def approve(
        self,
        request_id: str,
        organization_id: str,
        actor_user_id: str,
    ) -> LinkApproval:
        """
        Approve a PENDING request on behalf of the target organization.

        Runs in one transaction: re-read the request, re-check the
        LINKED_ORGS quota on a fresh snapshot, require an ACTIVE
        workspace, create (or reuse) the realized link, and mark the
        request APPROVED. Any failure leaves no mutation behind.

        Raises:
            NotFoundError: Unknown request.
            AuthorizationError: Request targets another organization.
            ConflictError: Already processed (ALREADY_PROCESSED).
            LimitReachedError: Enterprise at its ceiling.
            UnavailableError: Workspace missing or not ACTIVE.
        """
        with self.store.transaction() as tx:
            request = self._load_addressed_request(tx, request_id, organization_id)

            QuotaSnapshotResolver(tx, clock=self._clock).assert_available_for_enterprise(
                request.enterprise_id,
                QuotaResource.LINKED_ORGS,
                linked_organization_id=request.organization_id,
            )

            workspace = tx.get_workspace(request.workspace_id)
            if workspace is None or workspace.status != WorkspaceStatus.ACTIVE:
                raise UnavailableError(
                    "Workspace is unavailable",
                    code=ErrorCode.WORKSPACE_UNAVAILABLE,
                    details={
                        "workspace_id": request.workspace_id,
                        "status": workspace.status.value if workspace else None,
                    },
                )

            link = tx.get_workspace_link(request.workspace_id, organization_id)
            if link is None:
                link = tx.create_workspace_link(
                    request.workspace_id,
                    organization_id,
                    linked_by=request.requested_by_user_id or actor_user_id,
                )

            updated = tx.update_link_request(
                request.id,
                expected_statuses=[LinkRequestStatus.PENDING],
                status=LinkRequestStatus.APPROVED,
                decided_at=self._clock(),
                decision_by_org_user_id=actor_user_id,
            )
            if updated is None:
                raise self._already_processed(request)

        logger.info(
            "link_request_approved",
            extra={
                "request_id": updated.id,
                "enterprise_id": updated.enterprise_id,
                "workspace_id": updated.workspace_id,
                "organization_id": organization_id,
            },
        )
        self._audit(
            AuditAction.APPROVE,
            actor_user_id,
            updated,
            f"ENTERPRISE_LINK_REQUEST_APPROVED organization={organization_id} "
            f"request={updated.id} workspace={link.workspace_id}",
        )
        return LinkApproval(request=updated, link=link)

    def deny(
        self,
        request_id: str,
        organization_id: str,
        actor_user_id: str,
    ) -> LinkRequest:
        """Deny a PENDING request on behalf of the target organization."""
        with self.store.transaction() as tx:
            request = self._load_addressed_request(tx, request_id, organization_id)
            updated = tx.update_link_request(
                request.id,
                expected_statuses=[LinkRequestStatus.PENDING],
                status=LinkRequestStatus.DENIED,
                decided_at=self._clock(),
                decision_by_org_user_id=actor_user_id,
            )
            if updated is None:
                raise self._already_processed(request)

        logger.info(
            "link_request_denied",
            extra={"request_id": updated.id, "organization_id": organization_id},
        )
        self._audit(
            AuditAction.REJECT,
            actor_user_id,
            updated,
            f"ENTERPRISE_LINK_REQUEST_DENIED organization={organization_id} "
            f"request={updated.id} workspace={updated.workspace_id or 'unknown'}",
        )
        return updated

    def cancel(
        self,
        request_id: str,
        enterprise_id: str,
        requested_by_user_id: Optional[str] = None,
    ) -> LinkRequest:
        """Withdraw an open request on behalf of the enterprise that made it."""
        with self.store.transaction() as tx:
            request = self._load_request(tx, request_id)
            if request.enterprise_id != enterprise_id:
                raise AuthorizationError(
                    "Link request belongs to a different enterprise",
                    details={"request_id": request_id},
                )
            if request.status not in OPEN_LINK_REQUEST_STATUSES:
                raise self._already_processed(request)

            now = self._clock()
            updated = tx.update_link_request(
                request.id,
                expected_statuses=OPEN_LINK_REQUEST_STATUSES,
                status=LinkRequestStatus.CANCELED,
                canceled_at=now,
                updated_at=now,
            )
            if updated is None:
                raise self._already_processed(request)

        logger.info(
            "link_request_canceled",
            extra={"request_id": updated.id, "enterprise_id": enterprise_id},
        )
        self._audit(
            AuditAction.CANCEL,
            requested_by_user_id,
            updated,
            f"ENTERPRISE_LINK_REQUEST_CANCELED enterprise={enterprise_id} "
            f"request={updated.id} workspace={updated.workspace_id}",
        )
        return updated

    # ── Views ────────────────────────────────────────────────

    def list_pending_for_organization(self, organization_id: str) -> list[LinkRequest]:
        """Recipient view: PENDING requests addressed to an organization, newest first."""
        return self.store.find_link_requests(
            organization_id=organization_id,
            statuses=[LinkRequestStatus.PENDING],
        )

    def list_for_workspace(self, workspace_id: str, enterprise_id: str) -> list[LinkRequest]:
        """Requester view: every request for a (workspace, enterprise) pair, newest first."""
        return self.store.find_link_requests(
            workspace_id=workspace_id,
            enterprise_id=enterprise_id,
        )
