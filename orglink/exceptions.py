"""
Error taxonomy for orglink.

Every failure raised by the quota guard and the link request state
machine is an `OrgLinkError` tagged with a `kind` (what class of
failure it is) and a `code` (which specific condition). Callers
discriminate on those tags rather than on the exception class:

    try:
        service.approve(request_id, org_id, user_id)
    except OrgLinkError as e:
        if e.kind is ErrorKind.CONFLICT:
            ...
        elif e.code is ErrorCode.ALREADY_PROCESSED:
            ...

Concrete classes exist one per kind so `pytest.raises(NotFoundError)`
and `except ConflictError` read naturally. `LimitReachedError` is the
only class that carries extra structured fields.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Broad failure categories, stable across transports."""
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    AMBIGUOUS_MATCH = "ambiguous_match"


class ErrorCode(str, Enum):
    """Specific conditions callers must be able to tell apart."""
    INVALID_INPUT = "INVALID_INPUT"
    IDENTIFIER_REQUIRED = "IDENTIFIER_REQUIRED"
    REQUEST_NOT_ADDRESSED_TO_ACTOR = "REQUEST_NOT_ADDRESSED_TO_ACTOR"
    WORKSPACE_NOT_SCOPED = "WORKSPACE_NOT_SCOPED"
    ENTERPRISE_ACTOR_REQUIRED = "ENTERPRISE_ACTOR_REQUIRED"
    ENTERPRISE_NOT_FOUND = "ENTERPRISE_NOT_FOUND"
    WORKSPACE_NOT_FOUND = "WORKSPACE_NOT_FOUND"
    ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"
    LINK_REQUEST_NOT_FOUND = "LINK_REQUEST_NOT_FOUND"
    ALREADY_LINKED = "ALREADY_LINKED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    LIMIT_REACHED = "LIMIT_REACHED"
    WORKSPACE_UNAVAILABLE = "WORKSPACE_UNAVAILABLE"
    AMBIGUOUS_ORGANIZATION = "AMBIGUOUS_ORGANIZATION"


class OrgLinkError(Exception):
    """
    Base exception for all orglink errors.

    Attributes:
        kind: Failure category (see ErrorKind).
        code: Specific condition (see ErrorCode).
        details: Structured payload safe to show to API clients.
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    default_code: ErrorCode = ErrorCode.INVALID_INPUT

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a transport-neutral payload."""
        return {
            "error": self.code.value,
            "kind": self.kind.value,
            "message": self.message,
            **self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ValidationError(OrgLinkError):
    """Malformed identifier or missing required field."""
    kind = ErrorKind.VALIDATION
    default_code = ErrorCode.INVALID_INPUT


class AuthorizationError(OrgLinkError):
    """The request is addressed to a different organization or enterprise than the actor."""
    kind = ErrorKind.AUTHORIZATION
    default_code = ErrorCode.REQUEST_NOT_ADDRESSED_TO_ACTOR


class NotFoundError(OrgLinkError):
    """Missing enterprise, workspace, organization or link request."""
    kind = ErrorKind.NOT_FOUND
    default_code = ErrorCode.ORGANIZATION_NOT_FOUND


class ConflictError(OrgLinkError):
    """The operation conflicts with current state (already linked, already processed)."""
    kind = ErrorKind.CONFLICT
    default_code = ErrorCode.ALREADY_PROCESSED


class UnavailableError(OrgLinkError):
    """The target workspace is not ACTIVE at decision time."""
    kind = ErrorKind.UNAVAILABLE
    default_code = ErrorCode.WORKSPACE_UNAVAILABLE


class AmbiguousMatchError(OrgLinkError):
    """Several organizations matched an identifier."""
    kind = ErrorKind.AMBIGUOUS_MATCH
    default_code = ErrorCode.AMBIGUOUS_ORGANIZATION


# Resource labels for human-readable limit messages
RESOURCE_LABELS = {
    "WORKSPACES": "Workspaces",
    "LINKED_ORGS": "Linked Organizations",
    "API_KEYS": "API Keys",
    "MEMBERS": "Members",
}


class LimitReachedError(ConflictError):
    """
    Raised by the quota guard when an increment would exceed a ceiling.

    Carries the numbers a UI needs to render "X/Y used".
    """

    default_code = ErrorCode.LIMIT_REACHED

    def __init__(
        self,
        resource: str,
        limit: int,
        current: int,
        message: Optional[str] = None,
    ):
        resource = getattr(resource, "value", resource)
        super().__init__(
            message or f"Limit reached for {RESOURCE_LABELS.get(resource, resource)}",
            code=ErrorCode.LIMIT_REACHED,
            details={"resource": resource, "limit": limit, "current": current},
        )
        self.resource = resource
        self.limit = limit
        self.current = current

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": ErrorCode.LIMIT_REACHED.value,
            "resource": self.resource,
            "limit": self.limit,
            "current": self.current,
            "message": self.message,
        }
