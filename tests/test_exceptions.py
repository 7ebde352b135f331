"""
Unit tests for the orglink error taxonomy.

Validates kinds, codes, payload rendering and the LIMIT_REACHED shape.
"""

import pytest

from orglink.exceptions import (
    AmbiguousMatchError,
    AuthorizationError,
    ConflictError,
    ErrorCode,
    ErrorKind,
    LimitReachedError,
    NotFoundError,
    OrgLinkError,
    UnavailableError,
    ValidationError,
)


class TestOrgLinkError:
    """Tests for the base exception class."""

    def test_basic_creation(self):
        err = OrgLinkError("something broke")
        assert str(err) == "something broke"
        assert err.message == "something broke"
        assert err.details == {}

    def test_defaults_to_validation(self):
        err = OrgLinkError("bad")
        assert err.kind is ErrorKind.VALIDATION
        assert err.code is ErrorCode.INVALID_INPUT

    def test_to_dict_merges_details(self):
        err = NotFoundError(
            "Workspace not found",
            code=ErrorCode.WORKSPACE_NOT_FOUND,
            details={"workspace_id": "ws-1"},
        )
        assert err.to_dict() == {
            "error": "WORKSPACE_NOT_FOUND",
            "kind": "not_found",
            "message": "Workspace not found",
            "workspace_id": "ws-1",
        }

    def test_is_exception(self):
        assert issubclass(OrgLinkError, Exception)


class TestErrorKinds:
    """One concrete class per kind, each with a sensible default code."""

    @pytest.mark.parametrize(
        "cls, kind, code",
        [
            (ValidationError, ErrorKind.VALIDATION, ErrorCode.INVALID_INPUT),
            (AuthorizationError, ErrorKind.AUTHORIZATION, ErrorCode.REQUEST_NOT_ADDRESSED_TO_ACTOR),
            (NotFoundError, ErrorKind.NOT_FOUND, ErrorCode.ORGANIZATION_NOT_FOUND),
            (ConflictError, ErrorKind.CONFLICT, ErrorCode.ALREADY_PROCESSED),
            (UnavailableError, ErrorKind.UNAVAILABLE, ErrorCode.WORKSPACE_UNAVAILABLE),
            (AmbiguousMatchError, ErrorKind.AMBIGUOUS_MATCH, ErrorCode.AMBIGUOUS_ORGANIZATION),
        ],
    )
    def test_kind_and_default_code(self, cls, kind, code):
        err = cls("x")
        assert err.kind is kind
        assert err.code is code

    def test_explicit_code_wins(self):
        err = ConflictError("linked", code=ErrorCode.ALREADY_LINKED)
        assert err.code is ErrorCode.ALREADY_LINKED
        assert err.kind is ErrorKind.CONFLICT

    def test_catchable_as_base(self):
        with pytest.raises(OrgLinkError):
            raise UnavailableError("workspace suspended")


class TestLimitReachedError:
    """Tests for the quota guard's structured error."""

    def test_is_conflict(self):
        err = LimitReachedError("LINKED_ORGS", 10, 10)
        assert isinstance(err, ConflictError)
        assert err.kind is ErrorKind.CONFLICT
        assert err.code is ErrorCode.LIMIT_REACHED

    def test_stores_numbers(self):
        err = LimitReachedError("MEMBERS", 100, 99)
        assert err.resource == "MEMBERS"
        assert err.limit == 100
        assert err.current == 99

    def test_default_message_uses_label(self):
        err = LimitReachedError("LINKED_ORGS", 10, 10)
        assert err.message == "Limit reached for Linked Organizations"

    def test_custom_message(self):
        err = LimitReachedError("API_KEYS", 5, 5, message="No more keys")
        assert err.message == "No more keys"

    def test_payload_shape(self):
        err = LimitReachedError("WORKSPACES", 3, 3)
        assert err.to_dict() == {
            "error": "LIMIT_REACHED",
            "resource": "WORKSPACES",
            "limit": 3,
            "current": 3,
            "message": "Limit reached for Workspaces",
        }

    def test_accepts_enum_resource(self):
        from orglink.enterprise.models import QuotaResource

        err = LimitReachedError(QuotaResource.API_KEYS, 2, 2)
        assert err.resource == "API_KEYS"
