"""Tests for exception classes."""

from authkeeper.classifier import classification_for
from authkeeper.exceptions import (
    AuthKeeperError,
    AuthRequired,
    ConfigurationError,
    ErrorKind,
    FlowCancelled,
    FlowError,
    ProviderFailure,
    ReauthorizationRequired,
    RenewalError,
    RequiresGrant,
)


class TestExceptionHierarchy:
    """Tests for exception inheritance."""

    def test_all_inherit_from_base(self):
        """Every exception derives from AuthKeeperError."""
        for cls in (
            ConfigurationError,
            ProviderFailure,
            FlowError,
            FlowCancelled,
            RenewalError,
            ReauthorizationRequired,
            RequiresGrant,
            AuthRequired,
        ):
            assert issubclass(cls, AuthKeeperError)

    def test_cancelled_is_flow_error(self):
        """FlowCancelled can be caught as FlowError."""
        assert issubclass(FlowCancelled, FlowError)

    def test_reauthorization_is_renewal_error(self):
        """ReauthorizationRequired can be caught as RenewalError."""
        assert issubclass(ReauthorizationRequired, RenewalError)


class TestExceptionKinds:
    """Tests for classified kinds carried by exceptions."""

    def test_configuration_error_is_misconfigured(self):
        """ConfigurationError carries the misconfigured kind."""
        assert ConfigurationError("bad").kind is ErrorKind.MISCONFIGURED

    def test_from_classification(self):
        """from_classification copies kind and user message."""
        verdict = classification_for(ErrorKind.DENIED)

        error = FlowError.from_classification(verdict)

        assert error.kind is ErrorKind.DENIED
        assert error.user_message == verdict.user_message
        assert "login" in error.user_message

    def test_cancelled_defaults(self):
        """FlowCancelled is a flow_expired kind with restart guidance."""
        error = FlowCancelled()

        assert error.kind is ErrorKind.FLOW_EXPIRED
        assert "login" in error.user_message

    def test_reauthorization_reason(self):
        """ReauthorizationRequired records its reason."""
        error = ReauthorizationRequired("gone", reason="expired_no_renewal_secret")

        assert error.kind is ErrorKind.REVOKED
        assert error.reason == "expired_no_renewal_secret"
        assert "reauth" in error.user_message

    def test_requires_grant_missing(self):
        """RequiresGrant exposes the missing scopes."""
        error = RequiresGrant(["b", "a"])

        assert error.missing == frozenset({"a", "b"})
        assert error.kind is ErrorKind.SCOPE_INSUFFICIENT
        assert "a b" in str(error)

    def test_provider_failure_message_has_no_description(self):
        """ProviderFailure's message carries only status and error code."""
        error = ProviderFailure(400, "invalid_grant", "token abc123 was revoked")

        assert "400" in str(error)
        assert "invalid_grant" in str(error)
        assert "abc123" not in str(error)

    def test_auth_required_instructions(self):
        """AuthRequired exposes its instructions."""
        error = AuthRequired("Run `login`.", kind=ErrorKind.REVOKED)

        assert error.instructions == "Run `login`."
        assert error.kind is ErrorKind.REVOKED
