"""
Exception classes and failure taxonomy for the credential manager.

Every failure that crosses a component boundary carries one of the
``ErrorKind`` values below together with a short, non-technical
``user_message`` naming the next action. Raw provider error strings
never travel further than the classifier.
"""

from enum import Enum
from typing import Iterable, Optional


class ErrorKind(str, Enum):
    """Closed set of classified failure kinds."""

    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    DENIED = "denied"
    REVOKED = "revoked"
    SCOPE_INSUFFICIENT = "scope_insufficient"
    MISCONFIGURED = "misconfigured"
    FORGERY_SUSPECTED = "forgery_suspected"
    FLOW_EXPIRED = "flow_expired"


class AuthKeeperError(Exception):
    """Base exception for all credential manager errors."""

    default_kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.user_message = user_message or message

    @classmethod
    def from_classification(cls, classification, message: Optional[str] = None):
        """Build an exception from a classifier verdict."""
        return cls(
            message or classification.user_message,
            kind=classification.kind,
            user_message=classification.user_message,
        )


class ConfigurationError(AuthKeeperError):
    """Configuration error (missing or invalid configuration)."""

    default_kind = ErrorKind.MISCONFIGURED


class CredentialStoreError(AuthKeeperError):
    """Credential storage operation failed."""

    pass


class ProviderFailure(AuthKeeperError):
    """
    Unclassified failure reported by the authorization server.

    Carries only the HTTP status and the OAuth ``error`` code. The
    ``error_description`` is kept for debug logging but is never shown
    to users.
    """

    def __init__(
        self,
        status_code: int,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"Provider returned {status_code} ({error or 'no error code'})")
        self.status_code = status_code
        self.error = error
        self.error_description = error_description
        self.retry_after = retry_after


class FlowError(AuthKeeperError):
    """Interactive authorization flow failed."""

    pass


class FlowCancelled(FlowError):
    """Authorization flow was abandoned by the caller."""

    default_kind = ErrorKind.FLOW_EXPIRED

    def __init__(self, message: str = "Authorization flow cancelled"):
        super().__init__(
            message,
            user_message="Sign-in was cancelled. Run `login` to start again.",
        )


class RenewalError(AuthKeeperError):
    """Renewing the access secret failed."""

    pass


class ReauthorizationRequired(RenewalError):
    """The credential is gone for good; interactive authorization is needed."""

    default_kind = ErrorKind.REVOKED

    def __init__(
        self,
        message: str,
        reason: str = "revoked",
        kind: Optional[ErrorKind] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(
            message,
            kind=kind,
            user_message=user_message
            or "Your saved sign-in is no longer valid. Run `reauth` to sign in again.",
        )
        self.reason = reason


class RequiresGrant(AuthKeeperError):
    """The live credential does not hold every requested scope."""

    default_kind = ErrorKind.SCOPE_INSUFFICIENT

    def __init__(self, missing: Iterable[str]):
        self.missing = frozenset(missing)
        super().__init__(
            f"Missing scopes: {' '.join(sorted(self.missing))}",
            user_message="Additional permissions are needed. Run `login` to grant them.",
        )


class AuthRequired(AuthKeeperError):
    """
    Returned to callers of ``CredentialFacade.acquire`` when no valid
    credential can be produced without user action.

    ``instructions`` is the actionable message to show the user.
    """

    def __init__(self, instructions: str, kind: Optional[ErrorKind] = None):
        super().__init__(instructions, kind=kind, user_message=instructions)
        self.instructions = instructions
