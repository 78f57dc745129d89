"""
Failure classification.

Maps raw failure signals (provider error responses, transport
exceptions, resource-server rejections) onto the closed ``ErrorKind``
taxonomy. Each kind carries one retry policy and a short user-facing
message; callers act on the classification, never on raw provider
error strings.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from .exceptions import AuthKeeperError, ErrorKind, ProviderFailure

logger = logging.getLogger(__name__)


class RetryPolicy(str, Enum):
    """What a component should do about a classified failure."""

    NONE = "none"
    SINGLE_FLIGHT_RENEWAL = "single_flight_renewal"
    BOUNDED_BACKOFF = "bounded_backoff"
    USER_ACTION_REQUIRED = "user_action_required"


class FailureContext(str, Enum):
    """Where the failure was observed."""

    GRANT = "grant"
    RENEWAL = "renewal"
    RESOURCE = "resource"


@dataclass(frozen=True)
class Classification:
    """Classifier verdict for one failure."""

    kind: ErrorKind
    retryable: bool
    policy: RetryPolicy
    user_message: str


# Default policy per kind, used for failures seen while renewing or running a
# grant. CONTEXT_POLICIES overrides it where the context changes the answer.
POLICIES = {
    ErrorKind.TRANSIENT_NETWORK: RetryPolicy.BOUNDED_BACKOFF,
    ErrorKind.RATE_LIMITED: RetryPolicy.BOUNDED_BACKOFF,
    ErrorKind.SCOPE_INSUFFICIENT: RetryPolicy.NONE,
    ErrorKind.DENIED: RetryPolicy.USER_ACTION_REQUIRED,
    ErrorKind.REVOKED: RetryPolicy.USER_ACTION_REQUIRED,
    ErrorKind.FORGERY_SUSPECTED: RetryPolicy.USER_ACTION_REQUIRED,
    ErrorKind.FLOW_EXPIRED: RetryPolicy.USER_ACTION_REQUIRED,
    ErrorKind.MISCONFIGURED: RetryPolicy.USER_ACTION_REQUIRED,
}

# A resource server rejecting an apparently valid secret is answered with one
# forced renewal; only a failed renewal makes REVOKED terminal.
CONTEXT_POLICIES = {
    (FailureContext.RESOURCE, ErrorKind.REVOKED): RetryPolicy.SINGLE_FLIGHT_RENEWAL,
}

USER_MESSAGES = {
    ErrorKind.TRANSIENT_NETWORK: (
        "Could not reach the sign-in service. Check your connection and try again."
    ),
    ErrorKind.RATE_LIMITED: (
        "The sign-in service is busy. Wait a minute and try again."
    ),
    ErrorKind.SCOPE_INSUFFICIENT: (
        "Additional permissions are needed. Run `login` to grant them."
    ),
    ErrorKind.DENIED: (
        "Access was not granted. Run `login` and approve the request to continue."
    ),
    ErrorKind.REVOKED: (
        "Your saved sign-in is no longer valid. Run `reauth` to sign in again."
    ),
    ErrorKind.FORGERY_SUSPECTED: (
        "The sign-in response could not be verified and was rejected. "
        "Run `login` to start a new sign-in."
    ),
    ErrorKind.FLOW_EXPIRED: (
        "The sign-in request expired before it was completed. Run `login` to start again."
    ),
    ErrorKind.MISCONFIGURED: (
        "The application is not set up correctly for sign-in. "
        "Check the client configuration and try again."
    ),
}

EXIT_CODES = {
    ErrorKind.TRANSIENT_NETWORK: 2,
    ErrorKind.RATE_LIMITED: 2,
    ErrorKind.MISCONFIGURED: 3,
}

_ERROR_CODES = {
    "access_denied": ErrorKind.DENIED,
    "expired_token": ErrorKind.FLOW_EXPIRED,
    "invalid_scope": ErrorKind.SCOPE_INSUFFICIENT,
    "insufficient_scope": ErrorKind.SCOPE_INSUFFICIENT,
    "slow_down": ErrorKind.RATE_LIMITED,
    "temporarily_unavailable": ErrorKind.TRANSIENT_NETWORK,
    "server_error": ErrorKind.TRANSIENT_NETWORK,
    "authorization_pending": ErrorKind.TRANSIENT_NETWORK,
    "invalid_client": ErrorKind.MISCONFIGURED,
    "unauthorized_client": ErrorKind.MISCONFIGURED,
    "unsupported_grant_type": ErrorKind.MISCONFIGURED,
    "unsupported_response_type": ErrorKind.MISCONFIGURED,
    "invalid_request": ErrorKind.MISCONFIGURED,
    "invalid_token": ErrorKind.REVOKED,
}


def classification_for(
    kind: ErrorKind, context: FailureContext = FailureContext.RENEWAL
) -> Classification:
    """Build the canonical classification for ``kind``."""
    policy = CONTEXT_POLICIES.get((context, kind), POLICIES[kind])
    return Classification(
        kind=kind,
        retryable=policy in (RetryPolicy.BOUNDED_BACKOFF, RetryPolicy.SINGLE_FLIGHT_RENEWAL),
        policy=policy,
        user_message=USER_MESSAGES[kind],
    )


def classify(
    raw, context: FailureContext = FailureContext.RENEWAL
) -> Classification:
    """
    Classify a raw failure.

    Args:
        raw: ProviderFailure, requests exception, AuthKeeperError or any exception
        context: Where the failure was observed

    Returns:
        Classification with kind, retry policy and user message
    """
    kind = _kind_for(raw, context)
    logger.debug(f"Classified {type(raw).__name__} during {context.value} as {kind.value}")
    return classification_for(kind, context)


def _kind_for(raw, context: FailureContext) -> ErrorKind:
    if isinstance(raw, ProviderFailure):
        return _kind_for_provider(raw, context)

    if isinstance(raw, AuthKeeperError) and raw.kind is not None:
        return raw.kind

    if isinstance(raw, (requests.Timeout, requests.ConnectionError)):
        return ErrorKind.TRANSIENT_NETWORK

    if isinstance(raw, requests.HTTPError) and raw.response is not None:
        return _kind_for_status(raw.response.status_code, context)

    if isinstance(raw, requests.RequestException):
        return ErrorKind.TRANSIENT_NETWORK

    # Malformed responses and programming errors are not retryable.
    return ErrorKind.MISCONFIGURED


def _kind_for_provider(failure: ProviderFailure, context: FailureContext) -> ErrorKind:
    code = (failure.error or "").lower()

    if code == "invalid_grant":
        # A rejected code during a grant means the user must start over;
        # a rejected renewal secret means it was revoked or rotated away.
        return ErrorKind.DENIED if context is FailureContext.GRANT else ErrorKind.REVOKED

    if code in _ERROR_CODES:
        return _ERROR_CODES[code]

    return _kind_for_status(failure.status_code, context)


def _kind_for_status(status_code: Optional[int], context: FailureContext) -> ErrorKind:
    if status_code is None:
        return ErrorKind.TRANSIENT_NETWORK
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500 or status_code in (408,):
        return ErrorKind.TRANSIENT_NETWORK
    if status_code == 401:
        if context is FailureContext.RESOURCE:
            return ErrorKind.REVOKED
        return ErrorKind.MISCONFIGURED  # token endpoint rejected the client
    if status_code == 403:
        if context is FailureContext.RESOURCE:
            return ErrorKind.SCOPE_INSUFFICIENT
        return ErrorKind.DENIED
    return ErrorKind.MISCONFIGURED


def classify_resource_failure(
    status_code: int, www_authenticate: Optional[str] = None
) -> Optional[Classification]:
    """
    Classify a failed call to the resource server.

    Returns None for statuses that are not authorization failures.
    A 401 yields the single-flight renewal policy; a 403 whose
    ``WWW-Authenticate`` header names ``insufficient_scope`` yields
    ``scope_insufficient``.
    """
    header = (www_authenticate or "").lower()
    if "insufficient_scope" in header:
        return classification_for(ErrorKind.SCOPE_INSUFFICIENT, FailureContext.RESOURCE)
    if status_code in (401, 403) or status_code == 429 or status_code >= 500:
        return classification_for(
            _kind_for_status(status_code, FailureContext.RESOURCE), FailureContext.RESOURCE
        )
    return None


def exit_code_for(error: BaseException) -> int:
    """
    CLI exit code for an error.

    0 success; 1 terminal auth failure; 2 transient; 3 misconfiguration.
    """
    kind = getattr(error, "kind", None)
    if kind is None:
        return 1
    return EXIT_CODES.get(kind, 1)
