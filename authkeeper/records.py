"""
Credential data model.

This module defines the durable ``CredentialRecord`` and the ephemeral
``PendingGrant`` carried across an interactive authorization flow.
Secret fields are excluded from ``repr()`` so that records can be
logged or shown in tracebacks without leaking them.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Union

ScopesLike = Union[str, Iterable[str], None]


def normalize_scopes(scopes: ScopesLike) -> frozenset:
    """
    Normalize a scope argument to a frozenset of scope strings.

    Accepts a space-separated string or any iterable of strings.
    Empty entries are dropped.
    """
    if not scopes:
        return frozenset()
    if isinstance(scopes, str):
        scopes = scopes.split()
    return frozenset(s.strip() for s in scopes if s and s.strip())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FlowKind(str, Enum):
    """Interactive authorization flow variants."""

    LOCAL_CALLBACK = "local_callback"
    DEVICE_CODE = "device_code"


@dataclass(frozen=True)
class CredentialRecord:
    """
    Stored credential for one subject.

    Attributes:
        subject_id: Opaque identifier for the authorized principal
        access_secret: Short-lived bearer credential
        issued_at: When the access secret was issued (UTC)
        expires_at: When the access secret expires (UTC)
        renewal_secret: Long-lived renewal credential (may be absent)
        granted_scopes: Capability strings currently held
        provider_hints: Opaque provider metadata needed for renewal
    """

    subject_id: str
    access_secret: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    renewal_secret: Optional[str] = field(default=None, repr=False)
    granted_scopes: frozenset = frozenset()
    provider_hints: dict = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.subject_id:
            raise ValueError("subject_id cannot be empty")
        if not self.access_secret:
            raise ValueError("access_secret cannot be empty")
        object.__setattr__(self, "issued_at", _as_utc(self.issued_at))
        object.__setattr__(self, "expires_at", _as_utc(self.expires_at))
        object.__setattr__(self, "granted_scopes", normalize_scopes(self.granted_scopes))
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the access secret has expired."""
        return (now or utcnow()) >= self.expires_at

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """
        Check if the access secret expires within the given seconds.

        Used for proactive renewal (e.g., renew if it expires within 5 minutes).
        """
        return (now or utcnow()) + timedelta(seconds=seconds) >= self.expires_at

    def seconds_remaining(self, now: Optional[datetime] = None) -> float:
        return max(0.0, (self.expires_at - (now or utcnow())).total_seconds())

    def has_scopes(self, scopes: ScopesLike) -> bool:
        return normalize_scopes(scopes) <= self.granted_scopes

    def with_renewal(
        self,
        access_secret: str,
        issued_at: datetime,
        expires_at: datetime,
        renewal_secret: Optional[str] = None,
        granted_scopes: ScopesLike = None,
    ) -> "CredentialRecord":
        """
        Return a new record for a successful renewal.

        Access secret, renewal secret and expiry are replaced together.
        A missing ``renewal_secret`` keeps the current one; missing
        ``granted_scopes`` keeps the current grant.
        """
        return replace(
            self,
            access_secret=access_secret,
            issued_at=issued_at,
            expires_at=expires_at,
            renewal_secret=renewal_secret or self.renewal_secret,
            granted_scopes=normalize_scopes(granted_scopes) or self.granted_scopes,
            provider_hints=dict(self.provider_hints),
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to a dictionary for storage backends.

        The result contains secret material; only ``CredentialStore``
        backends may call this.
        """
        return {
            "subject_id": self.subject_id,
            "access_secret": self.access_secret,
            "renewal_secret": self.renewal_secret,
            "granted_scopes": sorted(self.granted_scopes),
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "provider_hints": dict(self.provider_hints),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialRecord":
        """
        Create a record from a stored dictionary.

        Raises:
            KeyError: If required fields are missing
            ValueError: If timestamps or invariants are invalid
        """
        return cls(
            subject_id=data["subject_id"],
            access_secret=data["access_secret"],
            renewal_secret=data.get("renewal_secret"),
            granted_scopes=data.get("granted_scopes", []),
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            provider_hints=data.get("provider_hints") or {},
        )

    def redacted(self) -> dict[str, Any]:
        """Diagnostic view without any secret-derived field."""
        return {
            "subject_id": self.subject_id,
            "granted_scopes": sorted(self.granted_scopes),
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "renewable": self.renewal_secret is not None,
        }


@dataclass(eq=False)
class PendingGrant:
    """
    State carried across one interactive authorization flow.

    A grant is single-use: it is discarded on completion, denial,
    timeout or cancellation and never resumed afterwards.

    Attributes:
        flow_kind: local_callback or device_code
        subject_id: Subject the resulting credential will be stored under
        scopes: Scopes requested by this grant
        verifier: PKCE code verifier (kept local)
        challenge: PKCE S256 challenge sent with the initial request
        correlation_state: Single-use anti-forgery token
        expires_at: Hard flow expiry, independent of HTTP timeouts
    """

    flow_kind: FlowKind
    subject_id: str
    scopes: frozenset
    verifier: str = field(repr=False)
    challenge: str
    correlation_state: str = field(repr=False)
    expires_at: datetime

    # local-callback
    redirect_uri: Optional[str] = None
    authorization_url: Optional[str] = None

    # device-code
    device_code: Optional[str] = field(default=None, repr=False)
    user_code: Optional[str] = None
    verification_uri: Optional[str] = None
    verification_uri_complete: Optional[str] = None
    interval: int = 5

    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def seconds_remaining(self, now: Optional[datetime] = None) -> float:
        return max(0.0, (self.expires_at - (now or utcnow())).total_seconds())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
