"""
High-level credential interface.

This module provides the only interface business logic needs. It hides
flow selection, storage and renewal behind a few calls:
- acquire: a currently valid access secret for a scope set
- report_unauthorized: reactive renewal after a resource-server 401
- revoke / status: lifecycle management and diagnostics
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .classifier import RetryPolicy, classify_resource_failure
from .config import AuthConfig
from .exceptions import AuthRequired, FlowError, ReauthorizationRequired, RequiresGrant
from .flow import AuthorizationFlowCoordinator
from .provider import ProviderClient
from .records import CredentialRecord, FlowKind, ScopesLike, normalize_scopes
from .scheduler import RefreshScheduler
from .scopes import ScopeManager
from .store import CredentialStore, select_store

logger = logging.getLogger(__name__)

# Reasons that require an explicit login/reauth before acquire runs a grant again.
TERMINAL_REASONS = frozenset({"revoked", "denied", "expired_no_renewal_secret"})


class CredentialFacade:
    """
    Main entry point for obtaining credentials.

    Example:
        with CredentialFacade(AuthConfig.from_env()) as credentials:
            token = credentials.acquire(["files.read"])
            response = requests.get(url, headers={"Authorization": f"Bearer {token}"})
            if response.status_code == 401:
                token = credentials.report_unauthorized(rejected_secret=token)
    """

    def __init__(
        self,
        config: AuthConfig,
        store: Optional[CredentialStore] = None,
        provider: Optional[ProviderClient] = None,
        scheduler: Optional[RefreshScheduler] = None,
        flows: Optional[AuthorizationFlowCoordinator] = None,
        notify: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the facade.

        Args:
            config: OAuth configuration
            store: Storage backend (selected by probing if not provided)
            provider: Provider client (created from config if not provided)
            scheduler: Refresh scheduler (created if not provided)
            flows: Flow coordinator (created if not provided)
            notify: Receives user-facing flow instructions
        """
        self.config = config
        self.provider = provider or ProviderClient(config)
        self.store = store or select_store(config)
        self.scheduler = scheduler or RefreshScheduler(config, self.store, self.provider)
        self.flows = flows or AuthorizationFlowCoordinator(
            config, self.provider, notify=notify
        )
        self.scopes = ScopeManager(config, self.scheduler, self.flows)

    @classmethod
    def from_config_file(cls, path: Optional[Path] = None, **kwargs) -> "CredentialFacade":
        return cls(AuthConfig.from_file(path), **kwargs)

    def __enter__(self) -> "CredentialFacade":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _subject(self, subject_id: Optional[str]) -> str:
        return subject_id or self.config.default_subject

    def acquire(
        self,
        scopes: ScopesLike = None,
        subject_id: Optional[str] = None,
        interactive: bool = True,
    ) -> str:
        """
        Get a currently valid access secret covering ``scopes``.

        Served from the scheduler's cache when the scopes are already held
        (no network traffic). Missing scopes trigger an interactive grant
        when ``interactive`` is True.

        Args:
            scopes: Scopes needed for the immediate operation
            subject_id: Subject to act for (default subject if omitted)
            interactive: Allow running an interactive grant

        Returns:
            Access secret

        Raises:
            AuthRequired: User action is needed (instructions attached)
            RenewalError: Renewal failed transiently after retries
        """
        subject = self._subject(subject_id)
        requested = normalize_scopes(scopes) or normalize_scopes(self.config.default_scopes)

        try:
            try:
                self.scopes.ensure(requested, subject)
            except RequiresGrant as e:
                status = self.scheduler.status(subject)
                if status["reason"] in TERMINAL_REASONS:
                    raise ReauthorizationRequired(
                        f"Credential for subject {subject} needs re-authorization",
                        reason=status["reason"],
                    ) from e
                if not interactive:
                    raise AuthRequired(e.user_message, kind=e.kind) from e
                logger.info(f"Authorization needed for subject {subject}")
                self.scopes.grant(requested, subject)

            return self.scheduler.get_valid(subject)

        except ReauthorizationRequired as e:
            raise AuthRequired(e.user_message, kind=e.kind) from e
        except FlowError as e:
            raise AuthRequired(e.user_message, kind=e.kind) from e

    def authorization_header(
        self,
        scopes: ScopesLike = None,
        subject_id: Optional[str] = None,
        interactive: bool = True,
    ) -> dict:
        """
        Get an Authorization header dict for API requests.

        Returns:
            Dict with Authorization header: {"Authorization": "Bearer <secret>"}
        """
        secret = self.acquire(scopes, subject_id=subject_id, interactive=interactive)
        return {"Authorization": f"Bearer {secret}"}

    def report_unauthorized(
        self,
        subject_id: Optional[str] = None,
        rejected_secret: Optional[str] = None,
        status_code: int = 401,
        www_authenticate: Optional[str] = None,
    ) -> str:
        """
        Report that the resource server rejected a secret.

        A 401 forces one single-flight renewal and returns the new secret.

        Raises:
            AuthRequired: Renewal was refused, or more scopes are needed
            RenewalError: Renewal failed transiently after retries
            ValueError: The status is not an authorization failure
        """
        verdict = classify_resource_failure(status_code, www_authenticate)
        if verdict is None or verdict.policy is RetryPolicy.BOUNDED_BACKOFF:
            raise ValueError(f"HTTP {status_code} is not an authorization failure")

        if verdict.policy is not RetryPolicy.SINGLE_FLIGHT_RENEWAL:
            raise AuthRequired(verdict.user_message, kind=verdict.kind)

        try:
            return self.scheduler.on_reactive_failure(
                self._subject(subject_id), rejected_secret=rejected_secret
            )
        except ReauthorizationRequired as e:
            raise AuthRequired(e.user_message, kind=e.kind) from e

    def login(
        self,
        scopes: ScopesLike = None,
        subject_id: Optional[str] = None,
        flow_kind: Optional[FlowKind] = None,
    ) -> CredentialRecord:
        """
        Run an interactive grant for ``scopes`` (plus any already held).

        Raises:
            FlowError: If the grant fails
        """
        requested = normalize_scopes(scopes) or normalize_scopes(self.config.default_scopes)
        return self.scopes.grant(
            requested, self._subject(subject_id), force=True, flow_kind=flow_kind
        )

    def reauth(
        self,
        subject_id: Optional[str] = None,
        flow_kind: Optional[FlowKind] = None,
    ) -> CredentialRecord:
        """
        Force re-authorization with the scopes the subject held before.

        The existing credential stays in place until the new grant succeeds.
        """
        subject = self._subject(subject_id)
        scopes = self.scopes.held(subject) or normalize_scopes(self.config.default_scopes)
        return self.scopes.grant(scopes, subject, force=True, flow_kind=flow_kind)

    def revoke(self, subject_id: Optional[str] = None, remote: bool = True) -> bool:
        """
        Revoke a subject's credential.

        Deletes the local record and, when a revocation endpoint is
        configured, revokes the renewal (or access) secret at the provider.

        Returns:
            True if a credential was held
        """
        subject = self._subject(subject_id)
        record = self.scheduler.forget(subject, reason="logged_out")
        if record is None:
            logger.info(f"No credential held for subject {subject}")
            return False

        if remote:
            if record.renewal_secret:
                self.provider.revoke(record.renewal_secret, "refresh_token")
            else:
                self.provider.revoke(record.access_secret, "access_token")
        logger.info(f"Authorization revoked for subject {subject}")
        return True

    def status(self, subject_id: Optional[str] = None) -> dict[str, Any]:
        """
        Get authorization status for diagnostics.

        Returns:
            Dictionary with state, expires_at, granted_scopes, backend and
            durable (plus reason and renewable). Never contains secrets.
        """
        status = self.scheduler.status(self._subject(subject_id))
        status["backend"] = self.store.name
        status["durable"] = self.store.durable
        return status

    def close(self) -> None:
        """Cancel active grants and renewal timers."""
        self.flows.shutdown()
        self.scheduler.shutdown()
