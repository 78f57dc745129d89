"""
Scope bookkeeping and incremental authorization.
"""

import logging
from dataclasses import replace
from typing import Optional

from .config import AuthConfig
from .exceptions import AuthRequired, ErrorKind, RequiresGrant
from .flow import AuthorizationFlowCoordinator
from .records import CredentialRecord, FlowKind, ScopesLike, normalize_scopes
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


class ScopeManager:
    """
    Tracks the scopes held by each subject and drives re-grants.

    With a provider that supports incremental authorization only the
    missing scopes are requested and the result is merged with what was
    already held. Otherwise the union of held and requested scopes is
    requested in a single grant.
    """

    def __init__(
        self,
        config: AuthConfig,
        scheduler: RefreshScheduler,
        flows: AuthorizationFlowCoordinator,
    ):
        self.config = config
        self.scheduler = scheduler
        self.flows = flows

    def held(self, subject_id: Optional[str] = None) -> frozenset:
        record = self.scheduler.record(subject_id or self.config.default_subject)
        return record.granted_scopes if record else frozenset()

    def missing(self, scopes: ScopesLike, subject_id: Optional[str] = None) -> frozenset:
        """Scopes in ``scopes`` that the live credential does not hold."""
        return normalize_scopes(scopes) - self.held(subject_id)

    def ensure(self, scopes: ScopesLike, subject_id: Optional[str] = None) -> None:
        """
        Check that the live credential holds every requested scope.

        Raises:
            RequiresGrant: With the missing subset (every requested scope
                when no credential is held)
        """
        record = self.scheduler.record(subject_id or self.config.default_subject)
        requested = normalize_scopes(scopes)
        if record is None:
            raise RequiresGrant(requested)
        missing = requested - record.granted_scopes
        if missing:
            raise RequiresGrant(missing)

    def grant(
        self,
        scopes: ScopesLike,
        subject_id: Optional[str] = None,
        force: bool = False,
        flow_kind: Optional[FlowKind] = None,
    ) -> CredentialRecord:
        """
        Run an interactive grant so the subject holds ``scopes``.

        Args:
            scopes: Scopes the caller needs
            subject_id: Subject to authorize (default subject if omitted)
            force: Re-grant even if every scope is already held
            flow_kind: Force a flow variant

        Returns:
            The adopted CredentialRecord

        Raises:
            FlowError: If the interactive grant fails
            AuthRequired: The provider granted fewer scopes than requested.
                The narrower record is still adopted.
        """
        subject = subject_id or self.config.default_subject
        requested = normalize_scopes(scopes)
        record = self.scheduler.record(subject)
        held = record.granted_scopes if record else frozenset()
        missing = requested - held

        if record is not None and not missing and not force:
            return record

        if self.config.supports_incremental and record is not None and not force:
            to_request = missing
        else:
            to_request = held | requested
        if not to_request:
            to_request = normalize_scopes(self.config.default_scopes)

        logger.info(
            f"Requesting scopes for subject {subject}: {' '.join(sorted(to_request)) or '(default)'}"
        )
        self.scheduler.mark_authorizing(subject)
        try:
            granted = self.flows.run_grant(to_request, subject_id=subject, flow_kind=flow_kind)
        except BaseException:
            self.scheduler.end_authorizing(subject)
            raise

        if self.config.supports_incremental and held - granted.granted_scopes:
            granted = replace(granted, granted_scopes=granted.granted_scopes | held)

        still_missing = requested - granted.granted_scopes
        self.scheduler.adopt(granted)
        if still_missing:
            names = " ".join(sorted(still_missing))
            logger.warning(f"Provider did not grant: {names}")
            raise AuthRequired(
                f"The provider did not grant: {names}. "
                "Ask the account administrator to allow them, then run `login` again.",
                kind=ErrorKind.SCOPE_INSUFFICIENT,
            )
        return granted
