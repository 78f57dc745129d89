"""
Interactive authorization flows.

This module drives the grant that produces an initial credential:
1. Selects a flow variant (local callback or device code)
2. Generates the PKCE verifier/challenge and the anti-forgery state
3. Presents the user-agent navigation or device instructions
4. Waits for the callback or polls the token endpoint
5. Exchanges the result for a CredentialRecord

Both variants can be cancelled; cancellation tears down the listener
or polling loop and discards the PendingGrant without touching storage.
"""

import base64
import hashlib
import hmac
import logging
import os
import secrets
import sys
import threading
import webbrowser
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import requests

from .callback_server import CallbackOutcome, LoopbackCallbackServer
from .classifier import FailureContext, classification_for, classify
from .config import AuthConfig
from .exceptions import ErrorKind, FlowCancelled, FlowError, ProviderFailure
from .provider import ProviderClient, TokenResponse
from .records import (
    CredentialRecord,
    FlowKind,
    PendingGrant,
    ScopesLike,
    normalize_scopes,
    utcnow,
)

logger = logging.getLogger(__name__)

SLOW_DOWN_INCREMENT = 5


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        (verifier, challenge)
    """
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def _stderr_notify(message: str) -> None:
    print(message, file=sys.stderr)


def _wait_on_event(event: threading.Event, seconds: float) -> bool:
    return event.wait(seconds)


@dataclass(eq=False)
class _GrantRuntime:
    grant: PendingGrant
    listener: Optional[LoopbackCallbackServer] = None
    callback: Future = field(default_factory=Future)
    await_lock: threading.Lock = field(default_factory=threading.Lock)
    state_consumed: bool = False
    outcome: object = None


class AuthorizationFlowCoordinator:
    """
    Runs interactive authorization grants.

    Example:
        coordinator = AuthorizationFlowCoordinator(config)
        grant = coordinator.begin_grant(["files.read"])
        coordinator.present(grant)
        record = coordinator.await_completion(grant)
    """

    def __init__(
        self,
        config: AuthConfig,
        provider: Optional[ProviderClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        waiter: Optional[Callable[[threading.Event, float], bool]] = None,
        notify: Optional[Callable[[str], None]] = None,
        browser_opener: Optional[Callable[[str], bool]] = None,
    ):
        """
        Initialize the flow coordinator.

        Args:
            config: OAuth configuration
            provider: Provider client (created from config if not provided)
            clock: Returns the current UTC time
            waiter: Waits on a cancellation event for up to N seconds,
                returning True if the event was set
            notify: Receives user-facing instructions (stderr by default)
            browser_opener: Opens a URL in the user agent
        """
        self.config = config
        self.provider = provider or ProviderClient(config)
        self._clock = clock or utcnow
        self._waiter = waiter or _wait_on_event
        self._notify = notify or _stderr_notify
        self._open_browser = browser_opener or webbrowser.open
        self._lock = threading.Lock()
        self._begin_lock = threading.Lock()
        self._runtimes: dict[str, _GrantRuntime] = {}
        self._active: dict[tuple, str] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def begin_grant(
        self,
        scopes: ScopesLike = None,
        subject_id: Optional[str] = None,
        flow_kind: Optional[FlowKind] = None,
    ) -> PendingGrant:
        """
        Start an authorization grant.

        Only one grant per (subject, scope set) is active at a time; a
        second call while one is in progress returns the active grant.

        Args:
            scopes: Scopes to request (config default_scopes if empty)
            subject_id: Subject the credential will be stored under
            flow_kind: Force a flow variant instead of auto selection

        Returns:
            PendingGrant describing the flow in progress

        Raises:
            FlowError: If the flow cannot be started
        """
        requested = normalize_scopes(scopes) or normalize_scopes(self.config.default_scopes)
        subject = subject_id or self.config.default_subject
        key = (subject, requested)

        with self._begin_lock:
            with self._lock:
                state = self._active.get(key)
                if state and state in self._runtimes:
                    logger.info("Authorization already in progress for these scopes")
                    return self._runtimes[state].grant

            kind = self._select_flow(flow_kind)
            verifier, challenge = generate_pkce_pair()
            correlation_state = secrets.token_urlsafe(32)

            if kind is FlowKind.LOCAL_CALLBACK:
                try:
                    runtime = self._begin_local(
                        subject, requested, verifier, challenge, correlation_state
                    )
                except OSError as e:
                    if flow_kind is None and self.provider.supports_device_flow:
                        logger.warning(f"Loopback listener unavailable ({e}), using device flow")
                        runtime = self._begin_device(
                            subject, requested, verifier, challenge, correlation_state
                        )
                    else:
                        raise FlowError.from_classification(
                            classification_for(ErrorKind.MISCONFIGURED, FailureContext.GRANT),
                            f"Could not start loopback listener: {e}",
                        ) from e
            else:
                runtime = self._begin_device(
                    subject, requested, verifier, challenge, correlation_state
                )

            with self._lock:
                self._runtimes[correlation_state] = runtime
                self._active[key] = correlation_state

        logger.info(f"Started {runtime.grant.flow_kind.value} grant for subject {subject}")
        return runtime.grant

    def present(self, grant: PendingGrant) -> None:
        """Open the user-agent navigation or print device instructions."""
        banner = "=" * 70
        if grant.flow_kind is FlowKind.DEVICE_CODE:
            lines = [
                "",
                banner,
                "AUTHORIZATION REQUIRED",
                banner,
                "",
                "On any device with a browser, visit:",
                f"\n  {grant.verification_uri}\n",
                f"and enter the code:  {grant.user_code}",
            ]
            if grant.verification_uri_complete:
                lines.append(f"\nOr open directly:\n  {grant.verification_uri_complete}")
            lines += ["", "Waiting for authorization...", banner, ""]
            self._notify("\n".join(lines))
            return

        self._notify(
            "\n".join(
                [
                    "",
                    banner,
                    "AUTHORIZATION REQUIRED",
                    banner,
                    "",
                    "Please authorize the application by visiting:",
                    f"\n  {grant.authorization_url}\n",
                ]
            )
        )
        if self.config.open_browser:
            try:
                self._open_browser(grant.authorization_url)
                self._notify("Opening browser automatically...")
            except (webbrowser.Error, OSError) as e:
                logger.warning(f"Could not open browser automatically: {e}")
                self._notify("Could not open a browser. Copy the URL above into your browser.")
        self._notify("Waiting for authorization...\n" + banner)

    def await_completion(self, grant: PendingGrant) -> CredentialRecord:
        """
        Wait for a grant to finish and exchange it for a credential.

        Concurrent callers of the same grant share one outcome. The grant
        is discarded when this returns or raises.

        Returns:
            CredentialRecord for the authorized subject

        Raises:
            FlowError: denied, flow_expired, forgery_suspected, transport or
                configuration failures (FlowCancelled on cancellation)
        """
        with self._lock:
            runtime = self._runtimes.get(grant.correlation_state)
        if runtime is None:
            if grant.cancelled:
                raise FlowCancelled()
            raise FlowError.from_classification(
                classification_for(ErrorKind.FLOW_EXPIRED, FailureContext.GRANT),
                "Grant is no longer active",
            )

        with runtime.await_lock:
            if isinstance(runtime.outcome, CredentialRecord):
                return runtime.outcome
            if isinstance(runtime.outcome, BaseException):
                raise runtime.outcome

            try:
                if grant.flow_kind is FlowKind.LOCAL_CALLBACK:
                    response = self._await_local(grant, runtime)
                else:
                    response = self._poll_device(grant)

                if grant.cancelled:
                    raise FlowCancelled()

                record = response.to_record(
                    grant.subject_id,
                    grant.scopes,
                    self._clock(),
                    provider_hints={"token_url": self.config.token_url},
                )
                runtime.outcome = record
                logger.info("Authorization complete")
                return record
            except FlowError as e:
                runtime.outcome = e
                logger.error(f"Authorization flow failed: {e.kind.value if e.kind else 'unknown'}")
                raise
            finally:
                self._discard(grant)

    def run_grant(
        self,
        scopes: ScopesLike = None,
        subject_id: Optional[str] = None,
        flow_kind: Optional[FlowKind] = None,
    ) -> CredentialRecord:
        """Begin, present and complete a grant in one call."""
        grant = self.begin_grant(scopes, subject_id=subject_id, flow_kind=flow_kind)
        self.present(grant)
        return self.await_completion(grant)

    def handle_callback(self, params: dict, listener_state: str) -> CallbackOutcome:
        """
        Validate a redirect received by the loopback listener.

        The correlation state is checked exactly once. A mismatch aborts
        the grant as forgery_suspected and no token exchange happens.
        """
        with self._lock:
            runtime = self._runtimes.get(listener_state)
            if runtime is None or runtime.callback.done():
                return CallbackOutcome(False, "This sign-in request is no longer active.")
            replay = runtime.state_consumed
            runtime.state_consumed = True

        received = params.get("state") or ""
        expected = runtime.grant.correlation_state
        if replay or not hmac.compare_digest(received.encode(), expected.encode()):
            logger.warning("Callback state did not match the active grant; aborting")
            verdict = classification_for(ErrorKind.FORGERY_SUSPECTED, FailureContext.GRANT)
            self._resolve(runtime, error=FlowError.from_classification(verdict))
            return CallbackOutcome(False, verdict.user_message)

        if params.get("error"):
            failure = ProviderFailure(
                400, params.get("error"), params.get("error_description")
            )
            verdict = classify(failure, FailureContext.GRANT)
            self._resolve(runtime, error=FlowError.from_classification(verdict))
            return CallbackOutcome(False, verdict.user_message)

        code = params.get("code")
        if not code:
            logger.error("No authorization code in callback")
            verdict = classification_for(ErrorKind.MISCONFIGURED, FailureContext.GRANT)
            self._resolve(
                runtime,
                error=FlowError.from_classification(verdict, "No authorization code received"),
            )
            return CallbackOutcome(False, "No authorization code was received.")

        logger.info("Authorization code received successfully")
        self._resolve(runtime, result=code)
        return CallbackOutcome(
            True, "Your application has been authorized. Return to the terminal."
        )

    def cancel(self, grant: PendingGrant) -> None:
        """Abandon a grant: stop its listener or polling loop and discard it."""
        grant.cancel_event.set()
        with self._lock:
            runtime = self._runtimes.get(grant.correlation_state)
        if runtime is not None:
            self._resolve(runtime, error=FlowCancelled())
        self._discard(grant)
        logger.info("Authorization flow cancelled")

    def shutdown(self) -> None:
        """Cancel every active grant."""
        with self._lock:
            grants = [runtime.grant for runtime in self._runtimes.values()]
        for grant in grants:
            self.cancel(grant)

    def active_grants(self) -> list:
        with self._lock:
            return [runtime.grant for runtime in self._runtimes.values()]

    # ------------------------------------------------------------------
    # Flow variants
    # ------------------------------------------------------------------

    def _select_flow(self, requested: Optional[FlowKind]) -> FlowKind:
        if requested is not None:
            return FlowKind(requested)
        if self.config.preferred_flow != "auto":
            return FlowKind(self.config.preferred_flow)
        if self._browser_available():
            return FlowKind.LOCAL_CALLBACK
        if self.provider.supports_device_flow:
            return FlowKind.DEVICE_CODE
        # No browser and no device endpoint: print the URL for manual use.
        return FlowKind.LOCAL_CALLBACK

    def _browser_available(self) -> bool:
        if not self.config.open_browser or os.environ.get("AUTHKEEPER_NO_BROWSER"):
            return False
        if os.environ.get("SSH_CONNECTION") and not os.environ.get("DISPLAY"):
            return False
        try:
            webbrowser.get()
            return True
        except webbrowser.Error:
            return False

    def _begin_local(
        self,
        subject: str,
        scopes: frozenset,
        verifier: str,
        challenge: str,
        correlation_state: str,
    ) -> _GrantRuntime:
        listener = LoopbackCallbackServer(
            handler=lambda params: self.handle_callback(params, correlation_state),
            host=self.config.callback_host,
            callback_path=self.config.callback_path,
        )
        listener.start()
        redirect_uri = listener.redirect_uri
        grant = PendingGrant(
            flow_kind=FlowKind.LOCAL_CALLBACK,
            subject_id=subject,
            scopes=scopes,
            verifier=verifier,
            challenge=challenge,
            correlation_state=correlation_state,
            expires_at=self._clock() + timedelta(seconds=self.config.flow_timeout_seconds),
            redirect_uri=redirect_uri,
            authorization_url=self.provider.build_authorization_url(
                scopes, correlation_state, challenge, redirect_uri
            ),
        )
        return _GrantRuntime(grant=grant, listener=listener)

    def _begin_device(
        self,
        subject: str,
        scopes: frozenset,
        verifier: str,
        challenge: str,
        correlation_state: str,
    ) -> _GrantRuntime:
        if not self.provider.supports_device_flow:
            raise FlowError.from_classification(
                classification_for(ErrorKind.MISCONFIGURED, FailureContext.GRANT),
                "Device flow requested but device_authorization_url is not configured",
            )
        authorization = self._with_transport_retries(
            lambda: self.provider.request_device_code(scopes, challenge)
        )
        lifetime = min(authorization.expires_in, self.config.flow_timeout_seconds)
        grant = PendingGrant(
            flow_kind=FlowKind.DEVICE_CODE,
            subject_id=subject,
            scopes=scopes,
            verifier=verifier,
            challenge=challenge,
            correlation_state=correlation_state,
            expires_at=self._clock() + timedelta(seconds=lifetime),
            device_code=authorization.device_code,
            user_code=authorization.user_code,
            verification_uri=authorization.verification_uri,
            verification_uri_complete=authorization.verification_uri_complete,
            interval=authorization.interval,
        )
        return _GrantRuntime(grant=grant)

    def _await_local(self, grant: PendingGrant, runtime: _GrantRuntime) -> TokenResponse:
        remaining = grant.seconds_remaining(self._clock())
        try:
            code = runtime.callback.result(timeout=remaining)
        except FutureTimeout:
            logger.warning(f"No callback received within {int(remaining)}s")
            raise FlowError.from_classification(
                classification_for(ErrorKind.FLOW_EXPIRED, FailureContext.GRANT)
            ) from None

        if grant.cancelled:
            raise FlowCancelled()

        return self._with_transport_retries(
            lambda: self.provider.exchange_code(code, grant.verifier, grant.redirect_uri),
            grant,
        )

    def _poll_device(self, grant: PendingGrant) -> TokenResponse:
        interval = max(1, grant.interval)
        transport_failures = 0

        while True:
            if grant.cancelled:
                raise FlowCancelled()
            remaining = grant.seconds_remaining(self._clock())
            if remaining <= 0:
                logger.warning("Device code expired before authorization completed")
                raise FlowError.from_classification(
                    classification_for(ErrorKind.FLOW_EXPIRED, FailureContext.GRANT)
                )

            try:
                return self.provider.poll_device_token(grant.device_code, grant.verifier)
            except ProviderFailure as e:
                if e.error == "authorization_pending":
                    pass
                elif e.error == "slow_down":
                    interval += SLOW_DOWN_INCREMENT
                    logger.info(f"Provider asked to slow down; polling every {interval}s")
                else:
                    raise FlowError.from_classification(
                        classify(e, FailureContext.GRANT)
                    ) from e
                transport_failures = 0
            except requests.RequestException as e:
                transport_failures += 1
                if transport_failures > self.config.max_transport_retries:
                    raise FlowError.from_classification(
                        classify(e, FailureContext.GRANT)
                    ) from e
                logger.warning(
                    f"Network error while polling ({transport_failures}/"
                    f"{self.config.max_transport_retries})"
                )

            if self._waiter(grant.cancel_event, min(interval, remaining)):
                raise FlowCancelled()

    def _with_transport_retries(self, call, grant: Optional[PendingGrant] = None):
        """
        Run a provider call, retrying transient failures with capped backoff.

        Raises:
            FlowError: Classified failure once retries are exhausted
        """
        cancel_event = grant.cancel_event if grant else threading.Event()
        attempt = 0
        while True:
            try:
                return call()
            except (ProviderFailure, requests.RequestException) as e:
                verdict = classify(e, FailureContext.GRANT)
                if not verdict.retryable or attempt >= self.config.max_transport_retries:
                    raise FlowError.from_classification(verdict) from e
                delay = min(
                    self.config.renewal_backoff_base * (2 ** attempt),
                    self.config.renewal_backoff_cap,
                )
                attempt += 1
                logger.warning(
                    f"{verdict.kind.value} during authorization, retrying in {delay}s "
                    f"(attempt {attempt}/{self.config.max_transport_retries})"
                )
                if self._waiter(cancel_event, delay):
                    raise FlowCancelled() from e

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve(self, runtime: _GrantRuntime, result=None, error=None) -> None:
        with self._lock:
            if runtime.callback.done():
                return
            if error is not None:
                runtime.callback.set_exception(error)
            else:
                runtime.callback.set_result(result)

    def _discard(self, grant: PendingGrant) -> None:
        with self._lock:
            runtime = self._runtimes.pop(grant.correlation_state, None)
            for key, state in list(self._active.items()):
                if state == grant.correlation_state:
                    del self._active[key]
        if runtime is not None and runtime.listener is not None:
            runtime.listener.stop()
