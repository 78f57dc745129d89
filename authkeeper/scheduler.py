"""
Live credential ownership and renewal.

``RefreshScheduler`` is the only component that holds the authoritative
in-memory CredentialRecord for a subject and the only writer back to the
CredentialStore. Renewals happen:
- proactively, from an APScheduler job that runs ``refresh_skew_seconds``
  before expiry
- lazily, when ``get_valid`` finds the record inside the skew window
- reactively, when a caller reports that the resource server rejected it

All three paths go through a per-subject RenewalGuard so at most one
renewal call is in flight per subject and every waiter sees the same
outcome.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

import requests
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .classifier import FailureContext, classification_for, classify
from .config import AuthConfig
from .exceptions import (
    AuthKeeperError,
    CredentialStoreError,
    ErrorKind,
    ProviderFailure,
    ReauthorizationRequired,
    RenewalError,
)
from .provider import ProviderClient
from .records import CredentialRecord, utcnow
from .redaction import forget_secret, register_secret
from .store import CredentialStore

logger = logging.getLogger(__name__)


class SubjectState(str, Enum):
    """Per-subject lifecycle state."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    VALID = "valid"
    REFRESHING = "refreshing"


@dataclass(eq=False)
class RenewalGuard:
    """
    A renewal in flight for one subject.

    ``record`` is the record being renewed and ``generation`` the value the
    subject's generation takes if the result is installed. ``deadline`` is a
    ``time.monotonic()`` value after which the guard resolves with a
    transient failure for every caller.
    """

    generation: int
    record: Optional[CredentialRecord]
    deadline: float
    proactive: bool = False
    future: Future = field(default_factory=Future)


@dataclass(eq=False)
class _Subject:
    record: Optional[CredentialRecord] = None
    state: SubjectState = SubjectState.UNAUTHENTICATED
    reason: Optional[str] = None
    generation: int = 0
    guard: Optional[RenewalGuard] = None
    job: Any = None
    loaded: bool = False


def _wait_on_event(event: threading.Event, seconds: float) -> bool:
    return event.wait(seconds)


def create_job_scheduler(max_workers: int = 2) -> BackgroundScheduler:
    """
    Create and start the background scheduler that runs proactive renewals.

    Missed run times still fire (a laptop waking from sleep renews at once)
    and a subject never has two renewal jobs running.
    """
    scheduler = BackgroundScheduler(
        executors={"default": ThreadPoolExecutor(max_workers=max_workers)},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        timezone=timezone.utc,
    )
    scheduler.start()
    logger.debug("Renewal job scheduler started")
    return scheduler


class RefreshScheduler:
    """
    Owns live credentials and keeps them renewed.

    Example:
        scheduler = RefreshScheduler(config, store)
        scheduler.adopt(record)
        secret = scheduler.get_valid("default")
    """

    def __init__(
        self,
        config: AuthConfig,
        store: CredentialStore,
        provider: Optional[ProviderClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        job_scheduler: Optional[BackgroundScheduler] = None,
        waiter: Optional[Callable[[threading.Event, float], bool]] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            config: OAuth configuration (skew, retry budget, timeouts)
            store: Durable storage backend
            provider: Provider client (created from config if not provided)
            clock: Returns the current UTC time
            job_scheduler: APScheduler scheduler for proactive renewal jobs.
                A started ``BackgroundScheduler`` is created (and shut down
                with this object) if not provided.
            waiter: Waits between renewal attempts; returns True when the
                scheduler is shutting down
        """
        self.config = config
        self.store = store
        self.provider = provider or ProviderClient(config)
        self._clock = clock or utcnow
        self._owns_jobs = job_scheduler is None
        self._jobs = job_scheduler if job_scheduler is not None else create_job_scheduler()
        self._waiter = waiter or _wait_on_event
        self._lock = threading.RLock()
        self._subjects: dict[str, _Subject] = {}
        self._shutdown = threading.Event()

    @property
    def skew(self) -> timedelta:
        return timedelta(seconds=self.config.refresh_skew_seconds)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_valid(self, subject_id: str) -> str:
        """
        Get a currently valid access secret for a subject.

        Returns the cached secret unless it is inside the skew window, in
        which case the caller joins (or starts) the subject's renewal. While
        a proactive renewal runs, a cached secret that has not expired yet
        is returned without waiting.

        Raises:
            ReauthorizationRequired: No credential, or it cannot be renewed
            RenewalError: Renewal failed (transient failures after retries)
        """
        with self._lock:
            entry = self._entry(subject_id)
            guard = entry.guard
            leader = False
            record = entry.record
            now = self._clock()
            if guard is not None:
                if guard.proactive and record is not None and not record.is_expired(now):
                    return record.access_secret
            else:
                if record is None:
                    raise ReauthorizationRequired(
                        f"No credential held for subject {subject_id}",
                        reason=entry.reason or "no_credential",
                    )
                if not record.expires_within(self.config.refresh_skew_seconds, now):
                    return record.access_secret
                if not record.renewal_secret and not record.is_expired(now):
                    # Nothing to renew with; use it until it expires.
                    return record.access_secret
                guard = self._start_guard(entry)
                leader = True

        if leader:
            self._run_renewal(subject_id, guard)
        return self._wait(subject_id, guard).access_secret

    def on_reactive_failure(
        self, subject_id: str, rejected_secret: Optional[str] = None
    ) -> str:
        """
        Force a renewal after the resource server rejected a secret.

        If the live record already differs from ``rejected_secret`` (another
        caller renewed in the meantime), the newer secret is returned
        without another renewal call.

        Raises:
            ReauthorizationRequired: The renewal secret was revoked
            RenewalError: Renewal failed after retries
        """
        with self._lock:
            entry = self._entry(subject_id)
            guard = entry.guard
            leader = False
            if guard is None:
                record = entry.record
                if record is None:
                    raise ReauthorizationRequired(
                        f"No credential held for subject {subject_id}",
                        reason=entry.reason or "no_credential",
                    )
                if rejected_secret is not None and record.access_secret != rejected_secret:
                    logger.debug(f"Credential for subject {subject_id} already renewed")
                    return record.access_secret
                logger.info(f"Resource server rejected credential for subject {subject_id}, renewing")
                guard = self._start_guard(entry)
                leader = True

        if leader:
            self._run_renewal(subject_id, guard)
        return self._wait(subject_id, guard).access_secret

    def adopt(self, record: CredentialRecord) -> None:
        """
        Take ownership of a freshly granted record.

        Persists it, makes it the live record and schedules its proactive
        renewal. A renewal still in flight for the replaced record will not
        overwrite it.
        """
        with self._lock:
            self._persist(record)
            entry = self._entry(record.subject_id, load=False)
            previous = entry.record
            entry.loaded = True
            entry.record = record
            entry.state = SubjectState.VALID
            entry.reason = None
            entry.generation += 1
            self._register(record, previous)
        self.schedule_proactive(record)
        logger.info(f"Credential adopted for subject {record.subject_id}")

    def schedule_proactive(self, record: CredentialRecord) -> Optional[float]:
        """
        Schedule renewal at ``expires_at - skew``.

        Replaces any job already scheduled for the subject. Records without
        a renewal secret get no job.

        Returns:
            Delay in seconds until the job runs, or None if not scheduled
        """
        with self._lock:
            entry = self._entry(record.subject_id, load=False)
            self._cancel_job(entry)
            if self._shutdown.is_set() or not record.renewal_secret:
                return None

            now = self._clock()
            run_date = max(record.expires_at - self.skew, now)
            entry.job = self._jobs.add_job(
                self._on_timer,
                "date",
                run_date=run_date,
                args=[record.subject_id],
                id=f"renew:{record.subject_id}",
                name=f"Renew credential for {record.subject_id}",
                replace_existing=True,
            )
            delay = (run_date - now).total_seconds()

        logger.debug(f"Proactive renewal for subject {record.subject_id} in {delay:.0f}s")
        return delay

    def mark_authorizing(self, subject_id: str) -> None:
        with self._lock:
            entry = self._entry(subject_id)
            if entry.guard is None:
                entry.state = SubjectState.AUTHORIZING

    def end_authorizing(self, subject_id: str) -> None:
        """Restore the state after an interactive grant did not complete."""
        with self._lock:
            entry = self._entry(subject_id)
            if entry.state is SubjectState.AUTHORIZING:
                entry.state = (
                    SubjectState.VALID if entry.record else SubjectState.UNAUTHENTICATED
                )

    def forget(self, subject_id: str, reason: str = "logged_out") -> Optional[CredentialRecord]:
        """
        Drop a subject's credential from memory and storage.

        A renewal in flight for the dropped record is discarded when it
        completes.

        Returns:
            The record that was held, if any

        Raises:
            CredentialStoreError: If the stored record could not be removed
        """
        with self._lock:
            record = self._entry(subject_id).record
            self._clear(subject_id, reason, raise_store_errors=True)
        return record

    def record(self, subject_id: str) -> Optional[CredentialRecord]:
        """Current live record (loaded from the store on first access)."""
        with self._lock:
            return self._entry(subject_id).record

    def state(self, subject_id: str) -> SubjectState:
        with self._lock:
            return self._entry(subject_id).state

    def status(self, subject_id: str) -> dict[str, Any]:
        """
        Non-secret status for a subject.

        Returns:
            Dictionary with state, reason, expires_at, granted_scopes and
            whether the credential is renewable
        """
        with self._lock:
            entry = self._entry(subject_id)
            record = entry.record
            status = {
                "subject_id": subject_id,
                "state": entry.state.value,
                "reason": entry.reason,
                "expires_at": None,
                "expires_in_seconds": None,
                "granted_scopes": [],
                "renewable": False,
            }
            if record is not None:
                status.update(
                    expires_at=record.expires_at.isoformat(),
                    expires_in_seconds=int(record.seconds_remaining(self._clock())),
                    granted_scopes=sorted(record.granted_scopes),
                    renewable=record.renewal_secret is not None,
                )
            return status

    def shutdown(self) -> None:
        """Remove all renewal jobs and interrupt renewal backoff waits."""
        self._shutdown.set()
        with self._lock:
            for entry in self._subjects.values():
                self._cancel_job(entry)
        if self._owns_jobs and self._jobs.running:
            self._jobs.shutdown(wait=False)
        logger.debug("Refresh scheduler shut down")

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def _start_guard(self, entry: _Subject, proactive: bool = False) -> RenewalGuard:
        entry.guard = RenewalGuard(
            generation=entry.generation + 1,
            record=entry.record,
            deadline=time.monotonic() + self.config.renewal_wait_timeout,
            proactive=proactive,
        )
        entry.state = SubjectState.REFRESHING
        return entry.guard

    def _wait(self, subject_id: str, guard: RenewalGuard) -> CredentialRecord:
        """
        Wait for the guard's outcome until its deadline.

        On timeout the guard is resolved with a transient failure so that
        every caller, including a leader that finishes later, sees it.
        """
        remaining = max(0.0, guard.deadline - time.monotonic())
        try:
            return guard.future.result(timeout=remaining)
        except FutureTimeout:
            logger.warning(f"Timed out waiting for the renewal of subject {subject_id}")
            error = RenewalError.from_classification(
                classification_for(ErrorKind.TRANSIENT_NETWORK),
                "Timed out waiting for credential renewal",
            )
            self._resolve(guard, error=error)
            return guard.future.result()

    def _resolve(
        self,
        guard: RenewalGuard,
        record: Optional[CredentialRecord] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        """Settle the guard's future once; returns False if already settled."""
        with self._lock:
            if guard.future.done():
                return False
            if error is not None:
                guard.future.set_exception(error)
            else:
                guard.future.set_result(record)
            return True

    def _run_renewal(self, subject_id: str, guard: RenewalGuard) -> None:
        """Run the renewal as guard leader and resolve the guard."""
        try:
            record, installed = self._renew(subject_id, guard)
        except AuthKeeperError as e:
            self._release(subject_id, guard)
            self._resolve(guard, error=e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error renewing credential for subject {subject_id}")
            error = RenewalError.from_classification(classify(e))
            error.__cause__ = e
            self._release(subject_id, guard)
            self._resolve(guard, error=error)
            return

        self._release(subject_id, guard)
        if installed:
            self.schedule_proactive(record)
            logger.info(f"Credential renewed for subject {subject_id}")
        if not self._resolve(guard, record=record):
            logger.debug(f"Renewal for subject {subject_id} finished after its waiters gave up")

    def _release(self, subject_id: str, guard: RenewalGuard) -> None:
        with self._lock:
            entry = self._entry(subject_id, load=False)
            if entry.guard is guard:
                entry.guard = None
                entry.state = SubjectState.VALID if entry.record else SubjectState.UNAUTHENTICATED

    def _superseded(self, subject_id: str, guard: RenewalGuard) -> Optional[CredentialRecord]:
        """
        Check whether the record being renewed was replaced or dropped.

        Must be called with the lock held.

        Returns:
            None if the guard's record is still live, otherwise the record
            that replaced it

        Raises:
            ReauthorizationRequired: The record was dropped meanwhile
        """
        entry = self._entry(subject_id, load=False)
        if entry.generation == guard.generation - 1 and entry.record is guard.record:
            return None
        logger.info(f"Credential for subject {subject_id} changed during renewal; discarding result")
        if entry.record is None:
            raise ReauthorizationRequired(
                f"Credential for subject {subject_id} was removed during renewal",
                reason=entry.reason or "logged_out",
            )
        return entry.record

    def _renew(self, subject_id: str, guard: RenewalGuard) -> tuple[CredentialRecord, bool]:
        """
        Perform the renewal call with bounded retries.

        The new record is persisted and installed under the lock before
        returning so that the guard never releases waiters ahead of the
        write, and a record adopted or forgotten meanwhile is never
        overwritten.

        Returns:
            Tuple of (record for the waiters, whether it was installed)
        """
        record = guard.record
        if record is None:
            raise ReauthorizationRequired(
                f"No credential held for subject {subject_id}", reason="no_credential"
            )

        if not record.renewal_secret:
            self._clear_if_current(subject_id, guard, "expired_no_renewal_secret")
            raise ReauthorizationRequired(
                f"Credential for subject {subject_id} cannot be renewed",
                reason="expired_no_renewal_secret",
                user_message="Your sign-in has expired. Run `reauth` to sign in again.",
            )

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.provider.refresh(record.renewal_secret)
                break
            except (ProviderFailure, requests.RequestException) as e:
                verdict = classify(e, FailureContext.RENEWAL)

                if verdict.kind in (ErrorKind.REVOKED, ErrorKind.DENIED):
                    logger.warning(
                        f"Renewal secret for subject {subject_id} was rejected ({verdict.kind.value})"
                    )
                    newer = self._clear_if_current(subject_id, guard, verdict.kind.value)
                    if newer is not None:
                        return newer, False
                    raise ReauthorizationRequired(
                        f"Renewal rejected for subject {subject_id}",
                        reason=verdict.kind.value,
                        kind=verdict.kind,
                    ) from e

                if not verdict.retryable or attempt >= self.config.renewal_max_attempts:
                    logger.error(
                        f"Renewal failed for subject {subject_id} after {attempt} attempt(s): "
                        f"{verdict.kind.value}"
                    )
                    raise RenewalError.from_classification(verdict) from e

                delay = min(
                    self.config.renewal_backoff_base * (2 ** (attempt - 1)),
                    self.config.renewal_backoff_cap,
                )
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = min(max(delay, retry_after), self.config.renewal_backoff_cap)
                if time.monotonic() + delay >= guard.deadline:
                    logger.error(
                        f"Renewal for subject {subject_id} ran out of time after "
                        f"{attempt} attempt(s): {verdict.kind.value}"
                    )
                    raise RenewalError.from_classification(verdict) from e
                logger.warning(
                    f"Renewal attempt {attempt}/{self.config.renewal_max_attempts} failed "
                    f"({verdict.kind.value}), retrying in {delay}s"
                )
                if self._waiter(self._shutdown, delay):
                    raise RenewalError.from_classification(
                        verdict, "Renewal interrupted by shutdown"
                    ) from e

        now = self._clock()
        renewed = record.with_renewal(
            access_secret=response.access_token,
            issued_at=now,
            expires_at=now + timedelta(seconds=response.expires_in),
            renewal_secret=response.refresh_token,
            granted_scopes=response.granted_scopes(record.granted_scopes),
        )
        if response.refresh_token:
            logger.debug(f"Provider rotated the renewal secret for subject {subject_id}")

        with self._lock:
            newer = self._superseded(subject_id, guard)
            if newer is not None:
                return newer, False
            self._persist(renewed)
            entry = self._entry(subject_id, load=False)
            entry.record = renewed
            entry.generation = guard.generation
            entry.reason = None
            self._register(renewed, record)
        return renewed, True

    def _clear_if_current(
        self, subject_id: str, guard: RenewalGuard, reason: str
    ) -> Optional[CredentialRecord]:
        """Clear the subject unless its record changed since the guard started."""
        with self._lock:
            newer = self._superseded(subject_id, guard)
            if newer is None:
                self._clear(subject_id, reason)
            return newer

    def _on_timer(self, subject_id: str) -> None:
        if self._shutdown.is_set():
            return
        with self._lock:
            entry = self._subjects.get(subject_id)
            if entry is None:
                return
            entry.job = None
            if entry.record is None or entry.guard is not None:
                return
            guard = self._start_guard(entry, proactive=True)

        logger.info(f"Proactive renewal for subject {subject_id}")
        self._run_renewal(subject_id, guard)
        error = guard.future.exception()
        if error is not None:
            logger.warning(f"Proactive renewal for subject {subject_id} failed: {error}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _entry(self, subject_id: str, load: bool = True) -> _Subject:
        entry = self._subjects.get(subject_id)
        if entry is None:
            entry = _Subject()
            self._subjects[subject_id] = entry
        if load and not entry.loaded:
            entry.loaded = True
            record = self.store.load(subject_id)
            if record is not None:
                logger.debug(f"Loaded stored credential for subject {subject_id}")
                entry.record = record
                entry.state = SubjectState.VALID
                self._register(record)
                self.schedule_proactive(record)
        return entry

    def _persist(self, record: CredentialRecord) -> None:
        try:
            self.store.save(record)
        except CredentialStoreError as e:
            logger.error(f"{e}; keeping credential in memory only")

    def _clear(self, subject_id: str, reason: str, raise_store_errors: bool = False) -> None:
        with self._lock:
            entry = self._entry(subject_id, load=False)
            previous = entry.record
            entry.loaded = True
            entry.record = None
            entry.state = SubjectState.UNAUTHENTICATED
            entry.reason = reason
            entry.generation += 1
            self._cancel_job(entry)
            if previous is not None:
                forget_secret(previous.access_secret)
                forget_secret(previous.renewal_secret)
            try:
                self.store.delete(subject_id)
            except CredentialStoreError as e:
                logger.error(f"{e}")
                if raise_store_errors:
                    raise
        logger.info(f"Credential cleared for subject {subject_id} ({reason})")

    def _cancel_job(self, entry: _Subject) -> None:
        if entry.job is None:
            return
        try:
            self._jobs.remove_job(entry.job.id)
        except JobLookupError:
            # Date jobs are removed by APScheduler once they have run.
            pass
        entry.job = None

    @staticmethod
    def _register(
        record: CredentialRecord, previous: Optional[CredentialRecord] = None
    ) -> None:
        """Register the record's secrets for redaction and drop the replaced ones."""
        register_secret(record.access_secret)
        register_secret(record.renewal_secret)
        if previous is None:
            return
        live = {record.access_secret, record.renewal_secret}
        for secret in (previous.access_secret, previous.renewal_secret):
            if secret and secret not in live:
                forget_secret(secret)
