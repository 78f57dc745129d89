"""Shared test fixtures: stub provider, fake clock and fake job scheduler."""

import itertools
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from apscheduler.jobstores.base import ConflictingIdError, JobLookupError

from authkeeper.config import AuthConfig
from authkeeper.exceptions import ProviderFailure
from authkeeper.provider import DeviceAuthorization, TokenResponse
from authkeeper.records import CredentialRecord
from authkeeper.store import MemoryStore

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def set(self, seconds_after_t0: float) -> None:
        self.now = T0 + timedelta(seconds=seconds_after_t0)


class FakeJob:
    def __init__(self, id, func, trigger, run_date, args):
        self.id = id
        self.func = func
        self.trigger = trigger
        self.run_date = run_date
        self.args = tuple(args)


class FakeJobScheduler:
    """Stand-in for an APScheduler scheduler whose jobs only run when told to."""

    def __init__(self):
        self.jobs = {}
        self.added = []
        self.removed = []
        self.running = True

    def add_job(self, func, trigger=None, args=None, id=None, name=None,
                replace_existing=False, run_date=None, **kwargs):
        if id in self.jobs and not replace_existing:
            raise ConflictingIdError(id)
        job = FakeJob(id, func, trigger, run_date, args or ())
        self.jobs[id] = job
        self.added.append(job)
        return job

    def remove_job(self, job_id, jobstore=None):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        self.removed.append(self.jobs.pop(job_id))

    def get_job(self, job_id, jobstore=None):
        return self.jobs.get(job_id)

    def shutdown(self, wait=True):
        self.running = False

    def run(self, job_id):
        """Run a date job; like APScheduler it is removed once it has run."""
        job = self.jobs.pop(job_id)
        job.func(*job.args)

    @property
    def latest(self) -> Optional[FakeJob]:
        return self.added[-1] if self.added else None


class StubProvider:
    """
    Simulated authorization server.

    Issues numbered secrets, rotates renewal secrets on every renewal and
    rejects replayed or revoked ones with ``invalid_grant``.
    """

    supports_device_flow = True

    def __init__(self, expires_in: int = 3600, rotate: bool = True, scope: Optional[str] = None):
        self.expires_in = expires_in
        self.rotate = rotate
        self.scope = scope
        self.refresh_calls = 0
        self.refresh_failures = []
        self.refresh_gate: Optional[threading.Event] = None
        self.refresh_entered = threading.Event()
        self.exchange_failures = []
        self.exchanged = []
        self.device_responses = []
        self.polls = 0
        self.revocations = []
        self.valid_renewal_secrets = set()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _next(self) -> int:
        with self._lock:
            return next(self._counter)

    def issue(self, scope: Optional[str] = None) -> TokenResponse:
        n = self._next()
        renewal = f"renewal-{n}"
        self.valid_renewal_secrets.add(renewal)
        return TokenResponse(
            access_token=f"access-{n}",
            expires_in=self.expires_in,
            refresh_token=renewal,
            scope=scope if scope is not None else self.scope,
        )

    def build_authorization_url(self, scopes, state, challenge, redirect_uri):
        return f"https://auth.example.com/authorize?state={state}&code_challenge={challenge}"

    def exchange_code(self, authorization_code, verifier, redirect_uri):
        if self.exchange_failures:
            raise self.exchange_failures.pop(0)
        self.exchanged.append(authorization_code)
        return self.issue()

    def refresh(self, renewal_secret, scopes=None):
        with self._lock:
            self.refresh_calls += 1
        self.refresh_entered.set()
        if self.refresh_gate is not None:
            self.refresh_gate.wait(5)
        if self.refresh_failures:
            raise self.refresh_failures.pop(0)
        if renewal_secret not in self.valid_renewal_secrets:
            raise ProviderFailure(400, "invalid_grant", "Invalid refresh token")

        n = self._next()
        new_renewal = None
        if self.rotate:
            self.valid_renewal_secrets.discard(renewal_secret)
            new_renewal = f"renewal-{n}"
            self.valid_renewal_secrets.add(new_renewal)
        return TokenResponse(
            access_token=f"access-{n}",
            expires_in=self.expires_in,
            refresh_token=new_renewal,
        )

    def request_device_code(self, scopes, challenge):
        return DeviceAuthorization(
            device_code="device-code-xyz",
            user_code="ABCD-EFGH",
            verification_uri="https://auth.example.com/device",
            expires_in=900,
            interval=5,
        )

    def poll_device_token(self, device_code, verifier):
        self.polls += 1
        if self.device_responses:
            item = self.device_responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        raise ProviderFailure(400, "authorization_pending")

    def revoke(self, token, token_type_hint="refresh_token"):
        self.revocations.append(token_type_hint)
        self.valid_renewal_secrets.discard(token)
        return True


def make_record(
    subject_id: str = "default",
    issued_at: datetime = T0,
    lifetime: int = 3600,
    access_secret: str = "access-0",
    renewal_secret: Optional[str] = "renewal-0",
    scopes=("files.read",),
) -> CredentialRecord:
    return CredentialRecord(
        subject_id=subject_id,
        access_secret=access_secret,
        renewal_secret=renewal_secret,
        granted_scopes=frozenset(scopes),
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=lifetime),
    )


@pytest.fixture
def config(tmp_path):
    """Create test OAuth config."""
    return AuthConfig(
        client_id="test_client_id",
        authorization_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        device_authorization_url="https://auth.example.com/device/code",
        revocation_url="https://auth.example.com/revoke",
        default_scopes=["files.read"],
        store_backend="memory",
        store_dir=str(tmp_path / "credentials"),
        open_browser=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def jobs():
    return FakeJobScheduler()


@pytest.fixture
def provider():
    return StubProvider()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def no_wait():
    """Waiter that never sleeps and records requested delays."""
    waits = []

    def waiter(event, seconds):
        waits.append(seconds)
        return event.is_set()

    waiter.waits = waits
    return waiter
