"""
Credential storage backends.

Backends are probed in order at startup:
1. OS secret store (keyring)
2. Encrypted file (Fernet, key derived from a host-scoped secret)
3. In-memory (not durable; refuses to claim persistence)

Every write is atomic. Records are only ever serialized inside a
backend; error messages name the subject and the OS error, never any
record field.
"""

import base64
import hashlib
import json
import logging
import os
import secrets
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError, PasswordDeleteError

from .config import AuthConfig
from .exceptions import ConfigurationError, CredentialStoreError
from .records import CredentialRecord

logger = logging.getLogger(__name__)

STORE_SECRET_ENV = "AUTHKEEPER_STORE_SECRET"
DEFAULT_KDF_ITERATIONS = 200_000


class CredentialStore(ABC):
    """One CredentialRecord per subject, keyed by subject identifier."""

    name: str = "abstract"

    @property
    def durable(self) -> bool:
        """Whether saved records survive a process restart."""
        return True

    @abstractmethod
    def save(self, record: CredentialRecord) -> None:
        """
        Persist a record, replacing any previous record for its subject.

        Raises:
            CredentialStoreError: If the write fails
        """

    @abstractmethod
    def load(self, subject_id: str) -> Optional[CredentialRecord]:
        """Return the stored record for a subject, or None."""

    @abstractmethod
    def delete(self, subject_id: str) -> None:
        """Remove the record for a subject (no error if absent)."""


class MemoryStore(CredentialStore):
    """Process-local store for ephemeral and test use."""

    name = "memory"

    def __init__(self):
        self._records: dict[str, CredentialRecord] = {}
        self._lock = threading.Lock()

    @property
    def durable(self) -> bool:
        return False

    def save(self, record: CredentialRecord) -> None:
        with self._lock:
            self._records[record.subject_id] = record

    def load(self, subject_id: str) -> Optional[CredentialRecord]:
        with self._lock:
            return self._records.get(subject_id)

    def delete(self, subject_id: str) -> None:
        with self._lock:
            self._records.pop(subject_id, None)


class KeyringStore(CredentialStore):
    """
    OS secret store backend.

    Each subject is one keyring entry (service, subject_id) holding the
    JSON-serialized record. Access control is enforced by the OS.
    """

    name = "keyring"

    def __init__(self, service: str = "authkeeper", keyring_module=keyring):
        self.service = service
        self._keyring = keyring_module

    def available(self) -> bool:
        """Check whether a usable (non-fail, non-null) keyring backend exists."""
        try:
            backend = self._keyring.get_keyring()
        except KeyringError as e:
            logger.debug(f"Keyring probe failed: {e}")
            return False
        priority = getattr(backend, "priority", 0)
        return bool(priority and priority > 0)

    def save(self, record: CredentialRecord) -> None:
        payload = json.dumps(record.to_dict())
        try:
            self._keyring.set_password(self.service, record.subject_id, payload)
        except KeyringError as e:
            logger.error(f"Keyring write failed for subject {record.subject_id}: {type(e).__name__}")
            raise CredentialStoreError(
                f"Failed to save credential for subject {record.subject_id} to the OS secret store"
            ) from None
        logger.debug(f"Credential saved to keyring for subject {record.subject_id}")

    def load(self, subject_id: str) -> Optional[CredentialRecord]:
        try:
            raw = self._keyring.get_password(self.service, subject_id)
        except KeyringError as e:
            logger.warning(f"Could not read keyring entry for subject {subject_id}: {type(e).__name__}")
            return None
        if raw is None:
            return None
        try:
            return CredentialRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning(
                f"Invalid keyring entry for subject {subject_id}, will need re-authorization"
            )
            return None

    def delete(self, subject_id: str) -> None:
        try:
            self._keyring.delete_password(self.service, subject_id)
        except PasswordDeleteError:
            logger.debug(f"No keyring entry to delete for subject {subject_id}")
        except KeyringError as e:
            raise CredentialStoreError(
                f"Failed to delete credential for subject {subject_id}: {type(e).__name__}"
            ) from None


class EncryptedFileStore(CredentialStore):
    """
    Encrypted-file backend.

    Layout inside ``directory`` (mode 700):
        .salt       random per-store KDF salt
        .hostkey    random host secret (unless AUTHKEEPER_STORE_SECRET is set)
        <hash>.cred one Fernet token per subject (mode 600)

    The encryption key is derived with PBKDF2-HMAC-SHA256 from the host
    secret and the salt. Writes go to a temp file in the same directory
    and are moved into place with ``os.replace``.
    """

    name = "file"

    def __init__(
        self,
        directory,
        secret: Optional[str] = None,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ):
        self.directory = Path(directory).expanduser()
        try:
            self._ensure_directory()
            host_secret = secret or os.environ.get(STORE_SECRET_ENV) or self._host_secret()
            salt = self._salt()
        except OSError as e:
            raise CredentialStoreError(
                f"Credential directory {self.directory} is not usable: {e.strerror}"
            ) from e
        self._fernet = Fernet(_derive_key(host_secret, salt, iterations))
        self._lock = threading.Lock()

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            self.directory.chmod(0o700)
        except PermissionError as e:
            logger.warning(f"Could not set secure permissions on {self.directory}: {e}")

    def _read_or_create(self, name: str, factory) -> bytes:
        path = self.directory / name
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return path.read_bytes()
        with os.fdopen(fd, "wb") as f:
            value = factory()
            f.write(value)
        logger.info(f"Created {name} in {self.directory}")
        return value

    def _host_secret(self) -> str:
        raw = self._read_or_create(
            ".hostkey", lambda: base64.urlsafe_b64encode(secrets.token_bytes(32))
        )
        return raw.decode("ascii").strip()

    def _salt(self) -> bytes:
        return self._read_or_create(".salt", lambda: secrets.token_bytes(16))

    def path_for(self, subject_id: str) -> Path:
        digest = hashlib.sha256(subject_id.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{digest}.cred"

    def save(self, record: CredentialRecord) -> None:
        token = self._fernet.encrypt(json.dumps(record.to_dict()).encode("utf-8"))
        target = self.path_for(record.subject_id)

        with self._lock:
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".cred")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(token)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, 0o600)
                os.replace(tmp, target)
            except OSError as e:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                logger.error(f"Failed to save credential for subject {record.subject_id}: {e.strerror}")
                raise CredentialStoreError(
                    f"Failed to save credential for subject {record.subject_id}: {e.strerror}"
                ) from None

        logger.debug(f"Credential saved to {target}")

    def load(self, subject_id: str) -> Optional[CredentialRecord]:
        path = self.path_for(subject_id)
        if not path.exists():
            logger.debug(f"No credential file for subject {subject_id}")
            return None

        try:
            token = path.read_bytes()
        except OSError as e:
            logger.warning(f"Could not read credential file {path}: {e.strerror}")
            return None

        try:
            data = json.loads(self._fernet.decrypt(token))
            record = CredentialRecord.from_dict(data)
        except InvalidToken:
            logger.warning(
                f"Credential file {path} could not be decrypted, will need re-authorization"
            )
            return None
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Invalid credential file {path}, will need re-authorization")
            return None

        if record.subject_id != subject_id:
            logger.warning(f"Credential file {path} belongs to another subject; ignoring")
            return None
        return record

    def delete(self, subject_id: str) -> None:
        path = self.path_for(subject_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise CredentialStoreError(
                f"Failed to delete credential for subject {subject_id}: {e.strerror}"
            ) from None
        logger.debug(f"Credential file removed for subject {subject_id}")


def _derive_key(secret: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


def select_store(config: AuthConfig, keyring_module=keyring) -> CredentialStore:
    """
    Select a storage backend by capability probing.

    ``store_backend`` in the config forces a backend; ``auto`` tries
    keyring, then the encrypted file, then memory.

    Raises:
        ConfigurationError: If a forced backend is unavailable
    """
    backend = config.store_backend

    if backend == "memory":
        return MemoryStore()

    if backend in ("keyring", "auto"):
        store = KeyringStore(config.keyring_service, keyring_module=keyring_module)
        if store.available():
            logger.info("Using OS secret store for credentials")
            return store
        if backend == "keyring":
            raise ConfigurationError(
                "store_backend is 'keyring' but no OS secret store is available"
            )
        logger.info("No OS secret store available, trying encrypted file store")

    try:
        store = EncryptedFileStore(config.store_dir)
        logger.info(f"Using encrypted file store at {store.directory}")
        return store
    except CredentialStoreError as e:
        if backend == "file":
            raise ConfigurationError(str(e)) from e
        logger.warning(f"{e}; credentials will be kept in memory only and will not persist")
        return MemoryStore()
