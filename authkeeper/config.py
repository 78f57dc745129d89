"""
Configuration for the credential manager.

Configuration can be provided programmatically, loaded from environment
variables, or read from a YAML file (environment variables override
file values, file values override defaults).
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("auto", "keyring", "file", "memory")
FLOW_KINDS = ("auto", "local_callback", "device_code")


def _default_store_dir() -> str:
    return str(Path.home() / ".config" / "authkeeper" / "credentials")


@dataclass
class AuthConfig:
    """
    Configuration for the credential lifecycle manager.

    Attributes:
        client_id: OAuth client identifier registered with the provider
        client_secret: Client secret (optional; public clients omit it)
        authorization_url: Provider authorization endpoint
        token_url: Provider token endpoint
        device_authorization_url: Device authorization endpoint (device flow)
        revocation_url: Token revocation endpoint (optional)
        default_scopes: Scopes requested when the caller names none
        callback_host: Loopback address for the local callback listener
        callback_path: URL path for the local callback listener
        flow_timeout_seconds: Hard expiry of a pending grant
        refresh_skew_seconds: Renew this many seconds before expiry
        renewal_max_attempts: Attempts per renewal before giving up
        renewal_backoff_base: First backoff delay between renewal attempts
        renewal_backoff_cap: Maximum backoff delay
        renewal_wait_timeout: How long a caller waits on an in-flight renewal
        max_transport_retries: Retries for transport failures during a grant
        http_timeout: Timeout for individual HTTP calls
        supports_incremental: Provider accepts incremental scope grants
        store_backend: auto, keyring, file or memory
        store_dir: Directory for the encrypted-file backend
        keyring_service: Service name used in the OS secret store
        open_browser: Allow opening a browser for the local-callback flow
        preferred_flow: auto, local_callback or device_code
        default_subject: Subject key used when the caller names none
    """

    # Required - from the provider's developer console
    client_id: str
    authorization_url: str
    token_url: str

    client_secret: Optional[str] = None
    device_authorization_url: Optional[str] = None
    revocation_url: Optional[str] = None
    default_scopes: list = field(default_factory=list)

    # Local callback listener (port is always OS-assigned)
    callback_host: str = "127.0.0.1"
    callback_path: str = "/oauth/callback"

    # Flow and renewal settings
    flow_timeout_seconds: int = 900
    refresh_skew_seconds: int = 300  # Renew 5 min before expiry
    renewal_max_attempts: int = 4
    renewal_backoff_base: float = 1.0
    renewal_backoff_cap: float = 30.0
    renewal_wait_timeout: float = 60.0
    max_transport_retries: int = 3
    http_timeout: float = 30.0
    supports_incremental: bool = False

    # Storage
    store_backend: str = "auto"
    store_dir: str = field(default_factory=_default_store_dir)
    keyring_service: str = "authkeeper"

    open_browser: bool = True
    preferred_flow: str = "auto"
    default_subject: str = "default"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.client_id:
            raise ConfigurationError("client_id cannot be empty")

        for name in ("authorization_url", "token_url"):
            value = getattr(self, name)
            if not value or not value.startswith(("http://", "https://")):
                raise ConfigurationError(f"{name} must be an http(s) URL, got {value!r}")

        if isinstance(self.default_scopes, str):
            self.default_scopes = self.default_scopes.split()

        if self.store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"store_backend must be one of: {', '.join(STORE_BACKENDS)}"
            )

        if self.preferred_flow not in FLOW_KINDS:
            raise ConfigurationError(
                f"preferred_flow must be one of: {', '.join(FLOW_KINDS)}"
            )

        if self.preferred_flow == "device_code" and not self.device_authorization_url:
            raise ConfigurationError(
                "preferred_flow is device_code but device_authorization_url is not set"
            )

        if self.refresh_skew_seconds < 0:
            raise ConfigurationError("refresh_skew_seconds cannot be negative")

        if self.flow_timeout_seconds <= 0:
            raise ConfigurationError("flow_timeout_seconds must be positive")

        if self.renewal_max_attempts < 1:
            raise ConfigurationError("renewal_max_attempts must be at least 1")

        if self.max_transport_retries < 0:
            raise ConfigurationError("max_transport_retries cannot be negative")

        if self.renewal_backoff_base < 0 or self.renewal_backoff_cap < 0:
            raise ConfigurationError("renewal backoff values cannot be negative")

        if self.renewal_wait_timeout <= 0 or self.http_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")

        if not self.callback_path.startswith("/"):
            raise ConfigurationError("callback_path must start with '/'")

        if not self.default_subject:
            raise ConfigurationError("default_subject cannot be empty")

    @classmethod
    def get_default_config_path(cls) -> Path:
        """
        Get default configuration file path.

        Returns:
            Path to default config file (~/.config/authkeeper/config.yaml)
        """
        return Path.home() / ".config" / "authkeeper" / "config.yaml"

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """
        Load configuration from environment variables only.

        Required environment variables:
            AUTHKEEPER_CLIENT_ID: OAuth client identifier
            AUTHKEEPER_AUTHORIZATION_URL: Provider authorization endpoint
            AUTHKEEPER_TOKEN_URL: Provider token endpoint

        Every other field can be set through ``AUTHKEEPER_<FIELD_NAME>``.

        Returns:
            AuthConfig instance

        Raises:
            ConfigurationError: If required environment variables are missing
        """
        return cls.merge_with_env({})

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "AuthConfig":
        """
        Load configuration from a YAML file, then apply environment overrides.

        Args:
            path: Config file (default: ~/.config/authkeeper/config.yaml)

        Returns:
            AuthConfig instance

        Raises:
            ConfigurationError: If the file is invalid or values are missing
        """
        config_path = Path(path) if path else cls.get_default_config_path()
        config_dict: dict[str, Any] = {}

        if config_path.exists():
            try:
                with open(config_path) as f:
                    file_config = yaml.safe_load(f)
                    if file_config:
                        config_dict = file_config
                logger.debug(f"Loaded configuration from {config_path}")
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Invalid YAML in configuration file: {e}"
                ) from e
            except OSError as e:
                raise ConfigurationError(
                    f"Failed to load configuration file: {e}"
                ) from e
        else:
            logger.debug(f"Configuration file not found at {config_path}, using environment")

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration file must contain a mapping")

        return cls.merge_with_env(config_dict)

    @classmethod
    def merge_with_env(cls, config_dict: dict[str, Any]) -> "AuthConfig":
        """
        Merge a configuration mapping with environment variables.

        Precedence order (highest to lowest):
        1. Environment variables (AUTHKEEPER_<FIELD>)
        2. Mapping values (a nested ``provider`` section is flattened)
        3. Default values
        """
        flat = dict(config_dict)
        provider = flat.pop("provider", None) or {}
        if isinstance(provider, dict):
            for key, value in provider.items():
                flat.setdefault(key, value)

        known = {f.name: f for f in fields(cls)}
        unknown = set(flat) - set(known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}"
            )

        values: dict[str, Any] = {}
        for name in known:
            env_value = os.environ.get(f"AUTHKEEPER_{name.upper()}")
            if env_value is not None:
                values[name] = env_value
            elif name in flat:
                values[name] = flat[name]

        missing = [
            name for name in ("client_id", "authorization_url", "token_url")
            if not values.get(name)
        ]
        if missing:
            raise ConfigurationError(
                "Missing OAuth client configuration. Set environment variables:\n"
                + "".join(f"  AUTHKEEPER_{name.upper()}=...\n" for name in missing)
                + "\nor add them to the configuration file."
            )

        try:
            return cls(**_coerce(values))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


_INT_FIELDS = {
    "flow_timeout_seconds",
    "refresh_skew_seconds",
    "renewal_max_attempts",
    "max_transport_retries",
}
_FLOAT_FIELDS = {
    "renewal_backoff_base",
    "renewal_backoff_cap",
    "renewal_wait_timeout",
    "http_timeout",
}
_BOOL_FIELDS = {"supports_incremental", "open_browser"}


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    """Convert string values (from env vars) to the field types."""
    result = dict(values)
    for name, value in values.items():
        if not isinstance(value, str):
            continue
        if name in _INT_FIELDS:
            result[name] = int(value)
        elif name in _FLOAT_FIELDS:
            result[name] = float(value)
        elif name in _BOOL_FIELDS:
            result[name] = value.strip().lower() in ("1", "true", "yes", "on")
    return result
