"""
Credential lifecycle manager for command-line and headless programs.

This package obtains, persists, renews and shares OAuth 2.0 access
credentials for processes without a standing web front end.

The package supports two interactive flows:
- Local callback: browser redirect to an ephemeral loopback listener
- Device code: short user code entered on any device while the process polls

Public API:
    CredentialFacade: acquire / revoke / status (the only interface
        business logic needs)
    AuthConfig: Configuration management
    CredentialRecord, PendingGrant: Data model
    CredentialStore: Storage backends (keyring, encrypted file, memory)
    AuthorizationFlowCoordinator: Interactive grants
    RefreshScheduler: Live credential ownership and renewal
    ScopeManager: Incremental authorization
    classify: Failure classification

Exceptions:
    AuthKeeperError: Base exception
    ConfigurationError: Configuration error
    CredentialStoreError: Storage operation failed
    FlowError: Interactive authorization failed
    RenewalError: Renewal failed
    ReauthorizationRequired: Credential revoked or unrenewable
    RequiresGrant: Missing scopes
    AuthRequired: User action needed before a credential is available
"""

from .callback_server import CallbackOutcome, LoopbackCallbackServer
from .classifier import (
    Classification,
    FailureContext,
    RetryPolicy,
    classify,
    classify_resource_failure,
    exit_code_for,
)
from .config import AuthConfig
from .exceptions import (
    AuthKeeperError,
    AuthRequired,
    ConfigurationError,
    CredentialStoreError,
    ErrorKind,
    FlowCancelled,
    FlowError,
    ProviderFailure,
    ReauthorizationRequired,
    RenewalError,
    RequiresGrant,
)
from .facade import CredentialFacade
from .flow import AuthorizationFlowCoordinator, generate_pkce_pair
from .provider import ProviderClient, TokenResponse
from .records import CredentialRecord, FlowKind, PendingGrant
from .redaction import SecretRedactingFilter, install_redaction
from .scheduler import RefreshScheduler, RenewalGuard, SubjectState
from .scopes import ScopeManager
from .store import (
    CredentialStore,
    EncryptedFileStore,
    KeyringStore,
    MemoryStore,
    select_store,
)

__all__ = [
    # Facade
    "CredentialFacade",
    # Configuration
    "AuthConfig",
    # Data model
    "CredentialRecord",
    "PendingGrant",
    "FlowKind",
    # Storage
    "CredentialStore",
    "KeyringStore",
    "EncryptedFileStore",
    "MemoryStore",
    "select_store",
    # Flows
    "AuthorizationFlowCoordinator",
    "LoopbackCallbackServer",
    "CallbackOutcome",
    "generate_pkce_pair",
    # Provider
    "ProviderClient",
    "TokenResponse",
    # Renewal
    "RefreshScheduler",
    "RenewalGuard",
    "SubjectState",
    # Scopes
    "ScopeManager",
    # Classification
    "Classification",
    "FailureContext",
    "RetryPolicy",
    "classify",
    "classify_resource_failure",
    "exit_code_for",
    # Logging
    "SecretRedactingFilter",
    "install_redaction",
    # Exceptions
    "AuthKeeperError",
    "ErrorKind",
    "ConfigurationError",
    "CredentialStoreError",
    "ProviderFailure",
    "FlowError",
    "FlowCancelled",
    "RenewalError",
    "ReauthorizationRequired",
    "RequiresGrant",
    "AuthRequired",
]
