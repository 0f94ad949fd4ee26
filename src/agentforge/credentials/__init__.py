"""Credential store: the only component that holds raw secret values."""

from agentforge.credentials.store import (
    CREDENTIAL_REFERENCE_RE,
    CredentialError,
    CredentialNotFoundError,
    CredentialResolutionError,
    CredentialStore,
    CredentialUnresolvedError,
    KeychainReader,
    MissingCredentialsError,
    PromptFn,
    SystemKeychain,
)

__all__ = [
    "CREDENTIAL_REFERENCE_RE",
    "CredentialError",
    "CredentialNotFoundError",
    "CredentialResolutionError",
    "CredentialStore",
    "CredentialUnresolvedError",
    "KeychainReader",
    "MissingCredentialsError",
    "PromptFn",
    "SystemKeychain",
]
