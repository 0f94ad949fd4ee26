"""
agentforge — credential store

File: src/agentforge/credentials/store.py

Purpose
- Resolve, hold and redact named secrets for builds, subagents and inference.

Functional requirements
- ``add`` resolves env, file, keychain and inline sources immediately; prompt
  credentials stay unresolved until ``request`` is called.
- Only metadata is persisted or listed; values never leave process memory.
- ``validate_all`` reports every required-but-unresolved credential at once.
- Resolved values are registered with the log redaction registry.

Non-functional requirements
- Table access is guarded by a reader/writer lock; the store is shared by sync
  CLI code and async components.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

import structlog

from agentforge.constants import CREDENTIAL_FILE_SCHEMA_VERSION
from agentforge.domain.models import Credential, CredentialSource
from agentforge.errors import AgentForgeError
from agentforge.security.redaction import SecretRegistry, global_secret_registry
from agentforge.utils.concurrency import ThreadReadWriteLock
from agentforge.utils.fs import atomic_write_json

PromptFn = Callable[[Credential], str]

CREDENTIAL_REFERENCE_RE = re.compile(r"\$\{credential:([A-Za-z_][A-Za-z0-9_.-]*)\}")
_KEYCHAIN_TIMEOUT_SECONDS = 10.0


class CredentialError(AgentForgeError):
    """Base class for credential failures."""


class CredentialNotFoundError(CredentialError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"credential {name!r} is not registered")


class CredentialUnresolvedError(CredentialError):
    def __init__(self, name: str, source: str) -> None:
        self.name = name
        self.source = source
        super().__init__(f"credential {name!r} has no value (source: {source})")


class CredentialResolutionError(CredentialError):
    """A declared source could not be read (unreadable file, keychain failure)."""


class MissingCredentialsError(CredentialError):
    """Aggregate of every required credential that has no value."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(sorted(names))
        super().__init__("missing required credentials: " + ", ".join(self.names))


class KeychainReader(Protocol):
    def read(self, service: str, item: str) -> str | None: ...


class SystemKeychain:
    """Reads generic passwords through the platform keychain CLI.

    macOS uses ``security``; Linux uses libsecret's ``secret-tool``. Any other
    platform reports the keychain as unavailable.
    """

    def __init__(self, *, runner: Callable[..., subprocess.CompletedProcess[str]] | None = None):
        self._run = runner if runner is not None else subprocess.run

    def command(self, service: str, item: str) -> list[str] | None:
        if sys.platform == "darwin" and shutil.which("security"):
            return ["security", "find-generic-password", "-s", service, "-a", item, "-w"]
        if sys.platform.startswith("linux") and shutil.which("secret-tool"):
            return ["secret-tool", "lookup", "service", service, "account", item]
        return None

    def read(self, service: str, item: str) -> str | None:
        argv = self.command(service, item)
        if argv is None:
            raise CredentialResolutionError("no keychain backend available on this platform")
        try:
            completed = self._run(
                argv,
                capture_output=True,
                text=True,
                timeout=_KEYCHAIN_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CredentialResolutionError(f"keychain lookup failed: {exc}") from exc
        if completed.returncode != 0:
            return None
        value = completed.stdout.strip()
        return value or None


class CredentialStore:
    """Injectable table of named credentials keyed by name."""

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        keychain: KeychainReader | None = None,
        keychain_service: str = "agentforge",
        registry: SecretRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._path = None if path is None else Path(path)
        self._environ = environ
        self._keychain = keychain
        self._keychain_service = keychain_service
        self._registry = registry if registry is not None else global_secret_registry()
        self._lock = ThreadReadWriteLock()
        self._credentials: dict[str, Credential] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path | None:
        return self._path

    def add(self, credential: Credential, *, persist: bool = True) -> dict[str, object]:
        """Register ``credential``, resolve it now, and return its metadata view."""

        if not isinstance(credential, Credential):
            raise TypeError(f"expected Credential, got {type(credential).__name__}")
        resolved = self._resolve(credential)
        with self._lock.write():
            previous = self._credentials.get(resolved.name)
            if previous is not None and previous.value and previous.value != resolved.value:
                self._registry.unregister(previous.value)
            self._credentials[resolved.name] = resolved
            if resolved.value:
                self._registry.register(resolved.value)
            if persist:
                self._persist_locked()
        self._logger.info(
            "credential_added",
            credential=resolved.name,
            source=resolved.source.value,
            resolved=resolved.is_resolved,
            optional=resolved.optional,
        )
        return resolved.to_dict()

    def add_all(self, credentials: Iterable[Credential], *, persist: bool = True) -> None:
        for credential in credentials:
            self.add(credential, persist=persist)

    def get(self, name: str) -> str | None:
        """Return the resolved value; ``None`` only for unresolved optional credentials."""

        with self._lock.read():
            credential = self._credentials.get(name)
        if credential is None:
            raise CredentialNotFoundError(name)
        if credential.value:
            return credential.value
        if credential.optional:
            return None
        raise CredentialUnresolvedError(name, credential.source.value)

    def request(self, name: str, prompt_fn: PromptFn) -> str:
        """Resolve a prompt-sourced credential lazily, asking ``prompt_fn`` once.

        The prompt runs with no lock held so other lookups proceed while it waits.
        """

        with self._lock.read():
            credential = self._credentials.get(name)
        credential = _promptable(name, credential)
        if credential.value:
            return credential.value
        value = prompt_fn(replace(credential, value=None)).strip()
        if not value:
            raise CredentialUnresolvedError(name, credential.source.value)
        with self._lock.write():
            current = _promptable(name, self._credentials.get(name))
            if current.value:
                # Another caller answered first.
                return current.value
            self._credentials[name] = replace(current, value=value)
            self._registry.register(value)
        self._logger.info("credential_prompt_resolved", credential=name)
        return value

    def list(self) -> tuple[dict[str, object], ...]:
        """Metadata for every credential, sorted by name, with values blanked."""

        with self._lock.read():
            credentials = sorted(self._credentials.values(), key=lambda item: item.name)
        return tuple(item.to_dict() for item in credentials)

    def names(self) -> tuple[str, ...]:
        with self._lock.read():
            return tuple(sorted(self._credentials))

    def missing(self) -> tuple[str, ...]:
        with self._lock.read():
            return tuple(
                sorted(
                    name
                    for name, credential in self._credentials.items()
                    if not credential.optional and not credential.value
                )
            )

    def validate_all(self) -> None:
        """Raise one ``MissingCredentialsError`` naming every unresolved required credential."""

        missing = self.missing()
        if missing:
            self._logger.warning("credentials_missing", credentials=list(missing))
            raise MissingCredentialsError(missing)

    def remove(self, name: str) -> bool:
        with self._lock.write():
            credential = self._credentials.pop(name, None)
            if credential is None:
                return False
            if credential.value:
                self._registry.unregister(credential.value)
            self._persist_locked()
        self._logger.info("credential_removed", credential=name)
        return True

    def load(self) -> int:
        """Reload metadata from the store file and re-resolve every credential."""

        if self._path is None or not self._path.exists():
            return 0
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CredentialError(f"unable to read credential file {self._path}: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("credentials"), list):
            raise CredentialError(f"credential file {self._path} has an invalid layout")
        version = payload.get("schema_version")
        if version != CREDENTIAL_FILE_SCHEMA_VERSION:
            raise CredentialError(
                f"credential file schema version {version!r} is not supported "
                f"(expected {CREDENTIAL_FILE_SCHEMA_VERSION})"
            )
        loaded = [Credential.from_dict(item) for item in payload["credentials"]]
        for credential in loaded:
            self.add(credential, persist=False)
        return len(loaded)

    def secret_values(self) -> tuple[str, ...]:
        """Resolved values, for log and output redaction only."""

        with self._lock.read():
            return tuple(item.value for item in self._credentials.values() if item.value)

    def expand_references(self, text: str) -> str:
        """Replace ``${credential:NAME}`` references with resolved values."""

        return CREDENTIAL_REFERENCE_RE.sub(lambda match: self.get(match.group(1)) or "", text)

    def _resolve(self, credential: Credential) -> Credential:
        source = credential.source
        if source is CredentialSource.PROMPT:
            return replace(credential, value=None)
        if source is CredentialSource.CONFIG:
            return replace(credential, value=credential.reference)
        try:
            value = self._read_source(credential)
        except CredentialResolutionError as exc:
            self._logger.warning(
                "credential_resolution_failed",
                credential=credential.name,
                source=source.value,
                error=str(exc),
            )
            value = None
        return replace(credential, value=value or None)

    def _read_source(self, credential: Credential) -> str | None:
        if credential.source is CredentialSource.ENV:
            environ = os.environ if self._environ is None else self._environ
            return (environ.get(credential.reference) or "").strip() or None
        if credential.source is CredentialSource.FILE:
            path = Path(credential.reference).expanduser()
            if not path.exists():
                return None
            try:
                return path.read_text(encoding="utf-8").strip() or None
            except OSError as exc:
                raise CredentialResolutionError(f"unable to read {path}: {exc}") from exc
        keychain = self._keychain if self._keychain is not None else SystemKeychain()
        return keychain.read(self._keychain_service, credential.reference)

    def _persist_locked(self) -> None:
        if self._path is None:
            return
        payload = {
            "schema_version": CREDENTIAL_FILE_SCHEMA_VERSION,
            "credentials": [
                self._credentials[name].to_dict() for name in sorted(self._credentials)
            ],
        }
        atomic_write_json(self._path, payload, mode=0o600)


def _promptable(name: str, credential: Credential | None) -> Credential:
    if credential is None:
        raise CredentialNotFoundError(name)
    if not credential.value and credential.source is not CredentialSource.PROMPT:
        raise CredentialUnresolvedError(name, credential.source.value)
    return credential


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
