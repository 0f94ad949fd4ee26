"""
agentforge — secret redaction

File: src/agentforge/security/redaction.py

Purpose
- Redaction rules for logs, CLI output, job logs and provider error bodies.

Functional requirements
- Known secret values registered by the credential store are always masked,
  regardless of the shape of the surrounding text.
- Secret-looking tokens (bearer headers, provider keys, CI tokens) are masked
  even when nobody registered them.
- Mapping keys that name secrets have their values masked wholesale.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

# Shorter values are not registered; masking them would mangle ordinary text.
_MIN_REGISTERED_SECRET_LENGTH: Final[int] = 4

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "bearer_token",
        "client_secret",
        "password",
        "passwd",
        "private_key",
        "refresh_token",
        "secret",
        "secret_key",
        "token",
        "value",
        "x_api_key",
        "x_goog_api_key",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_auth_token",
    "_client_secret",
    "_password",
    "_secret",
    "_token",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class SecretFinding:
    """One secret-like match discovered during scanning."""

    rule: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bbearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|x-api-key|client[_-]?secret|"
            r"access[_-]?token|token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(
        name="url_key_parameter",
        pattern=re.compile(r"(?i)([?&]key=)([A-Za-z0-9._~+/=-]{6,})"),
        sensitive_group=2,
    ),
    _TextRule(name="anthropic_api_key", pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,255}\b")),
    _TextRule(name="openai_api_key", pattern=re.compile(r"\bsk-[A-Za-z0-9_-]{12,255}\b")),
    _TextRule(name="google_api_key", pattern=re.compile(r"\bAIza[0-9A-Za-z_-]{30,}\b")),
    _TextRule(name="groq_api_key", pattern=re.compile(r"\bgsk_[A-Za-z0-9]{20,255}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(
        name="github_fine_grained_token",
        pattern=re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,255}\b"),
    ),
)


class SecretRegistry:
    """Thread-safe set of resolved secret values that must never be emitted."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: set[str] = set()

    def register(self, value: str | None) -> None:
        if not value or len(value) < _MIN_REGISTERED_SECRET_LENGTH:
            return
        with self._lock:
            self._values.add(value)

    def unregister(self, value: str | None) -> None:
        if not value:
            return
        with self._lock:
            self._values.discard(value)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def snapshot(self) -> tuple[str, ...]:
        # Longest first so overlapping secrets are masked completely.
        with self._lock:
            return tuple(sorted(self._values, key=len, reverse=True))

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


_GLOBAL_REGISTRY = SecretRegistry()


def global_secret_registry() -> SecretRegistry:
    """Return the process registry consulted by log redaction."""

    return _GLOBAL_REGISTRY


def is_sensitive_key(key: str) -> bool:
    """Return ``True`` when a mapping key names a secret."""

    normalized = _normalize_key(key)
    if normalized.endswith("_env") or normalized.endswith("_name"):
        return False
    if normalized in DEFAULT_SENSITIVE_KEY_DENYLIST:
        return True
    return normalized.endswith(_SENSITIVE_KEY_SUFFIXES)


def scan_for_secrets(text: str) -> tuple[SecretFinding, ...]:
    """Return secret-like matches in ``text`` ordered by position."""

    findings: list[SecretFinding] = []
    for rule in _TEXT_RULES:
        for match in rule.pattern.finditer(text):
            group = rule.sensitive_group or 0
            findings.append(
                SecretFinding(rule=rule.name, start=match.start(group), end=match.end(group))
            )
    return tuple(sorted(findings, key=lambda item: (item.start, item.end, item.rule)))


def redact_text(
    text: str,
    *,
    known_secrets: Iterable[str] | None = None,
    registry: SecretRegistry | None = None,
) -> str:
    """Mask registered secret values and secret-looking tokens in ``text``."""

    if not text:
        return text

    source = registry if registry is not None else _GLOBAL_REGISTRY
    values: list[str] = list(source.snapshot())
    if known_secrets is not None:
        values.extend(item for item in known_secrets if item)
    redacted = text
    for value in sorted(set(values), key=len, reverse=True):
        redacted = redacted.replace(value, REDACTED_VALUE)

    for rule in _TEXT_RULES:
        redacted = _apply_text_rule(redacted, rule)
    return redacted


def redact_structure(
    value: object,
    *,
    known_secrets: Iterable[str] | None = None,
    registry: SecretRegistry | None = None,
) -> object:
    """Deep-redact mappings and sequences; sensitive keys are masked wholesale."""

    secrets = tuple(known_secrets or ())
    return _redact_structure(value, secrets=secrets, registry=registry, parent_key=None)


def _redact_structure(
    value: object,
    *,
    secrets: tuple[str, ...],
    registry: SecretRegistry | None,
    parent_key: str | None,
) -> object:
    if parent_key is not None and is_sensitive_key(parent_key):
        if value is None or value == "":
            return value
        return REDACTED_VALUE
    if isinstance(value, str):
        return redact_text(value, known_secrets=secrets, registry=registry)
    if isinstance(value, Mapping):
        return {
            str(key): _redact_structure(
                item, secrets=secrets, registry=registry, parent_key=str(key)
            )
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [
            _redact_structure(item, secrets=secrets, registry=registry, parent_key=None)
            for item in value
        ]
    return value


def _apply_text_rule(text: str, rule: _TextRule) -> str:
    if rule.sensitive_group is None:
        return rule.pattern.sub(REDACTED_VALUE, text)

    group = rule.sensitive_group

    def replace(match: re.Match[str]) -> str:
        start = match.start(group) - match.start(0)
        end = match.end(group) - match.start(0)
        whole = match.group(0)
        return whole[:start] + REDACTED_VALUE + whole[end:]

    return rule.pattern.sub(replace, text)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "SecretFinding",
    "SecretRegistry",
    "global_secret_registry",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
