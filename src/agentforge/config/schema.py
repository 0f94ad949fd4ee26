"""
agentforge — configuration schema and validation.

File: src/agentforge/config/schema.py

Purpose
- Built-in defaults for every ``agentforge.toml`` section and the field rules
  the effective config must satisfy after profiles, env and CLI layers merge.

Rules
- Every issue carries the dotted path of the offending field.
- Secrets never live in the config file: a secret-looking key is rejected and
  the operator is pointed at the matching ``*_env`` field instead.
- Profiles (``local``, ``serverless``, ``strict`` and user-defined ones) are
  partial section overlays; ``meta`` cannot be overlaid.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from agentforge.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BUILD_DIR,
    DEFAULT_CI_API_URL,
    DEFAULT_CI_REF,
    DEFAULT_CI_RUNS_PAGE_SIZE,
    DEFAULT_CI_WEB_URL,
    DEFAULT_CI_WORKFLOW,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_JOB_RETENTION_SECONDS,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_SUBAGENTS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_MAX_ATTEMPTS,
    DEFAULT_TEE_CPU_CORES,
    DEFAULT_TEE_MEMORY_MB,
    DEFAULT_TEE_TIMEOUT_SECONDS,
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    KNOWN_PROVIDERS,
)
from agentforge.errors import ConfigurationError
from agentforge.security.redaction import is_sensitive_key

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("local", "serverless", "strict")
CONFIG_REDACTED: Final[str] = "<redacted>"

_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_HTTP_URL = re.compile(r"https?://\S+")
_EMBEDDED_SECRET = "embedded secret values are forbidden; use an *_env key with an env var name"

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("orchestrator", "output_dir"),
    ("orchestrator", "build_dir"),
    ("credentials", "store_path"),
    ("observability", "log_dir"),
)

SECTION_NAMES: Final[tuple[str, ...]] = (
    "meta",
    "orchestrator",
    "ci",
    "tee",
    "subagents",
    "credentials",
    "inference",
    "observability",
)


class MetaConfig(TypedDict):
    schema_version: int


class OrchestratorSection(TypedDict):
    poll_interval_seconds: float
    poll_max_attempts: int
    job_retention_seconds: int
    wait_timeout_seconds: float
    output_dir: str
    build_dir: str
    go_binary: str
    local_build_enabled: bool


class CIConfig(TypedDict):
    provider: Literal["github"]
    owner: str
    repo: str
    workflow: str
    ref: str
    token_env: str
    api_url: str
    web_url: str
    timeout_seconds: float
    runs_page_size: int


class TEEConfig(TypedDict):
    isolation_level: Literal["process", "container", "vm"]
    memory_mb: int
    cpu_cores: float
    timeout_seconds: float
    network_access: bool
    filesystem_access: bool
    container_runtime: str
    vm_runtime: str


class SubagentsConfig(TypedDict):
    max_subagents: int
    python_executable: str
    node_executable: str
    stop_grace_seconds: float


class CredentialsConfig(TypedDict):
    store_path: str
    keychain_service: str


class InferenceConfig(TypedDict):
    default_provider: str
    default_model: str
    timeout_seconds: float
    endpoints: dict[str, str]
    api_key_envs: dict[str, str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    log_to_stderr: bool


class AgentForgeConfig(TypedDict):
    meta: MetaConfig
    orchestrator: OrchestratorSection
    ci: CIConfig
    tee: TEEConfig
    subagents: SubagentsConfig
    credentials: CredentialsConfig
    inference: InferenceConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[AgentForgeConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "orchestrator": {
        "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
        "poll_max_attempts": DEFAULT_POLL_MAX_ATTEMPTS,
        "job_retention_seconds": DEFAULT_JOB_RETENTION_SECONDS,
        "wait_timeout_seconds": DEFAULT_WAIT_TIMEOUT_SECONDS,
        "output_dir": str(DEFAULT_OUTPUT_DIR),
        "build_dir": str(DEFAULT_BUILD_DIR),
        "go_binary": "go",
        "local_build_enabled": True,
    },
    "ci": {
        "provider": "github",
        "owner": "",
        "repo": "",
        "workflow": DEFAULT_CI_WORKFLOW,
        "ref": DEFAULT_CI_REF,
        "token_env": "GITHUB_TOKEN",
        "api_url": DEFAULT_CI_API_URL,
        "web_url": DEFAULT_CI_WEB_URL,
        "timeout_seconds": 30.0,
        "runs_page_size": DEFAULT_CI_RUNS_PAGE_SIZE,
    },
    "tee": {
        "isolation_level": "process",
        "memory_mb": DEFAULT_TEE_MEMORY_MB,
        "cpu_cores": DEFAULT_TEE_CPU_CORES,
        "timeout_seconds": DEFAULT_TEE_TIMEOUT_SECONDS,
        "network_access": True,
        "filesystem_access": False,
        "container_runtime": "",
        "vm_runtime": "",
    },
    "subagents": {
        "max_subagents": DEFAULT_MAX_SUBAGENTS,
        "python_executable": "python3",
        "node_executable": "node",
        "stop_grace_seconds": 2.0,
    },
    "credentials": {
        "store_path": str(DEFAULT_CREDENTIALS_FILE),
        "keychain_service": "agentforge",
    },
    "inference": {
        "default_provider": "openai",
        "default_model": "gpt-4o-mini",
        "timeout_seconds": 60.0,
        "endpoints": {},
        "api_key_envs": {
            "openai": "OPENAI_API_KEY",
            "anthropic": "ANTHROPIC_API_KEY",
            "google": "GOOGLE_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY",
            "cerebras": "CEREBRAS_API_KEY",
            "groq": "GROQ_API_KEY",
        },
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(DEFAULT_LOG_DIR),
        "redact_secrets": True,
        "log_to_stderr": False,
    },
    "profiles": {
        "local": {"orchestrator": {"local_build_enabled": True}},
        "serverless": {"orchestrator": {"local_build_enabled": False}},
        "strict": {
            "tee": {"network_access": False, "filesystem_access": False, "memory_mb": 256},
            "subagents": {"max_subagents": 2},
        },
    },
}


_RuleKind = Literal["str", "text", "path", "env", "url", "bool", "int", "float", "enum", "map"]


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: _RuleKind
    minimum: float | None = None
    maximum: float | None = None
    exclusive: bool = False
    allowed: tuple[str, ...] = ()
    # "map" only: rule kind applied to each value; ``allowed`` lists the keys.
    value_kind: _RuleKind | None = None

    def bound(self, number: float) -> str:
        return str(int(number)) if self.kind == "int" else str(number)


_POSITIVE_FLOAT = _Rule("float", minimum=0.0, exclusive=True)
_PROVIDERS = tuple(sorted(KNOWN_PROVIDERS))

_SECTION_RULES: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _Rule("int", minimum=1)},
    "orchestrator": {
        "poll_interval_seconds": _POSITIVE_FLOAT,
        "poll_max_attempts": _Rule("int", minimum=1),
        "job_retention_seconds": _Rule("int", minimum=1),
        "wait_timeout_seconds": _POSITIVE_FLOAT,
        "output_dir": _Rule("path"),
        "build_dir": _Rule("path"),
        "go_binary": _Rule("str"),
        "local_build_enabled": _Rule("bool"),
    },
    "ci": {
        "provider": _Rule("enum", allowed=("github",)),
        "owner": _Rule("text"),
        "repo": _Rule("text"),
        "workflow": _Rule("str"),
        "ref": _Rule("str"),
        "token_env": _Rule("env"),
        "api_url": _Rule("url"),
        "web_url": _Rule("url"),
        "timeout_seconds": _POSITIVE_FLOAT,
        "runs_page_size": _Rule("int", minimum=1, maximum=100),
    },
    "tee": {
        "isolation_level": _Rule("enum", allowed=("process", "container", "vm")),
        "memory_mb": _Rule("int", minimum=1),
        "cpu_cores": _POSITIVE_FLOAT,
        "timeout_seconds": _POSITIVE_FLOAT,
        "network_access": _Rule("bool"),
        "filesystem_access": _Rule("bool"),
        "container_runtime": _Rule("text"),
        "vm_runtime": _Rule("text"),
    },
    "subagents": {
        "max_subagents": _Rule("int", minimum=1),
        "python_executable": _Rule("str"),
        "node_executable": _Rule("str"),
        "stop_grace_seconds": _POSITIVE_FLOAT,
    },
    "credentials": {
        "store_path": _Rule("path"),
        "keychain_service": _Rule("str"),
    },
    "inference": {
        "default_provider": _Rule("enum", allowed=_PROVIDERS),
        "default_model": _Rule("str"),
        "timeout_seconds": _POSITIVE_FLOAT,
        "endpoints": _Rule("map", allowed=_PROVIDERS, value_kind="url"),
        "api_key_envs": _Rule("map", allowed=_PROVIDERS, value_kind="env"),
    },
    "observability": {
        "log_level": _Rule("enum", allowed=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_dir": _Rule("path"),
        "redact_secrets": _Rule("bool"),
        "log_to_stderr": _Rule("bool"),
    },
}

_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(SECTION_NAMES) - {"meta"}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config, or ``None`` plus every issue found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return not self.issues and self.config is not None


class ConfigValidationError(ConfigurationError):
    """The effective config broke one or more field rules."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.validation_issues = tuple(issues)
        rendered = [str(issue) for issue in self.validation_issues]
        super().__init__("invalid config", issues=rendered or ["unknown validation failure"])


def default_config() -> AgentForgeConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Tell the operator which side has to move when ``meta.schema_version`` differs."""

    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    if found_version < ConfigSchemaVersion:
        direction, remedy = "older", "upgrade agentforge.toml to the current schema"
    else:
        direction, remedy = "newer", "upgrade the agentforge runtime"
    return (
        f"schema version {found_version} is {direction} than supported "
        f"{ConfigSchemaVersion}; {remedy}"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base``. Neither input is modified."""

    merged = {key: _detached(value) for key, value in base.items()}
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _detached(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge ``profiles.<profile>`` over ``config`` and validate the outcome."""

    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)
    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    checker = _Checker()
    normalized = checker.root(config)
    profile = active_profile.strip() if isinstance(active_profile, str) else ""
    if normalized is not None and profile and profile not in normalized.get("profiles", {}):
        checker.fail("profiles", f"profile {profile!r} is not defined")
    if normalized is None or checker.issues:
        return ConfigValidationResult(config=None, issues=tuple(checker.issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy safe for logs and ``agentforge config`` output.

    Secret-named values and every ``*_env`` value are masked: env var names are
    not secrets themselves, but they reveal where the secrets live.
    """

    return _masked(config) if isinstance(config, Mapping) else {}


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    return redact_config(config)


_INVALID: Final = object()


class _Checker:
    """Walks a raw config tree, normalizing values and collecting issues."""

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def fail(self, path: str, message: str) -> object:
        self.issues.append(ConfigValidationIssue(path, message))
        return _INVALID

    def root(self, payload: object) -> dict[str, Any] | None:
        table = self.table(payload, "<root>")
        if table is None:
            return None
        self.keys(table, {*SECTION_NAMES, "profiles"}, "", required=SECTION_NAMES)
        out: dict[str, Any] = {}
        for name in SECTION_NAMES:
            body = self.table(table[name], name) if name in table else None
            if body is not None:
                out[name] = self.section(name, body, name, partial=False)
        version = out.get("meta", {}).get("schema_version")
        if isinstance(version, int) and version != ConfigSchemaVersion:
            self.fail("meta.schema_version", migration_guidance(version))
        profiles = self.table(table["profiles"], "profiles") if "profiles" in table else None
        if profiles is not None:
            out["profiles"] = self.profiles(profiles)
        return out

    def profiles(self, table: dict[str, object]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in sorted(table):
            where = f"profiles.{name}"
            if not _PROFILE_NAME.fullmatch(name):
                self.fail(where, "profile name must match ^[a-z][a-z0-9_-]*$")
                continue
            overlay = self.table(table[name], where)
            if overlay is None:
                continue
            self.keys(overlay, _OVERLAY_SECTIONS, where)
            sections: dict[str, Any] = {}
            for section in sorted(_OVERLAY_SECTIONS & overlay.keys()):
                section_path = f"{where}.{section}"
                body = self.table(overlay[section], section_path)
                if body is not None:
                    sections[section] = self.section(section, body, section_path, partial=True)
            out[name] = sections
        return out

    def section(
        self, name: str, table: dict[str, object], path: str, *, partial: bool
    ) -> dict[str, Any]:
        rules = _SECTION_RULES[name]
        self.keys(table, rules.keys(), path, required=() if partial else rules.keys())
        out: dict[str, Any] = {}
        for key in sorted(rules.keys() & table.keys()):
            value = self.value(rules[key], table[key], f"{path}.{key}")
            if value is not _INVALID:
                out[key] = value
        return out

    def table(self, value: object, path: str) -> dict[str, object] | None:
        if not isinstance(value, Mapping):
            self.fail(path, f"expected object, got {type(value).__name__}")
            return None
        for key in value:
            if not isinstance(key, str):
                self.fail(path, f"object key must be string, got {type(key).__name__}")
        return {key: item for key, item in value.items() if isinstance(key, str)}

    def keys(
        self,
        table: Mapping[str, object],
        allowed: Iterable[str],
        path: str,
        *,
        required: Iterable[str] = (),
    ) -> None:
        for key in sorted(table.keys() - set(allowed)):
            where = f"{path}.{key}" if path else key
            self.fail(where, _EMBEDDED_SECRET if is_sensitive_key(key) else "unknown field")
        for key in sorted(set(required) - table.keys()):
            self.fail(f"{path}.{key}" if path else key, "missing required field")

    def value(self, rule: _Rule, raw: object, path: str) -> object:
        if rule.kind == "map":
            return self._map(rule, raw, path)
        if rule.kind == "bool":
            return raw if isinstance(raw, bool) else self._wrong_type(path, "boolean", raw)
        if rule.kind in ("int", "float"):
            return self._number(rule, raw, path)
        if not isinstance(raw, str):
            return self._wrong_type(path, "string", raw)
        text = raw.strip()
        if rule.kind == "text":
            return text
        if not text:
            return self.fail(path, "must not be empty")
        if rule.kind == "path" and "\x00" in text:
            return self.fail(path, "must not contain NUL bytes")
        if rule.kind == "env" and not _ENV_NAME.fullmatch(text):
            return self.fail(path, "must be an env var name (example: OPENAI_API_KEY)")
        if rule.kind == "url":
            if not _HTTP_URL.fullmatch(text):
                return self.fail(path, "must be an http(s) URL")
            return text.rstrip("/")
        if rule.kind == "enum" and text not in rule.allowed:
            expected = ", ".join(sorted(rule.allowed))
            return self.fail(path, f"invalid value {text!r}; expected one of: {expected}")
        return text

    def _number(self, rule: _Rule, raw: object, path: str) -> object:
        if rule.kind == "int":
            if isinstance(raw, bool) or not isinstance(raw, int):
                return self._wrong_type(path, "integer", raw)
            number: float = raw
        else:
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                return self._wrong_type(path, "number", raw)
            number = float(raw)
        if not math.isfinite(number):
            return self.fail(path, "must be finite")
        if rule.minimum is not None:
            if rule.exclusive and number <= rule.minimum:
                return self.fail(path, f"must be > {rule.bound(rule.minimum)}")
            if not rule.exclusive and number < rule.minimum:
                return self.fail(path, f"must be >= {rule.bound(rule.minimum)}")
        if rule.maximum is not None and number > rule.maximum:
            return self.fail(path, f"must be <= {rule.bound(rule.maximum)}")
        return number

    def _map(self, rule: _Rule, raw: object, path: str) -> object:
        table = self.table(raw, path)
        if table is None:
            return _INVALID
        self.keys(table, rule.allowed, path)
        assert rule.value_kind is not None
        element = _Rule(rule.value_kind)
        entries: dict[str, object] = {}
        for key in sorted(table.keys() & set(rule.allowed)):
            value = self.value(element, table[key], f"{path}.{key}")
            if value is not _INVALID:
                entries[key] = value
        return entries

    def _wrong_type(self, path: str, expected: str, raw: object) -> object:
        return self.fail(path, f"expected {expected}, got {type(raw).__name__}")


def _detached(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _detached(item) for key, item in value.items()}
    return copy.deepcopy(value)


def _masked(node: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            out[key] = _masked(value)
        elif key.lower().endswith("_env") or is_sensitive_key(key):
            out[key] = CONFIG_REDACTED
        elif isinstance(value, (list, tuple)):
            out[key] = [_masked(item) if isinstance(item, Mapping) else item for item in value]
        else:
            out[key] = value
    return out


__all__ = [
    "AgentForgeConfig",
    "BUILTIN_PROFILE_NAMES",
    "CONFIG_REDACTED",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "SECTION_NAMES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
