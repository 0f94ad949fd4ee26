"""Dataclass domain models with strict validation and JSON-shaped serialization."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar

from agentforge.constants import (
    AGENT_URN_PREFIX,
    DEFAULT_TEE_CPU_CORES,
    DEFAULT_TEE_MEMORY_MB,
    DEFAULT_TEE_TIMEOUT_SECONDS,
    KNOWN_PROVIDERS,
)
from agentforge.domain import ids as domain_ids
from agentforge.errors import ConfigurationError, JobTransitionError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)
TItem = TypeVar("TItem")

_MAX_TEXT = 8192
_MAX_CONTENT = 1024 * 1024
_MAX_LOG_LINES = 2000

_SEMVER_RE = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(?:[-+][0-9A-Za-z.-]+)?$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,127}$")
_CREDENTIAL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,127}$")
_PARAMETER_TYPES = frozenset({"string", "number", "integer", "boolean", "object", "array"})


class BuildTarget(StrEnum):
    """Output form of a compiled agent."""

    SANDBOXED_BYTECODE = "wasm"
    NATIVE_PLUGIN = "go"

    @classmethod
    def parse(cls, value: object) -> BuildTarget:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            alias = _BUILD_TARGET_ALIASES.get(value.strip().lower())
            if alias is not None:
                return alias
        allowed = "wasm, go, sandboxed-bytecode, native-plugin"
        raise ConfigurationError(f"invalid build target {value!r}; expected one of: {allowed}")


_BUILD_TARGET_ALIASES: dict[str, BuildTarget] = {
    "wasm": BuildTarget.SANDBOXED_BYTECODE,
    "sandboxed-bytecode": BuildTarget.SANDBOXED_BYTECODE,
    "go": BuildTarget.NATIVE_PLUGIN,
    "native-plugin": BuildTarget.NATIVE_PLUGIN,
}


class Platform(StrEnum):
    LINUX = "linux"
    DARWIN = "darwin"
    WINDOWS = "windows"

    @property
    def plugin_extension(self) -> str:
        return {"linux": ".so", "darwin": ".dylib", "windows": ".dll"}[self.value]


class AgentType(StrEnum):
    LLM = "llm"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    LOOP = "loop"


class IsolationLevel(StrEnum):
    PROCESS = "process"
    CONTAINER = "container"
    VM = "vm"


class ResourceType(StrEnum):
    TEXT = "text"
    BINARY = "binary"
    JSON = "json"


class CredentialType(StrEnum):
    API_KEY = "api-key"
    USERNAME = "username"
    PASSWORD = "password"
    TOKEN = "token"
    CERTIFICATE = "certificate"
    CUSTOM = "custom"


class CredentialSource(StrEnum):
    ENV = "env"
    FILE = "file"
    KEYCHAIN = "keychain"
    CONFIG = "config"
    PROMPT = "prompt"


class BuildMethod(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class JobStatus(StrEnum):
    QUEUED = "queued"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class FailureKind(StrEnum):
    DISPATCH = "dispatch"
    BUILD = "build"
    TIMEOUT = "timeout"
    STATUS_QUERY = "status_query"


# pending means "remote run not located yet"; it may resolve to in_progress but a
# located run never goes back to pending.
_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset(
        {JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.PENDING: frozenset(
        {JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.IN_PROGRESS: frozenset(
        {JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def _fail(path: str, message: str) -> NoReturn:
    raise ConfigurationError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_number(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    return parsed


def _as_optional_number(value: object, path: str) -> float | None:
    if value is None:
        return None
    return _as_number(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(
        _as_str(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path))
    )


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > 16:
        _fail(path, "JSON value nests too deeply")
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        return {
            _as_str(key, f"{path}.<key>"): _as_json_value(item, f"{path}.{key}", depth=depth + 1)
            for key, item in value.items()
        }
    _fail(path, f"value of type {type(value).__name__} is not JSON-compatible")


def _coerce_enum_lenient(enum_type: type[TEnum], value: object) -> TEnum | object:
    # Unknown values are kept verbatim so policy validation can report them.
    if isinstance(value, str):
        try:
            return enum_type(value.strip().lower())
        except ValueError:
            return value
    return value


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class ToolParameter:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: JSONValue = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or _IDENTIFIER_RE.fullmatch(self.name) is None:
            _fail("ToolParameter.name", f"invalid parameter name {self.name!r}")
        if self.type not in _PARAMETER_TYPES:
            allowed = ", ".join(sorted(_PARAMETER_TYPES))
            _fail(f"ToolParameter[{self.name}].type", f"expected one of: {allowed}")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
            "default": self.default,
        }

    @classmethod
    def from_dict(cls, data: object, path: str = "ToolParameter") -> ToolParameter:
        parsed = _expect_object(
            data,
            path,
            required={"name"},
            optional={"type", "description", "required", "default"},
        )
        return cls(
            name=_as_str(parsed["name"], f"{path}.name"),
            type=_as_str(parsed.get("type", "string"), f"{path}.type").lower(),
            description=_as_str(parsed.get("description", ""), f"{path}.description", min_len=0),
            required=_as_bool(parsed.get("required", False), f"{path}.required"),
            default=_as_json_value(parsed.get("default"), f"{path}.default"),
        )


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """A tool exposed by the agent.

    ``implementation`` names a pre-registered callable (``module:function``); the
    runtime registry resolves it against an allowlist and never evaluates source.
    """

    name: str
    description: str = ""
    parameters: tuple[ToolParameter, ...] = ()
    return_type: str = "string"
    implementation: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or _IDENTIFIER_RE.fullmatch(self.name) is None:
            _fail("ToolDefinition.name", f"invalid tool name {self.name!r}")
        object.__setattr__(self, "parameters", tuple(self.parameters))
        seen: set[str] = set()
        for parameter in self.parameters:
            if parameter.name in seen:
                _fail(f"ToolDefinition[{self.name}]", f"duplicate parameter {parameter.name!r}")
            seen.add(parameter.name)
        if self.implementation is not None and ":" not in self.implementation:
            _fail(
                f"ToolDefinition[{self.name}].implementation",
                "expected a 'module:function' reference",
            )

    @property
    def required_parameters(self) -> tuple[str, ...]:
        return tuple(item.name for item in self.parameters if item.required)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": [item.to_dict() for item in self.parameters],
            "return_type": self.return_type,
            "implementation": self.implementation,
        }

    @classmethod
    def from_dict(cls, data: object, path: str = "ToolDefinition") -> ToolDefinition:
        parsed = _expect_object(
            data,
            path,
            required={"name"},
            optional={"description", "parameters", "return_type", "implementation"},
        )
        parameters = tuple(
            ToolParameter.from_dict(item, f"{path}.parameters[{index}]")
            for index, item in enumerate(
                _as_sequence(parsed.get("parameters", []), f"{path}.parameters")
            )
        )
        return cls(
            name=_as_str(parsed["name"], f"{path}.name"),
            description=_as_str(parsed.get("description", ""), f"{path}.description", min_len=0),
            parameters=parameters,
            return_type=_as_str(parsed.get("return_type", "string"), f"{path}.return_type"),
            implementation=_as_optional_str(
                parsed.get("implementation"), f"{path}.implementation"
            ),
        )


@dataclass(frozen=True, slots=True)
class ResourceDefinition:
    name: str
    type: ResourceType = ResourceType.TEXT
    content: str = ""
    embedded: bool = True

    def __post_init__(self) -> None:
        _as_str(self.name, "ResourceDefinition.name")
        object.__setattr__(
            self, "type", _as_enum(ResourceType, self.type, f"ResourceDefinition[{self.name}].type")
        )
        if len(self.content) > _MAX_CONTENT:
            _fail(f"ResourceDefinition[{self.name}].content", f"must be <= {_MAX_CONTENT} chars")
        if self.type is ResourceType.JSON and self.content:
            try:
                json.loads(self.content)
            except json.JSONDecodeError as exc:
                _fail(f"ResourceDefinition[{self.name}].content", f"invalid JSON: {exc}")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "type": self.type.value,
            "content": self.content,
            "embedded": self.embedded,
        }

    @classmethod
    def from_dict(cls, data: object, path: str = "ResourceDefinition") -> ResourceDefinition:
        parsed = _expect_object(
            data, path, required={"name"}, optional={"type", "content", "embedded"}
        )
        return cls(
            name=_as_str(parsed["name"], f"{path}.name"),
            type=_as_enum(ResourceType, parsed.get("type", "text"), f"{path}.type"),
            content=_as_str(
                parsed.get("content", ""), f"{path}.content", min_len=0, max_len=_MAX_CONTENT,
                strip=False,
            ),
            embedded=_as_bool(parsed.get("embedded", True), f"{path}.embedded"),
        )


@dataclass(frozen=True, slots=True)
class PromptDefinition:
    name: str
    content: str
    variables: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_str(self.name, "PromptDefinition.name")
        object.__setattr__(self, "variables", tuple(self.variables))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"name": self.name, "content": self.content, "variables": list(self.variables)}

    @classmethod
    def from_dict(cls, data: object, path: str = "PromptDefinition") -> PromptDefinition:
        parsed = _expect_object(data, path, required={"name", "content"}, optional={"variables"})
        return cls(
            name=_as_str(parsed["name"], f"{path}.name"),
            content=_as_str(
                parsed["content"], f"{path}.content", min_len=0, max_len=_MAX_CONTENT, strip=False
            ),
            variables=_as_str_tuple(parsed.get("variables", []), f"{path}.variables"),
        )


@dataclass(frozen=True, slots=True)
class ModelProviderSelection:
    """Inference provider chosen for the agent; secrets are referenced by credential name."""

    provider: str
    model: str
    endpoint: str | None = None
    credential_name: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None

    def __post_init__(self) -> None:
        provider = _as_str(self.provider, "ModelProviderSelection.provider").lower()
        if provider not in KNOWN_PROVIDERS:
            allowed = ", ".join(sorted(KNOWN_PROVIDERS))
            _fail("ModelProviderSelection.provider", f"unknown provider {provider!r} ({allowed})")
        object.__setattr__(self, "provider", provider)
        _as_str(self.model, "ModelProviderSelection.model")
        if provider == "custom" and not self.endpoint:
            _fail("ModelProviderSelection.endpoint", "custom provider requires an endpoint")
        if self.max_tokens is not None:
            _as_int(self.max_tokens, "ModelProviderSelection.max_tokens", minimum=1)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "provider": self.provider,
            "model": self.model,
            "endpoint": self.endpoint,
            "credential_name": self.credential_name,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }

    @classmethod
    def from_dict(
        cls, data: object, path: str = "ModelProviderSelection"
    ) -> ModelProviderSelection:
        parsed = _expect_object(
            data,
            path,
            required={"provider", "model"},
            optional={"endpoint", "credential_name", "temperature", "max_tokens", "top_p"},
        )
        max_tokens = parsed.get("max_tokens")
        return cls(
            provider=_as_str(parsed["provider"], f"{path}.provider"),
            model=_as_str(parsed["model"], f"{path}.model"),
            endpoint=_as_optional_str(parsed.get("endpoint"), f"{path}.endpoint"),
            credential_name=_as_optional_str(
                parsed.get("credential_name"), f"{path}.credential_name"
            ),
            temperature=_as_optional_number(parsed.get("temperature"), f"{path}.temperature"),
            max_tokens=None if max_tokens is None else _as_int(max_tokens, f"{path}.max_tokens"),
            top_p=_as_optional_number(parsed.get("top_p"), f"{path}.top_p"),
        )


@dataclass(frozen=True, slots=True)
class ResourceCeiling:
    """Resource ceilings for one isolate.

    Construction only checks types; positivity is reported by
    :meth:`TEEPolicy.issues` so invalid ceilings can be described, not just refused.
    """

    memory_mb: int = DEFAULT_TEE_MEMORY_MB
    cpu_cores: float = DEFAULT_TEE_CPU_CORES
    timeout_seconds: float = DEFAULT_TEE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        _as_number(self.memory_mb, "ResourceCeiling.memory_mb")
        _as_number(self.cpu_cores, "ResourceCeiling.cpu_cores")
        _as_number(self.timeout_seconds, "ResourceCeiling.timeout_seconds")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "memory_mb": self.memory_mb,
            "cpu_cores": self.cpu_cores,
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: object, path: str = "ResourceCeiling") -> ResourceCeiling:
        parsed = _expect_object(
            data, path, required=set(), optional={"memory_mb", "cpu_cores", "timeout_seconds"}
        )
        memory = parsed.get("memory_mb", DEFAULT_TEE_MEMORY_MB)
        return cls(
            memory_mb=int(_as_number(memory, f"{path}.memory_mb")),
            cpu_cores=_as_number(
                parsed.get("cpu_cores", DEFAULT_TEE_CPU_CORES), f"{path}.cpu_cores"
            ),
            timeout_seconds=_as_number(
                parsed.get("timeout_seconds", DEFAULT_TEE_TIMEOUT_SECONDS),
                f"{path}.timeout_seconds",
            ),
        )


@dataclass(frozen=True, slots=True)
class TEEPolicy:
    isolation_level: IsolationLevel = IsolationLevel.PROCESS
    resources: ResourceCeiling = field(default_factory=ResourceCeiling)
    network_access: bool = True
    filesystem_access: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "isolation_level",
            _coerce_enum_lenient(IsolationLevel, self.isolation_level),
        )

    def issues(self) -> tuple[str, ...]:
        """Return every policy problem; an empty tuple means the policy is usable."""

        found: list[str] = []
        if not isinstance(self.isolation_level, IsolationLevel):
            allowed = ", ".join(item.value for item in IsolationLevel)
            found.append(
                f"isolation_level: unknown level {self.isolation_level!r} (expected {allowed})"
            )
        limits = self.resources
        if not limits.memory_mb > 0:
            found.append(f"resources.memory_mb: must be > 0, got {limits.memory_mb}")
        if not limits.cpu_cores > 0:
            found.append(f"resources.cpu_cores: must be > 0, got {limits.cpu_cores}")
        if not limits.timeout_seconds > 0:
            found.append(f"resources.timeout_seconds: must be > 0, got {limits.timeout_seconds}")
        return tuple(found)

    def to_dict(self) -> dict[str, JSONValue]:
        level = self.isolation_level
        return {
            "isolation_level": level.value if isinstance(level, IsolationLevel) else str(level),
            "resources": self.resources.to_dict(),
            "network_access": self.network_access,
            "filesystem_access": self.filesystem_access,
        }

    @classmethod
    def from_dict(cls, data: object, path: str = "TEEPolicy") -> TEEPolicy:
        parsed = _expect_object(
            data,
            path,
            required=set(),
            optional={"isolation_level", "resources", "network_access", "filesystem_access"},
        )
        return cls(
            isolation_level=_as_enum(
                IsolationLevel, parsed.get("isolation_level", "process"), f"{path}.isolation_level"
            ),
            resources=ResourceCeiling.from_dict(parsed.get("resources", {}), f"{path}.resources"),
            network_access=_as_bool(parsed.get("network_access", True), f"{path}.network_access"),
            filesystem_access=_as_bool(
                parsed.get("filesystem_access", False), f"{path}.filesystem_access"
            ),
        )


@dataclass(frozen=True, slots=True)
class Credential:
    """A named secret declaration; ``value`` exists only inside the credential store.

    ``reference`` is the env var name, file path or keychain item. For the
    ``config`` source it carries the inline value, so it is blanked whenever the
    credential is serialized.
    """

    name: str
    type: CredentialType = CredentialType.API_KEY
    source: CredentialSource = CredentialSource.ENV
    reference: str = ""
    description: str = ""
    optional: bool = False
    value: str | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or _CREDENTIAL_NAME_RE.fullmatch(self.name) is None:
            _fail("Credential.name", f"invalid credential name {self.name!r}")
        object.__setattr__(
            self, "type", _as_enum(CredentialType, self.type, f"Credential[{self.name}].type")
        )
        object.__setattr__(
            self,
            "source",
            _as_enum(CredentialSource, self.source, f"Credential[{self.name}].source"),
        )
        if self.source is not CredentialSource.PROMPT and not self.reference:
            _fail(
                f"Credential[{self.name}].reference",
                f"source {self.source.value!r} requires a reference",
            )

    @property
    def is_resolved(self) -> bool:
        return bool(self.value)

    def to_dict(self) -> dict[str, JSONValue]:
        """Metadata only; the value and any inline secret are always blank."""

        reference = "" if self.source is CredentialSource.CONFIG else self.reference
        return {
            "name": self.name,
            "type": self.type.value,
            "source": self.source.value,
            "reference": reference,
            "description": self.description,
            "optional": self.optional,
            "value": "",
        }

    @classmethod
    def from_dict(cls, data: object, path: str = "Credential") -> Credential:
        parsed = _expect_object(
            data,
            path,
            required={"name", "type", "source"},
            optional={"reference", "description", "optional", "value"},
        )
        if parsed.get("value"):
            _fail(f"{path}.value", "serialized credentials must not carry values")
        source = _as_enum(CredentialSource, parsed["source"], f"{path}.source")
        reference = _as_str(parsed.get("reference", ""), f"{path}.reference", min_len=0)
        if source is CredentialSource.CONFIG and not reference:
            # Inline values are never persisted; the declaration survives as a prompt.
            source = CredentialSource.PROMPT
        return cls(
            name=_as_str(parsed["name"], f"{path}.name"),
            type=_as_enum(CredentialType, parsed["type"], f"{path}.type"),
            source=source,
            reference=reference,
            description=_as_str(parsed.get("description", ""), f"{path}.description", min_len=0),
            optional=_as_bool(parsed.get("optional", False), f"{path}.optional"),
        )


@dataclass(frozen=True, slots=True)
class AgentBuildSpec:
    """Immutable description of one agent build; a rebuild always makes a new spec."""

    agent_id: str
    name: str
    version: str
    model_provider: ModelProviderSelection
    description: str = ""
    agent_type: AgentType = AgentType.LLM
    tools: tuple[ToolDefinition, ...] = ()
    resources: tuple[ResourceDefinition, ...] = ()
    prompts: tuple[PromptDefinition, ...] = ()
    tee_policy: TEEPolicy = field(default_factory=TEEPolicy)
    build_target: BuildTarget = BuildTarget.SANDBOXED_BYTECODE
    platform: Platform = Platform.LINUX
    python_dependencies: tuple[str, ...] = ()
    subagent_capabilities: bool = False
    credentials: tuple[Credential, ...] = ()

    def __post_init__(self) -> None:
        _as_str(self.agent_id, "AgentBuildSpec.agent_id")
        _as_str(self.name, "AgentBuildSpec.name")
        if _SEMVER_RE.fullmatch(self.version or "") is None:
            _fail("AgentBuildSpec.version", f"expected MAJOR.MINOR.PATCH, got {self.version!r}")
        object.__setattr__(
            self, "agent_type", _as_enum(AgentType, self.agent_type, "AgentBuildSpec.agent_type")
        )
        object.__setattr__(self, "build_target", BuildTarget.parse(self.build_target))
        object.__setattr__(
            self, "platform", _as_enum(Platform, self.platform, "AgentBuildSpec.platform")
        )
        for name in ("tools", "resources", "prompts", "python_dependencies", "credentials"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        _reject_duplicates("AgentBuildSpec.tools", [tool.name for tool in self.tools])
        _reject_duplicates("AgentBuildSpec.resources", [item.name for item in self.resources])
        _reject_duplicates("AgentBuildSpec.prompts", [item.name for item in self.prompts])
        _reject_duplicates("AgentBuildSpec.credentials", [item.name for item in self.credentials])
        if any(item.value for item in self.credentials):
            _fail("AgentBuildSpec.credentials", "build specs declare credentials, never values")

    @property
    def slug(self) -> str:
        """Last segment of a ``urn:agent:<ns>:<slug>`` name, or the name itself."""

        if self.name.startswith(AGENT_URN_PREFIX):
            return self.name.rsplit(":", 1)[-1]
        return self.name

    def validate(self) -> None:
        """Raise ``ConfigurationError`` listing every problem that blocks a build."""

        issues = [f"tee_policy.{issue}" for issue in self.tee_policy.issues()]
        provider = self.model_provider
        if provider.credential_name and provider.credential_name not in {
            item.name for item in self.credentials
        }:
            issues.append(
                f"model_provider.credential_name: {provider.credential_name!r} is not declared"
            )
        if issues:
            raise ConfigurationError(f"agent spec {self.name!r} is invalid", issues=issues)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "agent_type": self.agent_type.value,
            "tools": [item.to_dict() for item in self.tools],
            "resources": [item.to_dict() for item in self.resources],
            "prompts": [item.to_dict() for item in self.prompts],
            "model_provider": self.model_provider.to_dict(),
            "tee_policy": self.tee_policy.to_dict(),
            "build_target": self.build_target.value,
            "platform": self.platform.value,
            "python_dependencies": list(self.python_dependencies),
            "subagent_capabilities": self.subagent_capabilities,
            "credentials": [item.to_dict() for item in self.credentials],
        }

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AgentBuildSpec:
        path = "AgentBuildSpec"
        parsed = _expect_object(
            data,
            path,
            required={"name", "version", "model_provider"},
            optional={
                "agent_id",
                "description",
                "agent_type",
                "tools",
                "resources",
                "prompts",
                "tee_policy",
                "build_target",
                "platform",
                "python_dependencies",
                "subagent_capabilities",
                "credentials",
            },
        )
        spec = cls(
            agent_id=_as_str(
                parsed.get("agent_id") or domain_ids.generate_agent_id(), f"{path}.agent_id"
            ),
            name=_as_str(parsed["name"], f"{path}.name"),
            description=_as_str(parsed.get("description", ""), f"{path}.description", min_len=0),
            version=_as_str(parsed["version"], f"{path}.version"),
            agent_type=_as_enum(AgentType, parsed.get("agent_type", "llm"), f"{path}.agent_type"),
            tools=_parse_items(parsed.get("tools", []), f"{path}.tools", ToolDefinition.from_dict),
            resources=_parse_items(
                parsed.get("resources", []), f"{path}.resources", ResourceDefinition.from_dict
            ),
            prompts=_parse_items(
                parsed.get("prompts", []), f"{path}.prompts", PromptDefinition.from_dict
            ),
            model_provider=ModelProviderSelection.from_dict(
                parsed["model_provider"], f"{path}.model_provider"
            ),
            tee_policy=TEEPolicy.from_dict(parsed.get("tee_policy", {}), f"{path}.tee_policy"),
            build_target=BuildTarget.parse(parsed.get("build_target", "wasm")),
            platform=_as_enum(Platform, parsed.get("platform", "linux"), f"{path}.platform"),
            python_dependencies=_as_str_tuple(
                parsed.get("python_dependencies", []), f"{path}.python_dependencies"
            ),
            subagent_capabilities=_as_bool(
                parsed.get("subagent_capabilities", False), f"{path}.subagent_capabilities"
            ),
            credentials=_parse_items(
                parsed.get("credentials", []), f"{path}.credentials", Credential.from_dict
            ),
        )
        spec.validate()
        return spec

    @classmethod
    def from_json(cls, raw: str) -> AgentBuildSpec:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"AgentBuildSpec: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError("AgentBuildSpec: JSON root must be an object")
        return cls.from_dict(parsed)


@dataclass(slots=True)
class CompilationJob:
    """Mutable job record owned by the orchestrator's job table.

    Every status change goes through :meth:`transition`, which refuses to leave a
    terminal state or to move a located remote run back to ``pending``.
    """

    job_id: str
    spec: AgentBuildSpec
    method: BuildMethod = BuildMethod.LOCAL
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    logs: list[str] = field(default_factory=list)
    artifact_url: str | None = None
    raw_artifact_url: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    run_id: int | None = None
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    history: list[JobStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        domain_ids.validate_job_id(self.job_id)
        if not self.history:
            self.history.append(self.status)

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in _ALLOWED_TRANSITIONS[self.status]

    def transition(
        self,
        status: JobStatus,
        *,
        progress: int | None = None,
        message: str | None = None,
    ) -> None:
        if not self.can_transition_to(status):
            raise JobTransitionError(self.job_id, self.status.value, status.value)
        if status is not self.status:
            self.history.append(status)
        self.status = status
        if progress is not None:
            self.progress = max(self.progress, min(100, max(0, progress)))
        if message:
            self.append_log(message)
        self.updated_at = utc_now()
        if status.is_terminal:
            self.finished_at = self.updated_at

    def complete(
        self, artifact_url: str | None = None, *, raw_artifact_url: str | None = None
    ) -> None:
        """A remote run whose artifact cannot be matched completes with no locator."""

        if artifact_url is not None and not artifact_url.strip():
            raise ValueError("artifact locator must not be blank")
        self.transition(JobStatus.COMPLETED, progress=100)
        self.artifact_url = artifact_url
        self.raw_artifact_url = raw_artifact_url

    def fail(self, kind: FailureKind, error: str) -> None:
        self.transition(JobStatus.FAILED)
        self.failure_kind = kind
        self.error = error
        self.append_log(f"error: {error}")

    def append_log(self, line: str) -> None:
        self.logs.append(line)
        if len(self.logs) > _MAX_LOG_LINES:
            del self.logs[: len(self.logs) - _MAX_LOG_LINES]

    def to_status_dict(self) -> dict[str, JSONValue]:
        return {
            "job_id": self.job_id,
            "agent_name": self.spec.name,
            "method": self.method.value,
            "status": self.status.value,
            "progress": self.progress,
            "logs": list(self.logs),
            "artifact_url": self.artifact_url,
            "raw_artifact_url": self.raw_artifact_url,
            "error": self.error,
            "failure_kind": None if self.failure_kind is None else self.failure_kind.value,
            "run_id": self.run_id,
            "started_at": _iso(self.started_at),
            "updated_at": _iso(self.updated_at),
            "finished_at": _iso(self.finished_at),
        }


def _reject_duplicates(path: str, names: list[str]) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            _fail(path, f"duplicate name {name!r}")
        seen.add(name)


def _parse_items(
    value: object, path: str, parser: Callable[[object, str], TItem]
) -> tuple[TItem, ...]:
    return tuple(
        parser(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path))
    )


__all__ = [
    "AgentBuildSpec",
    "AgentType",
    "BuildMethod",
    "BuildTarget",
    "CompilationJob",
    "Credential",
    "CredentialSource",
    "CredentialType",
    "FailureKind",
    "IsolationLevel",
    "JSONValue",
    "JobStatus",
    "ModelProviderSelection",
    "Platform",
    "PromptDefinition",
    "ResourceCeiling",
    "ResourceDefinition",
    "ResourceType",
    "TEEPolicy",
    "ToolDefinition",
    "ToolParameter",
    "utc_now",
]
