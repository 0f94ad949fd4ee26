"""
agentforge — runtime config loader.

File: src/agentforge/config/loader.py

Purpose
- Build the effective config from four layers, lowest first: built-in defaults,
  ``agentforge.toml``, ``AGENTFORGE_*`` environment variables, CLI overrides.
- A profile overlay (``--profile`` or ``AGENTFORGE_PROFILE``) sits between the
  file and the environment.

Notes
- Environment variable names are derived from the default config tree:
  ``orchestrator.poll_max_attempts`` is ``AGENTFORGE_ORCHESTRATOR_POLL_MAX_ATTEMPTS``.
  The default value's type decides how the raw string is coerced.
- Relative paths resolve against the directory of the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from agentforge.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)
from agentforge.constants import KNOWN_PROVIDERS
from agentforge.errors import ConfigurationError

DEFAULT_CONFIG_FILE: Final[str] = "agentforge.toml"
ENV_PREFIX: Final[str] = "AGENTFORGE_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ConfigurationError):
    """The config file or an override could not be read or coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    require_ci_token: bool = False,
) -> dict[str, Any]:
    """Return the validated, path-normalized effective config."""

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    source = _config_file(config_path)
    selected = _selected_profile(profile, overrides, env)

    config = assert_valid_config(merge_config(default_config(), _read_toml(source, config_path)))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_layer(config, env))
    config = merge_config(config, _cli_layer(overrides))
    config = assert_valid_config(config, active_profile=selected)

    config = assert_valid_config(
        normalize_paths(config, base_dir=source.parent), active_profile=selected
    )
    if require_ci_token:
        token_env = config["ci"]["token_env"]
        if not env.get(token_env, "").strip():
            raise ConfigLoadError(
                f"missing required secret environment variable value: ci.token_env -> {token_env}"
            )
    return config


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every path field, including those inside profile overlays, against ``base_dir``."""

    result = merge_config({}, config)
    targets = list(PATH_FIELDS)
    profiles = result.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            if isinstance(profiles[name], Mapping):
                targets.extend(("profiles", name, *field) for field in PATH_FIELDS)

    for path in targets:
        parent = _walk(result, path[:-1])
        if isinstance(parent, dict) and isinstance(parent.get(path[-1]), str):
            parent[path[-1]] = _absolute(parent[path[-1]], base_dir)
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy that is safe to print or log."""

    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    """``("ci", "owner")`` -> ``AGENTFORGE_CI_OWNER``."""

    return ENV_PREFIX + "_".join(part.upper() for part in path)


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, requested: str | Path | None) -> dict[str, Any]:
    # Only an explicitly requested file has to exist.
    if not path.exists():
        if requested is not None:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile", env.get(PROFILE_ENV))
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("profile override must be a string")
    return candidate.strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, default in _env_bindings(config):
        raw = env.get(env_name_for_path(path))
        if raw is not None:
            _assign(layer, path, _coerce(raw.strip(), default, path))
    return layer


def _env_bindings(config: Mapping[str, object]) -> Iterator[tuple[tuple[str, ...], object]]:
    """Every overridable scalar path with its current value as the type template."""

    for path, value in _leaves(config):
        if path[0] != "profiles" and isinstance(value, (bool, int, float, str)):
            yield path, value
    # Provider endpoints have no default leaf to derive from.
    endpoints = config.get("inference", {})
    known = endpoints.get("endpoints", {}) if isinstance(endpoints, Mapping) else {}
    for provider in sorted(KNOWN_PROVIDERS):
        if provider not in known:
            yield ("inference", "endpoints", provider), ""


def _leaves(
    node: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _coerce(raw: str, template: object, path: tuple[str, ...]) -> object:
    where = f"{env_name_for_path(path)} -> {'.'.join(path)}"
    if isinstance(template, bool):
        lowered = raw.lower()
        if lowered in _TRUTHY or lowered in _FALSY:
            return lowered in _TRUTHY
        raise ConfigLoadError(f"{where} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(template, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{where} must be an integer") from exc
    if isinstance(template, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{where} must be a number") from exc
    return raw


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    """``{"orchestrator.poll_max_attempts": 30}`` -> nested override mapping."""

    layer: dict[str, Any] = {}
    for dotted in sorted(overrides):
        value = overrides[dotted]
        if dotted == "profile" or value is None:
            continue
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def _assign(tree: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    node = tree
    for part in path[:-1]:
        node = node.setdefault(part, {})
    node[path[-1]] = value


def _walk(tree: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    node: object = tree
    for part in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
