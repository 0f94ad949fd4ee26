"""Capability checks for isolate network egress and host filesystem crossings.

The process backend cannot firewall a child, so these checks are applied at the
points where agentforge itself moves data across the isolate boundary: file copies
in and out of a TEE, and outbound calls made on behalf of guest code.
"""

from __future__ import annotations

import ipaddress
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from urllib.parse import urlsplit

from agentforge.domain.models import TEEPolicy, utc_now
from agentforge.sandbox.policy import TEECapabilityError
from agentforge.utils.fs import PathLike, is_within

DecisionLogger = Callable[["NetworkDecision"], None]


class NetworkMode(StrEnum):
    DENY = "deny"
    ALLOWLIST = "allowlist"
    PERMISSIVE = "permissive"


class CopyDirection(StrEnum):
    INTO_TEE = "in"
    OUT_OF_TEE = "out"


@dataclass(frozen=True, slots=True)
class NetworkDecision:
    """Outcome of one egress check."""

    mode: NetworkMode
    target: str
    host: str
    port: int | None
    allowed: bool
    reason: str
    matched_rule: str | None = None
    decided_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class _AllowRule:
    raw: str
    exact_host: str | None = None
    suffix: str | None = None
    network: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None


class CapabilityGate:
    """Evaluates network and filesystem requests against one ``TEEPolicy``.

    With ``network_access`` off every target is denied. With it on, an empty
    allowlist is permissive and a non-empty one restricts egress to matching hosts
    (exact host, ``*.suffix`` wildcard, IP literal or CIDR block).

    Paths inside the isolate must always resolve within ``working_dir``. The host
    side of a copy is unrestricted when ``filesystem_access`` is on; otherwise it
    must sit under one of ``allowed_roots``.
    """

    def __init__(
        self,
        policy: TEEPolicy,
        working_dir: PathLike,
        *,
        allowed_roots: Iterable[PathLike] = (),
        network_allowlist: Iterable[str] = (),
        decision_logger: DecisionLogger | None = None,
    ) -> None:
        self._policy = policy
        self._working_dir = Path(working_dir)
        self._allowed_roots = tuple(Path(root) for root in allowed_roots)
        self._rules = tuple(_parse_allow_rule(item) for item in network_allowlist)
        self._decision_logger = decision_logger

    @property
    def network_mode(self) -> NetworkMode:
        if not self._policy.network_access:
            return NetworkMode.DENY
        return NetworkMode.ALLOWLIST if self._rules else NetworkMode.PERMISSIVE

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    def check_network(self, target: str) -> NetworkDecision:
        host, port = _parse_target(target)
        mode = self.network_mode
        matched = None if mode is NetworkMode.DENY else self._match_rule(host)
        if mode is NetworkMode.DENY:
            allowed, reason = False, "network access disabled by TEE policy"
        elif mode is NetworkMode.ALLOWLIST:
            allowed = matched is not None
            reason = "allowed by allowlist rule" if allowed else "host is not in allowlist"
        else:
            allowed, reason = True, "network access enabled by TEE policy"
        decision = NetworkDecision(
            mode=mode,
            target=target,
            host=host,
            port=port,
            allowed=allowed,
            reason=reason,
            matched_rule=matched,
        )
        if self._decision_logger is not None:
            self._decision_logger(decision)
        return decision

    def enforce_network(self, target: str) -> NetworkDecision:
        decision = self.check_network(target)
        if not decision.allowed:
            raise TEECapabilityError(
                f"network request to {decision.host!r} denied: {decision.reason}"
            )
        return decision

    def isolate_path(self, relative: PathLike) -> Path:
        """Resolve a path given relative to the isolate root, refusing escapes."""

        candidate = Path(relative)
        if candidate.is_absolute():
            raise TEECapabilityError(f"isolate paths must be relative: {candidate}")
        resolved = Path(os.path.normpath(self._working_dir / candidate))
        # Lexical check first, then symlinks on the deepest existing ancestor.
        existing = next((item for item in (resolved, *resolved.parents) if item.exists()), None)
        if (
            resolved != self._working_dir and self._working_dir not in resolved.parents
        ) or (existing is None or not is_within(existing, self._working_dir)):
            raise TEECapabilityError(f"path escapes the isolate working directory: {candidate}")
        return resolved

    def check_host_path(self, path: PathLike, *, direction: CopyDirection) -> Path:
        host_path = Path(path).expanduser()
        if self._policy.filesystem_access:
            return host_path
        if any(is_within(host_path, root) for root in self._allowed_roots):
            return host_path
        verb = "read from" if direction is CopyDirection.INTO_TEE else "write to"
        raise TEECapabilityError(
            f"TEE policy forbids host filesystem access; cannot {verb} {host_path}"
        )

    def _match_rule(self, host: str) -> str | None:
        try:
            host_ip = ipaddress.ip_address(host)
        except ValueError:
            host_ip = None
        for rule in self._rules:
            if rule.exact_host is not None and host == rule.exact_host:
                return rule.raw
            if rule.suffix is not None and (
                host == rule.suffix or host.endswith(f".{rule.suffix}")
            ):
                return rule.raw
            if rule.network is not None and host_ip is not None and host_ip in rule.network:
                return rule.raw
        return None


def _parse_target(target: str) -> tuple[str, int | None]:
    text = target.strip()
    if not text:
        raise ValueError("network target must not be empty")
    parsed = urlsplit(text if "://" in text else f"//{text}")
    host = (parsed.hostname or text).lower()
    try:
        port = parsed.port
    except ValueError as exc:
        raise ValueError(f"invalid port in network target {target!r}") from exc
    return host, port


def _parse_allow_rule(raw_rule: str) -> _AllowRule:
    normalized = raw_rule.strip().lower()
    if not normalized:
        raise ValueError("allowlist rules must not be empty")
    if normalized.startswith("*."):
        if len(normalized) == 2:
            raise ValueError("allowlist wildcard rule must include a suffix")
        return _AllowRule(raw=normalized, suffix=normalized[2:])
    try:
        return _AllowRule(raw=normalized, network=ipaddress.ip_network(normalized, strict=False))
    except ValueError:
        return _AllowRule(raw=normalized, exact_host=normalized)


__all__ = [
    "CapabilityGate",
    "CopyDirection",
    "DecisionLogger",
    "NetworkDecision",
    "NetworkMode",
]
