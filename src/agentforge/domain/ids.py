"""
agentforge — identifiers

File: src/agentforge/domain/ids.py

Purpose
- Job ids (``compile-<epoch ms>-<base36>``) correlate a local submission with
  its remote CI run and are embedded verbatim in the run title.
- Subagent, run and TEE ids are prefixed ULIDs so they sort by creation time.
- Agent ids are plain UUIDs; a rebuilt spec never reuses an old artifact id.
"""

from __future__ import annotations

import re
import secrets
import string
import time
import uuid
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = 2**48 - 1

JOB_ID_PREFIX: Final[str] = "compile"
SUBAGENT_ID_PREFIX: Final[str] = "subagent"
RUN_ID_PREFIX: Final[str] = "run"
JOB_ID_SUFFIX_LENGTH: Final[int] = 9

_JOB_SUFFIX_ALPHABET: Final[str] = string.digits + string.ascii_lowercase
_JOB_ID: Final[re.Pattern[str]] = re.compile(r"compile-(?P<ms>\d{10,16})-[0-9a-z]{1,16}")
_SUBAGENT_ID: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,127}")


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """26 Crockford base32 characters: 48-bit millisecond clock, 80 random bits."""

    clock = _checked_timestamp(timestamp_ms)
    entropy = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(entropy) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    number = clock << (8 * ULID_RANDOM_BYTES) | int.from_bytes(entropy, "big")
    digits = []
    for _ in range(ULID_LENGTH):
        number, index = divmod(number, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[index])
    return "".join(reversed(digits))


def generate_job_id(
    *,
    timestamp_ms: int | None = None,
    choice: Callable[[str], str] | None = None,
) -> str:
    pick = choice or secrets.choice
    suffix = "".join(pick(_JOB_SUFFIX_ALPHABET) for _ in range(JOB_ID_SUFFIX_LENGTH))
    return f"{JOB_ID_PREFIX}-{_checked_timestamp(timestamp_ms)}-{suffix}"


def validate_job_id(job_id: str) -> str:
    if not isinstance(job_id, str):
        raise ValueError(f"job id must be a string, got {type(job_id).__name__}")
    if not _JOB_ID.fullmatch(job_id):
        raise ValueError(f"invalid job id {job_id!r}; expected compile-<epoch ms>-<base36>")
    return job_id


def job_id_timestamp_ms(job_id: str) -> int:
    """Submission time embedded in ``job_id``; used to bound the CI run search."""

    matched = _JOB_ID.fullmatch(validate_job_id(job_id))
    assert matched is not None
    return int(matched["ms"])


def generate_subagent_id(*, timestamp_ms: int | None = None) -> str:
    return f"{SUBAGENT_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms).lower()}"


def validate_subagent_id(subagent_id: str) -> str:
    if isinstance(subagent_id, str) and _SUBAGENT_ID.fullmatch(subagent_id):
        return subagent_id
    raise ValueError(f"invalid subagent id {subagent_id!r}; use letters, digits, '.', '_' or '-'")


def generate_run_id(*, timestamp_ms: int | None = None) -> str:
    return f"{RUN_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms)}"


def generate_agent_id() -> str:
    return str(uuid.uuid4())


def _checked_timestamp(timestamp_ms: int | None) -> int:
    if timestamp_ms is None:
        return time.time_ns() // 1_000_000
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(timestamp_ms).__name__}")
    if not 0 <= timestamp_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {timestamp_ms}"
        )
    return timestamp_ms


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "JOB_ID_PREFIX",
    "JOB_ID_SUFFIX_LENGTH",
    "RUN_ID_PREFIX",
    "SUBAGENT_ID_PREFIX",
    "ULID_LENGTH",
    "generate_agent_id",
    "generate_job_id",
    "generate_run_id",
    "generate_subagent_id",
    "generate_ulid",
    "job_id_timestamp_ms",
    "validate_job_id",
    "validate_subagent_id",
]
