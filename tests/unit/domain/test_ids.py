"""Unit tests for job, subagent and run identifier helpers."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from agentforge.domain import ids


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_charset_and_length() -> None:
    value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)

    assert len(value) == ids.ULID_LENGTH
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in value)


def test_generate_ulid_rejects_short_random_source() -> None:
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(randbytes=lambda size: b"\x00" * (size - 1))


def test_generate_ulid_rejects_out_of_range_timestamp() -> None:
    with pytest.raises(ValueError, match="out of range"):
        ids.generate_ulid(timestamp_ms=-1)


def test_job_ids_are_unique_across_many_submissions() -> None:
    generated = {ids.generate_job_id(timestamp_ms=1_700_000_000_000) for _ in range(5_000)}
    assert len(generated) == 5_000


def test_job_id_embeds_timestamp() -> None:
    job_id = ids.generate_job_id(timestamp_ms=1_700_000_000_123, choice=lambda _: "a")

    assert job_id == "compile-1700000000123-aaaaaaaaa"
    assert ids.job_id_timestamp_ms(job_id) == 1_700_000_000_123


@pytest.mark.parametrize(
    "candidate",
    ["", "compile-", "compile-123-abc", "build-1700000000000-abc", "compile-1700000000000-ABC"],
)
def test_validate_job_id_rejects_malformed(candidate: str) -> None:
    with pytest.raises(ValueError, match="invalid job id"):
        ids.validate_job_id(candidate)


@given(timestamp=st.integers(min_value=1_000_000_000, max_value=9_999_999_999_999))
@settings(max_examples=50, deadline=None)
def test_generated_job_ids_always_validate(timestamp: int) -> None:
    job_id = ids.generate_job_id(timestamp_ms=timestamp)

    assert ids.validate_job_id(job_id) == job_id
    assert ids.job_id_timestamp_ms(job_id) == timestamp


def test_subagent_and_run_ids_carry_prefixes() -> None:
    subagent_id = ids.generate_subagent_id()
    run_id = ids.generate_run_id()

    assert subagent_id.startswith("subagent-")
    assert ids.validate_subagent_id(subagent_id) == subagent_id
    assert run_id.startswith("run-")
    assert len(run_id) == len("run-") + ids.ULID_LENGTH


@pytest.mark.parametrize("candidate", ["", "-leading", "has space", "x" * 129])
def test_validate_subagent_id_rejects_unsafe_names(candidate: str) -> None:
    with pytest.raises(ValueError, match="invalid subagent id"):
        ids.validate_subagent_id(candidate)


def test_agent_ids_are_random_uuids() -> None:
    first = ids.generate_agent_id()
    second = ids.generate_agent_id()

    assert first != second
    assert len(first) == 36
