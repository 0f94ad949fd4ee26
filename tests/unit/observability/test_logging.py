"""
agentforge — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate JSON-lines logging with redaction, correlation metadata and the
  structlog bridge used by every component.

Functional requirements
- Offline operation.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from agentforge.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from agentforge.security.redaction import REDACTED_VALUE, global_secret_registry

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_setup_logging_writes_json_lines_under_run_directory(tmp_path: Path) -> None:
    handle = setup_logging({"log_level": "INFO"}, run_id="run-test", log_dir=tmp_path)

    logging.getLogger("agentforge.tests").info("hello %s", "world")
    handle.flush()

    assert handle.log_path == tmp_path / "run-test" / "agentforge.jsonl"
    records = _read_json_lines(handle.log_path)
    assert records[-1]["message"] == "hello world"
    assert records[-1]["run_id"] == "run-test"
    assert str(records[-1]["timestamp"]).endswith("Z")


def test_structlog_events_are_rendered_and_redacted(tmp_path: Path) -> None:
    handle = setup_logging(None, run_id="run-structlog", log_dir=tmp_path)
    logger = structlog.get_logger("agentforge.tests.structlog")

    logger.info("provider_called", provider="openai", api_key="sk-FAKEFAKEFAKEFAKE1234", status=200)
    handle.flush()

    record = _read_json_lines(handle.log_path)[-1]
    fields = record["fields"]
    assert record["message"] == "provider_called"
    assert isinstance(fields, dict)
    assert fields["provider"] == "openai"
    assert fields["api_key"] == REDACTED_VALUE
    assert fields["status"] == 200


def test_registered_secret_values_never_reach_the_log(tmp_path: Path) -> None:
    secret = f"registered-{uuid4().hex}"
    registry = global_secret_registry()
    registry.register(secret)
    try:
        handle = setup_logging(None, run_id="run-registry", log_dir=tmp_path)
        logging.getLogger("agentforge.tests").warning("upstream echoed %s", secret)
        handle.flush()
    finally:
        registry.unregister(secret)

    assert secret not in handle.log_path.read_text(encoding="utf-8")


def test_correlation_scope_nests_and_restores(tmp_path: Path) -> None:
    handle = setup_logging(None, run_id="run-corr", log_dir=tmp_path)
    logger = logging.getLogger("agentforge.tests")

    with correlation_scope(job_id="compile-1700000000000-abc"):
        with correlation_scope(subagent_id="subagent-1"):
            assert get_correlation_context() == {
                "job_id": "compile-1700000000000-abc",
                "subagent_id": "subagent-1",
            }
            logger.info("inside")
        with correlation_scope(job_id=None):
            assert "job_id" not in get_correlation_context()
    logger.info("outside")
    handle.flush()

    inside, outside = _read_json_lines(handle.log_path)[-2:]
    assert inside["job_id"] == "compile-1700000000000-abc"
    assert inside["subagent_id"] == "subagent-1"
    assert "job_id" not in outside
    assert get_correlation_context() == {}


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-raw", base_log_dir=tmp_path, redact_secrets=False)
    )

    handle.logger.info("token=abcdef123456")
    handle.flush()

    assert _read_json_lines(handle.log_path)[-1]["message"] == "token=abcdef123456"


def test_setup_replaces_previous_handle(tmp_path: Path) -> None:
    first = setup_logging(None, run_id="run-one", log_dir=tmp_path)
    second = setup_logging(None, run_id="run-two", log_dir=tmp_path)

    assert first.is_shutdown
    assert get_active_logging_handle() is second

    shutdown_logging(second)
    assert second.is_shutdown
    assert get_active_logging_handle() is None


@pytest.mark.parametrize(
    ("config", "message"),
    [
        (LoggingConfig(run_id=" "), "run_id"),
        (LoggingConfig(run_id="r", log_filename="../x.jsonl"), "path separators"),
        (LoggingConfig(run_id="r", queue_size=0), "queue_size"),
    ],
)
def test_invalid_logging_config(config: LoggingConfig, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        setup_structured_logging(config)


def test_stdlib_extras_and_exceptions_are_rendered(tmp_path: Path) -> None:
    handle = setup_logging(None, run_id="run-extra", log_dir=tmp_path)
    logger = logging.getLogger("agentforge.tests")

    try:
        raise RuntimeError("kaput")
    except RuntimeError:
        logger.exception("step failed", extra={"step": "compile", "password": "hunter22"})
    handle.flush()

    record = _read_json_lines(handle.log_path)[-1]
    assert record["level"] == "ERROR"
    assert record["fields"] == {"step": "compile", "password": REDACTED_VALUE}
    assert "RuntimeError: kaput" in str(record["exception"])
