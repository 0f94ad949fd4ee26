"""
agentforge — structured logging

File: src/agentforge/observability/logging.py

Purpose
- One JSON object per line under ``<log_dir>/<run_id>/agentforge.jsonl``.
- ``structlog`` is the logging API; stdlib ``logging`` is only the transport, so
  third-party records and component events share one renderer.

Pipeline
- Producers hand records to a bounded, non-blocking ``QueueHandler``. The
  correlation context (``structlog.contextvars``) is captured there, on the
  producing thread or task.
- A ``QueueListener`` thread renders each record through
  ``structlog.stdlib.ProcessorFormatter`` into redacted JSON.
- A full queue drops records and counts them instead of blocking a build.
"""

from __future__ import annotations

import atexit
import copy
import json
import logging
import logging.handlers
import math
import queue
import threading
import time
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from agentforge.security.redaction import REDACTED_VALUE, is_sensitive_key, redact_text

LOG_FILENAME: Final[str] = "agentforge.jsonl"
ROOT_LOGGER: Final[str] = "agentforge"

# Attributes a bare LogRecord carries; anything else on a foreign record is an ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
}
_CONTEXT_ATTR: Final[str] = "_agentforge_context"
_EXCEPTION_ATTR: Final[str] = "_agentforge_exception"
_RENDERED_KEYS: Final[frozenset[str]] = frozenset(
    {"event", "level", "logger", "timestamp", "exception", "exc_info", "stack"}
)
_TRACEBACK_FORMATTER = logging.Formatter()


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stderr: bool = False
    redact_secrets: bool = True


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    log_to_stderr: bool | None = None,
) -> StructuredLoggingHandle:
    """Configure logging from an ``[observability]`` config section."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    to_stderr = section.get("log_to_stderr", False) if log_to_stderr is None else log_to_stderr
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=bool(to_stderr),
            redact_secrets=bool(section.get("redact_secrets", True)),
        )
    )


class _ContextCapturingQueueHandler(logging.handlers.QueueHandler):
    """Enqueue a copy of the record with its correlation context; never block."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Unlike the base class this keeps ``record.msg`` intact: structlog
        # events travel as dicts and are rendered on the listener thread.
        prepared = copy.copy(record)
        setattr(prepared, _CONTEXT_ATTR, structlog.contextvars.get_contextvars())
        if record.exc_info:
            formatted = _TRACEBACK_FORMATTER.formatException(record.exc_info)
            setattr(prepared, _EXCEPTION_ATTR, formatted)
            prepared.exc_info = None
            prepared.exc_text = None
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class JsonLinesRenderer:
    """Final ``ProcessorFormatter`` step: reshape one event and dump it as JSON."""

    def __init__(self, *, run_id: str, redact: bool = True) -> None:
        self._run_id = run_id
        self._redact = redact

    def __call__(
        self, logger: object, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> str:
        record: logging.LogRecord = event_dict.pop("_record")
        from_structlog = bool(event_dict.pop("_from_structlog", False))
        message = event_dict.get("event", "")

        line: dict[str, object] = {
            "timestamp": _utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": self._scrub(message if isinstance(message, str) else str(message)),
            "run_id": self._run_id,
        }
        context = getattr(record, _CONTEXT_ATTR, {})
        for key in sorted(context):
            line[key] = str(context[key])

        if from_structlog:
            extras = {k: v for k, v in event_dict.items() if k not in _RENDERED_KEYS}
        else:
            extras = {
                k: v
                for k, v in vars(record).items()
                if k not in _RECORD_ATTRIBUTES and not k.startswith("_")
            }
        fields = {key: self._field(key, _jsonable(value)) for key, value in extras.items()}
        if fields:
            line["fields"] = fields

        exception = event_dict.get("exception") or getattr(record, _EXCEPTION_ATTR, None)
        if exception:
            line["exception"] = self._scrub(str(exception))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _scrub(self, text: str) -> str:
        return redact_text(text) if self._redact else text

    def _field(self, key: str, value: object) -> object:
        if not self._redact:
            return value
        if is_sensitive_key(key):
            return value if value in (None, "") else REDACTED_VALUE
        if isinstance(value, str):
            return redact_text(value)
        if isinstance(value, list):
            return [self._field("", item) for item in value]
        if isinstance(value, dict):
            return {str(k): self._field(str(k), v) for k, v in value.items()}
        return value


class StructuredLoggingHandle:
    """The live sinks of one run; ``shutdown`` drains the queue and closes files."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _ContextCapturingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        pending = self._queue_handler.queue
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.005)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()


_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install queue-backed JSON-lines logging for one run, replacing any previous run."""

    global _active, _atexit_registered

    run_id = _non_empty(config.run_id, "run_id")
    logger_name = _non_empty(config.logger_name, "logger_name")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[JsonLinesRenderer(run_id=run_id, redact=config.redact_secrets)],
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _ContextCapturingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def configure_structlog() -> None:
    """Route ``structlog.get_logger(__name__)`` through stdlib for the shared renderer."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def flush_logging(handle: StructuredLoggingHandle | None = None) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush()


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Shut down ``handle`` (default: the active one) and forget it if it was active."""

    global _active
    with _active_lock:
        target = handle or _active
        if target is _active:
            _active = None
    if target is not None:
        target.shutdown()


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return {key: str(value) for key, value in structlog.contextvars.get_contextvars().items()}


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation ids (``job_id``, ``subagent_id`` ...) for the enclosed block.

    A ``None`` value hides an outer binding until the block exits.
    """

    outer = structlog.contextvars.get_contextvars()
    bound = {
        _non_empty(key, "correlation key"): _non_empty(value, "correlation value")
        for key, value in fields.items()
        if value is not None
    }
    hidden = [key for key, value in fields.items() if value is None and key in outer]
    tokens = structlog.contextvars.bind_contextvars(**bound)
    structlog.contextvars.unbind_contextvars(*hidden)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
        if hidden:
            structlog.contextvars.bind_contextvars(**{key: outer[key] for key in hidden})


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


def _utc_iso(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: object) -> object:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        return _utc_iso(value.timestamp())
    if isinstance(value, (Path, bytes)):
        return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return repr(value)


__all__ = [
    "LOG_FILENAME",
    "JsonLinesRenderer",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
