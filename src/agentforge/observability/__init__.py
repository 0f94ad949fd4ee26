"""
agentforge — observability

File: src/agentforge/observability/__init__.py

Purpose
- JSON-lines logging with redaction and correlation fields.
- In-process progress event bus used as the notification transport.
"""

from agentforge.observability.events import (
    DeliveryFailure,
    EventBus,
    ProgressPublisher,
    Subscriber,
)
from agentforge.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    flush_logging,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DeliveryFailure",
    "EventBus",
    "LoggingConfig",
    "ProgressPublisher",
    "StructuredLoggingHandle",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
