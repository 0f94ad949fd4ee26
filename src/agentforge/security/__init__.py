"""
agentforge — security utilities

Purpose
- Consistent secret redaction for logs, job records, CLI output and provider errors.
"""

from agentforge.security.redaction import (
    DEFAULT_SENSITIVE_KEY_DENYLIST,
    REDACTED_VALUE,
    SecretFinding,
    SecretRegistry,
    global_secret_registry,
    is_sensitive_key,
    redact_structure,
    redact_text,
    scan_for_secrets,
)

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
