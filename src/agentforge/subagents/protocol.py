"""JSON-lines protocol spoken between the manager and a subagent worker.

Requests go to the worker's stdin, one object per line::

    {"id": 3, "tool": "summarize", "params": {"text": "..."}}

The worker answers on stdout. Its first line announces readiness; every later
line answers exactly one request id::

    {"ready": true, "tools": ["summarize"]}
    {"id": 3, "ok": true, "result": "..."}
    {"id": 3, "ok": false, "error": {"type": "KeyError", "message": "..."}}
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class MessageKind(StrEnum):
    READY = "ready"
    RESPONSE = "response"


@dataclass(frozen=True, slots=True)
class ToolRequest:
    request_id: int
    tool: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def encode(self) -> bytes:
        payload = {"id": self.request_id, "tool": self.tool, "params": dict(self.params)}
        return (json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n").encode()


@dataclass(frozen=True, slots=True)
class WorkerMessage:
    kind: MessageKind
    request_id: int | None = None
    ok: bool = True
    result: Any = None
    error_type: str | None = None
    error_message: str | None = None
    tools: tuple[str, ...] = ()


def decode_message(line: bytes | str) -> WorkerMessage:
    """Parse one worker line; ``ValueError`` for anything that is not a protocol message."""

    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError("worker message must be a JSON object")
    if payload.get("ready") is True:
        tools = payload.get("tools") or []
        return WorkerMessage(kind=MessageKind.READY, tools=tuple(str(item) for item in tools))
    request_id = payload.get("id")
    if isinstance(request_id, bool) or not isinstance(request_id, int):
        raise ValueError("worker response is missing an integer id")
    if payload.get("ok") is True:
        return WorkerMessage(
            kind=MessageKind.RESPONSE, request_id=request_id, result=payload.get("result")
        )
    error = payload.get("error")
    error = error if isinstance(error, dict) else {}
    return WorkerMessage(
        kind=MessageKind.RESPONSE,
        request_id=request_id,
        ok=False,
        error_type=str(error.get("type") or "Error"),
        error_message=str(error.get("message") or "tool failed"),
    )


__all__ = ["MessageKind", "ToolRequest", "WorkerMessage", "decode_message"]
