"""Built-in tools behind the ``chat``, ``automation`` and ``analytics`` feature flags."""

from __future__ import annotations

import re
from collections import Counter
from typing import Any

from agentforge.domain.ids import generate_ulid

_WORD_RE = re.compile(r"[A-Za-z0-9']+")
_TOP_TERMS = 5


def chat(input: str) -> dict[str, Any]:  # noqa: A002
    """Echo the user input back as the agent's message."""

    return {"message": input}


def automate(task: str) -> dict[str, Any]:
    """Accept a task and hand back a tracking id."""

    return {"success": True, "task_id": f"task-{generate_ulid().lower()}", "task": task}


def analyze(data: str) -> dict[str, Any]:
    """Word, line and term statistics for a block of text."""

    words = [word.lower() for word in _WORD_RE.findall(data)]
    lines = [line for line in data.splitlines() if line.strip()]
    top = Counter(words).most_common(_TOP_TERMS)
    insights = [f"{len(words)} words across {len(lines)} non-empty lines"]
    if top:
        insights.append("most frequent terms: " + ", ".join(term for term, _ in top))
    return {
        "insights": insights,
        "word_count": len(words),
        "line_count": len(lines),
        "top_terms": [{"term": term, "count": count} for term, count in top],
    }


__all__ = ["analyze", "automate", "chat"]
