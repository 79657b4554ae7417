"""Parse single JSONL transcript lines into usage records."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

_COMPACTION_MARKERS = (
    "[Previous conversation summary",
    "Previous conversation compacted",
)
_COMPACTION_SYSTEM_SUBTYPES = {"compact_boundary", "microcompact_boundary"}
# Placeholder model id written for locally generated (non-API) messages.
_SYNTHETIC_MODEL = "<synthetic>"


@dataclass(frozen=True)
class UsageRecord:
    """The fields of one transcript line that matter for usage accounting."""

    timestamp: Any = None
    role: str = ""
    model: str = ""
    has_usage: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    prompt_text: str = ""
    is_compaction: bool = False

    @property
    def is_assistant(self) -> bool:
        return self.role == "assistant"

    @property
    def is_user(self) -> bool:
        return self.role == "user"

    def usage_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_tokens,
            "cache_creation_input_tokens": self.cache_creation_tokens,
        }


def _coerce_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def _first_text_block(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    return text
    return ""


def _is_compaction(entry: dict[str, Any], message: dict[str, Any]) -> bool:
    if entry.get("isCompactSummary"):
        return True
    if entry.get("type") == "system" and str(entry.get("subtype") or "") in _COMPACTION_SYSTEM_SUBTYPES:
        return True
    content = message.get("content")
    if isinstance(content, str):
        return any(marker in content for marker in _COMPACTION_MARKERS)
    return False


def record_from_entry(entry: dict[str, Any]) -> UsageRecord:
    message = entry.get("message")
    if not isinstance(message, dict):
        message = {}

    role = str(message.get("role") or "")
    usage = message.get("usage")
    has_usage = isinstance(usage, dict)
    if not has_usage:
        usage = {}

    prompt_text = _first_text_block(message.get("content")) if role == "user" else ""
    model = str(message.get("model") or "")
    if model == _SYNTHETIC_MODEL:
        model = ""

    return UsageRecord(
        timestamp=entry.get("timestamp"),
        role=role,
        model=model,
        has_usage=has_usage,
        input_tokens=_coerce_int(usage.get("input_tokens")),
        output_tokens=_coerce_int(usage.get("output_tokens")),
        cache_read_tokens=_coerce_int(usage.get("cache_read_input_tokens")),
        cache_creation_tokens=_coerce_int(usage.get("cache_creation_input_tokens")),
        prompt_text=prompt_text,
        is_compaction=_is_compaction(entry, message),
    )


def parse_record_line(line: str | bytes) -> UsageRecord | None:
    """Parse one transcript line.

    Returns ``None`` for lines that are not a JSON object. Blank lines are
    the caller's concern.
    """
    try:
        entry = json.loads(line)
    except (ValueError, RecursionError):
        return None
    if not isinstance(entry, dict):
        return None
    return record_from_entry(entry)
