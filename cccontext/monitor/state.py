"""Per-session accounting state."""
from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, NamedTuple, Optional

from cccontext.date_utils import parse_timestamp
from cccontext.model_config import calculate_message_cost
from cccontext.parsers.records import UsageRecord


class Fingerprint(NamedTuple):
    """``(mtime, size)`` pair used to detect whether a file may have changed."""

    mtime: float
    size: int

    @classmethod
    def from_stat(cls, stat_result: os.stat_result) -> "Fingerprint":
        return cls(stat_result.st_mtime, stat_result.st_size)

    @classmethod
    def of(cls, path: Path) -> "Fingerprint":
        return cls.from_stat(path.stat())


class SessionState(str, enum.Enum):
    UNWATCHED = "unwatched"
    INITIAL_LOAD = "initial-load"
    TAILING = "tailing"
    REWRITE_DETECTED = "rewrite-detected"
    STOPPED = "stopped"


@dataclass
class SessionRecord:
    session_id: str
    file_path: Path
    offset: int = 0
    fingerprint: Optional[Fingerprint] = None
    state: SessionState = SessionState.UNWATCHED

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    # Snapshot of the latest usage block, not a running sum.
    cache_read_tokens: int = 0
    turns: int = 0
    message_count: int = 0
    total_cost: float = 0.0
    model: str = ""
    start_time: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    latest_prompt: str = ""
    latest_prompt_time: Optional[datetime] = None
    latest_usage: Optional[dict[str, Any]] = None
    is_compacted: bool = False

    # Bytes after the last newline seen; completed by a later append.
    pending: bytes = field(default=b"", repr=False)

    @property
    def total_tokens(self) -> int:
        """Current context size: the sum of the most recent usage block.

        The running input, output and cache-creation sums are kept for cost
        and display only. Records that never saw a usage block fall back to
        the stored counters.
        """
        if self.latest_usage is None:
            return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens
        return sum(int(self.latest_usage.get(key, 0)) for key in ("input", "output", "cache", "cacheCreation"))

    def reset_counters(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.turns = 0
        self.message_count = 0
        self.total_cost = 0.0
        self.model = ""
        self.start_time = None
        self.last_timestamp = None
        self.latest_prompt = ""
        self.latest_prompt_time = None
        self.latest_usage = None
        self.is_compacted = False
        self.pending = b""

    def apply(self, record: UsageRecord) -> None:
        """Fold one parsed transcript record into the running totals."""
        if record.role:
            self.message_count += 1
        if record.is_compaction:
            self.is_compacted = True

        timestamp = parse_timestamp(record.timestamp)
        if timestamp is not None:
            if self.start_time is None:
                self.start_time = timestamp
            self.last_timestamp = timestamp

        if record.model:
            self.model = record.model

        if record.has_usage:
            self.input_tokens += record.input_tokens
            self.output_tokens += record.output_tokens
            self.cache_creation_tokens += record.cache_creation_tokens
            self.cache_read_tokens = record.cache_read_tokens
            self.total_cost += calculate_message_cost(record.model or self.model, record.usage_dict())
            self.latest_usage = {
                "input": record.input_tokens,
                "output": record.output_tokens,
                "cache": record.cache_read_tokens,
                "cacheCreation": record.cache_creation_tokens,
                "timestamp": timestamp,
            }

        if record.is_assistant:
            self.turns += 1

        if record.is_user and record.prompt_text:
            self.latest_prompt = record.prompt_text
            self.latest_prompt_time = timestamp

    def copy(self) -> "SessionRecord":
        return replace(
            self,
            latest_usage=dict(self.latest_usage) if self.latest_usage else None,
        )
