"""Fingerprint-validated parse cache for session transcripts.

An entry is reused only while the file's ``(mtime, size)`` still equals the
fingerprint it was parsed at. Any difference, in either field and by any
amount, forces a full re-parse.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cccontext.date_utils import parse_timestamp
from cccontext.model_config import calculate_message_cost
from cccontext.monitor.state import Fingerprint, SessionRecord, SessionState
from cccontext.monitor.tailer import parse_lines, split_lines
from cccontext.observability import record_ingestion, record_parser_failure

logger = logging.getLogger("cccontext.cache")


@dataclass
class CacheEntry:
    fingerprint: Fingerprint
    aggregate: SessionRecord


def parse_session_file(path: Path, session_id: str | None = None) -> tuple[SessionRecord, int]:
    """Parse a whole transcript into a fresh aggregate.

    Records are visited newest first: latest-wins fields (model, prompt,
    cache-read size, last timestamp) are taken from the first record that
    carries them, while sums still cover every record. A trailing line
    without its newline is left pending, exactly as the tailer would.

    Returns ``(aggregate, malformed_line_count)``.
    """
    fingerprint = Fingerprint.of(path)
    with path.open("rb") as handle:
        data = handle.read(fingerprint.size)

    lines, remainder = split_lines(data)
    records, malformed = parse_lines(lines)

    aggregate = SessionRecord(
        session_id=session_id or path.stem,
        file_path=path,
        offset=len(data),
        fingerprint=fingerprint,
        state=SessionState.TAILING,
        pending=remainder,
    )

    latest_model = next((record.model for record in reversed(records) if record.model), "")
    aggregate.model = latest_model
    seen_usage = False

    for record in reversed(records):
        timestamp = parse_timestamp(record.timestamp)
        if timestamp is not None:
            if aggregate.last_timestamp is None:
                aggregate.last_timestamp = timestamp
            aggregate.start_time = timestamp

        if record.role:
            aggregate.message_count += 1
        if record.is_compaction:
            aggregate.is_compacted = True
        if record.is_assistant:
            aggregate.turns += 1

        if record.has_usage:
            aggregate.input_tokens += record.input_tokens
            aggregate.output_tokens += record.output_tokens
            aggregate.cache_creation_tokens += record.cache_creation_tokens
            aggregate.total_cost += calculate_message_cost(record.model or latest_model, record.usage_dict())
            if not seen_usage:
                seen_usage = True
                aggregate.cache_read_tokens = record.cache_read_tokens
                aggregate.latest_usage = {
                    "input": record.input_tokens,
                    "output": record.output_tokens,
                    "cache": record.cache_read_tokens,
                    "cacheCreation": record.cache_creation_tokens,
                    "timestamp": timestamp,
                }

        if not aggregate.latest_prompt and record.is_user and record.prompt_text:
            aggregate.latest_prompt = record.prompt_text
            aggregate.latest_prompt_time = timestamp

    return aggregate, malformed


class SessionCache:
    """Per-path memo of parsed aggregates keyed by file fingerprint."""

    def __init__(self) -> None:
        self._entries: dict[Path, CacheEntry] = {}
        self.parse_count = 0
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(path: Path | str) -> Path:
        return Path(path)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and self._key(path) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: Path | str) -> SessionRecord | None:
        """Return a copy of the cached aggregate if the file is unchanged."""
        key = self._key(path)
        entry = self._entries.get(key)
        if entry is None:
            return None
        try:
            current = Fingerprint.of(key)
        except OSError as exc:
            logger.debug("Cannot stat %s: %s", key, exc)
            return None
        if current != entry.fingerprint:
            return None
        self.hits += 1
        return entry.aggregate.copy()

    def store(self, path: Path | str, aggregate: SessionRecord) -> None:
        if aggregate.fingerprint is None:
            return
        self._entries[self._key(path)] = CacheEntry(aggregate.fingerprint, aggregate.copy())

    def parse_and_cache(self, path: Path | str, session_id: str | None = None) -> SessionRecord:
        """Return the cached aggregate, parsing the file first when needed.

        ``OSError`` from stat/read propagates to the caller.
        """
        key = self._key(path)
        cached = self.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key.name)
            return cached

        self.misses += 1
        started = time.monotonic()
        try:
            aggregate, malformed = parse_session_file(key, session_id)
        except OSError:
            record_ingestion("session", "error", (time.monotonic() - started) * 1000, session_id=session_id or key.stem)
            raise
        self.parse_count += 1
        record_ingestion("session", "parsed", (time.monotonic() - started) * 1000, session_id=aggregate.session_id)
        if malformed:
            record_parser_failure("jsonl", session_id=aggregate.session_id, count=malformed)

        self.store(key, aggregate)
        logger.debug(
            "Cached session %s - %d turns, %d tokens",
            aggregate.session_id,
            aggregate.turns,
            aggregate.total_tokens,
        )
        return aggregate.copy()

    def invalidate(self, path: Path | str) -> bool:
        removed = self._entries.pop(self._key(path), None) is not None
        if removed:
            logger.debug("Cleared cache for %s", self._key(path).name)
        return removed

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Cleared all cache")

    def stats(self) -> dict[str, Any]:
        return {
            "cachedSessions": len(self._entries),
            "parseCount": self.parse_count,
            "hits": self.hits,
            "misses": self.misses,
        }
