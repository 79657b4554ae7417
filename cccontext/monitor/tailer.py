"""Incremental byte-offset reader for growing session transcripts.

Reading is split in two steps so that concurrency stays with the caller:

* :meth:`IncrementalTailer.read_since` is a blocking read of the bytes
  appended since the record's offset. It never mutates the record and is
  safe to run in a worker thread.
* :meth:`IncrementalTailer.apply` folds a :class:`TailResult` into the
  record. Offset and fingerprint only move here, once the read has fully
  completed.

A change is classified as a *rewrite* when the file shrank below the
recorded offset, when its size jumped by more than the size threshold, or
when its mtime moved by more than the time threshold. The assistant
replaces the transcript with a compacted version when it auto-compacts, so
a rewrite resets every counter and re-reads the file from byte 0.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from cccontext import config
from cccontext.monitor.state import Fingerprint, SessionRecord, SessionState
from cccontext.parsers.records import UsageRecord, parse_record_line

logger = logging.getLogger("cccontext.tailer")


class ChangeKind(str, enum.Enum):
    INITIAL = "initial"
    APPEND = "append"
    REWRITE = "rewrite"
    UNCHANGED = "unchanged"


@dataclass
class TailResult:
    kind: ChangeKind
    fingerprint: Fingerprint
    offset: int
    records: list[UsageRecord] = field(default_factory=list)
    pending: bytes = b""
    malformed_lines: int = 0
    bytes_read: int = 0

    @property
    def is_rewrite(self) -> bool:
        return self.kind is ChangeKind.REWRITE


def split_lines(data: bytes) -> tuple[list[bytes], bytes]:
    """Split on ``\\n`` and return ``(complete_lines, trailing_partial)``."""
    *lines, remainder = data.split(b"\n")
    return lines, remainder


def parse_lines(lines: list[bytes]) -> tuple[list[UsageRecord], int]:
    records: list[UsageRecord] = []
    malformed = 0
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        record = parse_record_line(line)
        if record is None:
            malformed += 1
            continue
        records.append(record)
    return records, malformed


class IncrementalTailer:
    def __init__(
        self,
        rewrite_size_threshold: int = config.REWRITE_SIZE_THRESHOLD,
        rewrite_time_threshold_seconds: float = config.REWRITE_TIME_THRESHOLD_MS / 1000,
    ):
        self.rewrite_size_threshold = rewrite_size_threshold
        self.rewrite_time_threshold_seconds = rewrite_time_threshold_seconds

    def classify(self, record: SessionRecord, current: Fingerprint) -> ChangeKind:
        previous = record.fingerprint
        if previous is None:
            return ChangeKind.INITIAL
        if current == previous:
            return ChangeKind.UNCHANGED

        last_offset = max(0, record.offset)
        if current.size < last_offset:
            return ChangeKind.REWRITE
        if abs(current.size - last_offset) > self.rewrite_size_threshold:
            return ChangeKind.REWRITE
        if previous.mtime and abs(current.mtime - previous.mtime) > self.rewrite_time_threshold_seconds:
            return ChangeKind.REWRITE
        return ChangeKind.APPEND

    def read_since(self, record: SessionRecord) -> TailResult:
        """Read whatever the record has not accounted for yet.

        Raises ``OSError`` when the file cannot be stat'ed or read; the
        record is left untouched in that case.
        """
        fingerprint = Fingerprint.of(record.file_path)
        kind = self.classify(record, fingerprint)
        if kind is ChangeKind.UNCHANGED:
            return TailResult(kind, fingerprint, record.offset, pending=record.pending)

        if kind is ChangeKind.APPEND:
            start, carried = record.offset, record.pending
        else:
            start, carried = 0, b""

        # Only read up to the stat'ed size so offset and fingerprint agree.
        with record.file_path.open("rb") as handle:
            handle.seek(start)
            chunk = handle.read(max(0, fingerprint.size - start))

        lines, remainder = split_lines(carried + chunk)
        records, malformed = parse_lines(lines)
        if malformed:
            logger.debug("Skipped %d malformed line(s) in %s", malformed, record.session_id)

        return TailResult(
            kind=kind,
            fingerprint=fingerprint,
            offset=start + len(chunk),
            records=records,
            pending=remainder,
            malformed_lines=malformed,
            bytes_read=len(chunk),
        )

    def apply(self, record: SessionRecord, result: TailResult) -> None:
        if result.kind is ChangeKind.UNCHANGED:
            return

        if result.kind in (ChangeKind.INITIAL, ChangeKind.REWRITE):
            record.reset_counters()

        for usage_record in result.records:
            record.apply(usage_record)

        record.offset = result.offset
        record.fingerprint = result.fingerprint
        record.pending = result.pending
        record.state = (
            SessionState.REWRITE_DETECTED if result.kind is ChangeKind.REWRITE else SessionState.TAILING
        )

    def read(self, record: SessionRecord) -> TailResult:
        """Blocking read + apply, for callers that own the record exclusively."""
        result = self.read_since(record)
        self.apply(record, result)
        return result
