"""
Append-only dead-letter store.

Properties:
- Newline-delimited JSON, one entry per line, each prefixed with its CRC32
  (``"<crc32 hex>:<json>"``); a checksum mismatch on load fails fast
- Two entry kinds: DEAD_LETTER (the record as first written) and RESOLUTION
  (appended later); current state is the fold of both, nothing is rewritten
- fsync after every append
- Thread-safe via lock
"""

from __future__ import annotations

import json
import os
import threading
import zlib
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Iterator, Any, Union

from campus.deadletter.records import DeadLetterRecord
from campus.logging import get_logger, LogStream
from campus.time import ensure_utc

ENTRY_DEAD_LETTER = "DEAD_LETTER"
ENTRY_RESOLUTION = "RESOLUTION"


class DeadLetterLogError(RuntimeError):
    pass


class DeadLetterLogCorruptionError(DeadLetterLogError):
    """Raised when the log has a corrupted line (checksum mismatch or bad JSON)."""
    pass


class DeadLetterNotFoundError(DeadLetterLogError, KeyError):
    pass


class DeadLetterStore(Protocol):

    def append_record(self, record: DeadLetterRecord) -> bool:
        ...

    def append_resolution(self, message_id: str, note: str, at: datetime, by: str) -> DeadLetterRecord:
        ...

    def get(self, message_id: str) -> Optional[DeadLetterRecord]:
        ...

    def all(self) -> List[DeadLetterRecord]:
        ...

    def unresolved(self) -> List[DeadLetterRecord]:
        ...


class InMemoryDeadLetterStore:
    """Dict-backed store with the same append-only semantics."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, DeadLetterRecord] = {}
        self._entries: List[Dict[str, Any]] = []

    def append_record(self, record: DeadLetterRecord) -> bool:
        """Returns False (and writes nothing) if message_id is already recorded."""
        with self._lock:
            if record.message_id in self._records:
                return False
            self._records[record.message_id] = record
            self._entries.append({"entry": ENTRY_DEAD_LETTER, **record.to_dict()})
            return True

    def append_resolution(self, message_id: str, note: str, at: datetime, by: str) -> DeadLetterRecord:
        with self._lock:
            record = self._records.get(message_id)
            if record is None:
                raise DeadLetterNotFoundError(message_id)
            resolved = record.resolve(note, at, by)
            self._records[message_id] = resolved
            self._entries.append({
                "entry": ENTRY_RESOLUTION,
                "message_id": message_id,
                "resolution_note": note,
                "resolved_time": ensure_utc(at).isoformat(),
                "resolved_by": by,
            })
            return resolved

    def get(self, message_id: str) -> Optional[DeadLetterRecord]:
        with self._lock:
            return self._records.get(message_id)

    def all(self) -> List[DeadLetterRecord]:
        with self._lock:
            return list(self._records.values())

    def unresolved(self) -> List[DeadLetterRecord]:
        with self._lock:
            return [r for r in self._records.values() if not r.resolved]

    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries)


class DeadLetterLog:
    """
    File-backed append-only dead-letter store.

    The file is replayed on open to build the in-memory index; corruption
    raises DeadLetterLogCorruptionError instead of silently dropping audit
    history.
    """

    def __init__(self, log_path: Union[str, Path]):
        self.log_path = Path(log_path)
        self.logger = get_logger(LogStream.DEADLETTER)
        self._lock = threading.Lock()
        self._records: Dict[str, DeadLetterRecord] = {}
        self._file = None

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._load()
        try:
            self._file = open(self.log_path, mode="a", encoding="utf-8", buffering=1)
        except OSError as e:
            raise DeadLetterLogError(f"Failed to open dead-letter log at {self.log_path}: {e}") from e

        self.logger.info("DeadLetterLog opened", extra={
            "log_path": str(self.log_path),
            "records": len(self._records),
            "unresolved": sum(1 for r in self._records.values() if not r.resolved),
        })

    # ------------------------
    # Write path
    # ------------------------

    def append_record(self, record: DeadLetterRecord) -> bool:
        with self._lock:
            if record.message_id in self._records:
                return False
            self._write({"entry": ENTRY_DEAD_LETTER, **record.to_dict()})
            self._records[record.message_id] = record
            return True

    def append_resolution(self, message_id: str, note: str, at: datetime, by: str) -> DeadLetterRecord:
        with self._lock:
            record = self._records.get(message_id)
            if record is None:
                raise DeadLetterNotFoundError(message_id)
            self._write({
                "entry": ENTRY_RESOLUTION,
                "message_id": message_id,
                "resolution_note": note,
                "resolved_time": ensure_utc(at).isoformat(),
                "resolved_by": by,
            })
            resolved = record.resolve(note, at, by)
            self._records[message_id] = resolved
            return resolved

    def _write(self, entry: Dict[str, Any]) -> None:
        if self._file is None:
            raise DeadLetterLogError("Dead-letter log is closed")
        line = json.dumps(entry, separators=(",", ":"), ensure_ascii=False, default=str)
        checksum = zlib.crc32(line.encode("utf-8")) & 0xFFFFFFFF
        try:
            self._file.write(f"{checksum:08x}:{line}\n")
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            raise DeadLetterLogError(f"Failed to append to dead-letter log: {e}") from e

    # ------------------------
    # Read path
    # ------------------------

    def get(self, message_id: str) -> Optional[DeadLetterRecord]:
        with self._lock:
            return self._records.get(message_id)

    def all(self) -> List[DeadLetterRecord]:
        with self._lock:
            return list(self._records.values())

    def unresolved(self) -> List[DeadLetterRecord]:
        with self._lock:
            return [r for r in self._records.values() if not r.resolved]

    def iter_entries(self) -> Iterator[Dict[str, Any]]:
        """Raw entries in append order, checksums validated."""
        if not self.log_path.exists():
            return
        with open(self.log_path, mode="r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                checksum_str, sep, json_str = line.partition(":")
                if not sep or len(checksum_str) != 8:
                    raise DeadLetterLogCorruptionError(
                        f"Dead-letter log corruption at {self.log_path}:{line_num}: missing checksum"
                    )
                try:
                    expected = int(checksum_str, 16)
                except ValueError as e:
                    raise DeadLetterLogCorruptionError(
                        f"Dead-letter log corruption at {self.log_path}:{line_num}: bad checksum field"
                    ) from e
                actual = zlib.crc32(json_str.encode("utf-8")) & 0xFFFFFFFF
                if actual != expected:
                    raise DeadLetterLogCorruptionError(
                        f"Dead-letter log corruption at {self.log_path}:{line_num}: "
                        f"checksum mismatch (expected={expected:08x}, actual={actual:08x})"
                    )
                try:
                    yield json.loads(json_str)
                except json.JSONDecodeError as e:
                    raise DeadLetterLogCorruptionError(
                        f"Dead-letter log corruption at {self.log_path}:{line_num}: invalid JSON: {e}"
                    ) from e

    def _load(self) -> None:
        for entry in self.iter_entries():
            kind = entry.get("entry")
            if kind == ENTRY_DEAD_LETTER:
                record = DeadLetterRecord.from_dict(entry)
                self._records.setdefault(record.message_id, record)
            elif kind == ENTRY_RESOLUTION:
                record = self._records.get(entry["message_id"])
                if record is None:
                    self.logger.warning(
                        "Resolution for unknown dead letter",
                        extra={"message_id": entry["message_id"]},
                    )
                    continue
                self._records[record.message_id] = record.resolve(
                    entry.get("resolution_note") or "",
                    datetime.fromisoformat(entry["resolved_time"]),
                    entry.get("resolved_by") or "",
                )
            else:
                raise DeadLetterLogCorruptionError(f"Unknown dead-letter entry kind: {kind!r}")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
