"""Persistence for the execution record.

Two stores share one protocol: :class:`FileRecordStore` keeps the record in
``<state_dir>/execution.json`` and :class:`MemoryRecordStore` keeps a
serialized copy in memory so several logical runs can coexist under test.

Serialization is deterministic (sorted keys, fixed indent) and ``save``
never stamps timestamps itself, so saving an unchanged loaded record
rewrites identical bytes.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from loopwork.errors import StateCorruption

from .models import ExecutionRecord
from .schema import record_schema_errors

logger = logging.getLogger(__name__)

RECORD_FILENAME = "execution.json"


def serialize_record(record: ExecutionRecord) -> str:
    return json.dumps(record.to_dict(), indent=2, sort_keys=True) + "\n"


def parse_record(text: str, path: Path | None = None) -> ExecutionRecord:
    """Decode and validate a serialized record.

    Raises:
        StateCorruption: On invalid JSON, schema violations or a record
            that cannot be rebuilt.
    """
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StateCorruption(path, f"invalid JSON ({exc})") from exc

    errors = record_schema_errors(payload)
    if errors:
        raise StateCorruption(path, f"{len(errors)} schema violation(s): {errors[0]}", errors)

    try:
        return ExecutionRecord.from_dict(payload)
    except (KeyError, ValueError, TypeError) as exc:
        raise StateCorruption(path, f"invalid record structure ({exc})") from exc


class RecordStore(Protocol):
    def load(self) -> ExecutionRecord | None: ...

    def save(self, record: ExecutionRecord) -> None: ...

    def delete(self) -> None: ...

    def set_aside(self, label: str) -> str | None: ...


class FileRecordStore:
    """Execution record persisted as JSON inside a working directory."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    @property
    def path(self) -> Path:
        return self.state_dir / RECORD_FILENAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ExecutionRecord | None:
        """Return the persisted record, or ``None`` on a cold start."""
        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise StateCorruption(self.path, f"not UTF-8 text ({exc})") from exc
        return parse_record(text, self.path)

    def save(self, record: ExecutionRecord) -> None:
        """Write the record atomically (temp file in the same directory, then replace)."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        content = serialize_record(record)

        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".execution-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    def set_aside(self, label: str) -> str | None:
        """Rename the current record to ``execution.<label>-<timestamp>.json``.

        Used to quarantine a corrupt record or to keep an abandoned run
        when restarting. Returns the new path, or ``None`` if there was
        nothing to move.
        """
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = self.state_dir / f"execution.{label}-{stamp}.json"
        os.replace(self.path, target)
        logger.info("Moved execution record to %s", target)
        return str(target)


class MemoryRecordStore:
    """In-memory store holding the serialized form, not the live object."""

    def __init__(self, initial: str | None = None) -> None:
        self._content: str | None = initial
        self.set_aside_records: dict[str, str] = {}

    @property
    def content(self) -> str | None:
        return self._content

    def load(self) -> ExecutionRecord | None:
        if self._content is None:
            return None
        return parse_record(self._content)

    def save(self, record: ExecutionRecord) -> None:
        self._content = serialize_record(record)

    def delete(self) -> None:
        self._content = None

    def set_aside(self, label: str) -> str | None:
        if self._content is None:
            return None
        key = f"{label}-{len(self.set_aside_records) + 1}"
        self.set_aside_records[key] = self._content
        self._content = None
        return key
