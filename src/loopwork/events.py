"""Local JSONL trace of engine events.

Events are appended to ``<run_dir>/events.jsonl``, one JSON object per
line. ``emit_event`` failures log a warning but never raise: the trace is
diagnostic and must not break a run.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ulid import ULID

logger = logging.getLogger(__name__)

EVENTS_FILE = "events.jsonl"


def emit_event(
    event_type: str,
    payload: dict[str, Any],
    *,
    loop_id: str = "",
    run_id: str = "",
    run_dir: Path | None = None,
) -> None:
    """Append an event to the run's JSONL log.

    Args:
        event_type: Event type (e.g. ``"skill_completed"``, ``"gate_pending"``).
        payload: Event-specific data.
        loop_id: Loop identifier.
        run_id: Local run identifier.
        run_dir: Run directory; if ``None`` the event is only debug-logged.
    """
    event = {
        "event_id": str(ULID()),
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "loop": loop_id,
        "run": run_id,
        "payload": payload,
    }

    if run_dir is None:
        logger.debug("No run_dir -- event not persisted: %s", event_type)
        return

    try:
        run_dir.mkdir(parents=True, exist_ok=True)
        with open(run_dir / EVENTS_FILE, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, sort_keys=True, default=str) + "\n")
    except Exception:
        logger.warning("Failed to emit event: %s", event_type, exc_info=True)


def read_events(run_dir: Path) -> list[dict[str, Any]]:
    """Read all events; malformed lines are skipped with a warning."""
    events_file = run_dir / EVENTS_FILE
    if not events_file.exists():
        return []

    events: list[dict[str, Any]] = []
    for line_number, line in enumerate(events_file.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed event on line %d of %s", line_number, events_file)
    return events
