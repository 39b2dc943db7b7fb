"""Archival and cleanup of completed runs.

Archive layout::

    <archive_root>/<YYYY-MM>/<loop>-<YYYYmmddTHHMMSS>/
        record.json       final execution record
        summary.json      phases, gates, timestamps, outcome, deliverables
        events.jsonl      local event trace (when present)
        deliverables/     copies of every file-backed deliverable

Durable deliverables may additionally be committed to git in the working
tree; ephemeral ones live only in the archive. Cleanup removes ephemeral
files, the run directory and the active record, so the next invocation is
a cold start.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from loopwork.events import EVENTS_FILE
from loopwork.record.models import (
    Deliverable,
    ExecutionRecord,
    GateStatus,
    PhaseStatus,
    SkillStatus,
    utc_now,
)
from loopwork.record.store import RecordStore, serialize_record
from loopwork.skills.executor import item_segment

logger = logging.getLogger(__name__)

SUMMARY_FILE = "summary.json"
RECORD_FILE = "record.json"
DEFAULT_KEEP = 10


@dataclass(frozen=True)
class ArchivedRun:
    path: Path
    loop: str
    run_id: str
    started_at: str
    completed_at: str
    outcome: str
    summary: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def completed(self) -> datetime | None:
        return _parse_iso(self.completed_at)


@dataclass
class ArchiveResult:
    path: Path
    copied: list[str] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)
    committed: bool = False
    removed: list[str] = field(default_factory=list)


class ArchiveService:
    def __init__(
        self,
        archive_root: Path,
        work_dir: Path,
        *,
        git_commit: bool = False,
        keep: int | None = None,
        clock: Callable[[], datetime] = utc_now,
        runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        self.archive_root = Path(archive_root)
        self.work_dir = Path(work_dir)
        self.git_commit = git_commit
        self.keep = keep
        self.clock = clock
        self._run = runner

    # ------------------------------------------------------------------

    def finalize(self, record: ExecutionRecord, store: RecordStore, run_dir: Path | None) -> ArchiveResult:
        """Archive, optionally commit, then reset the working area."""
        result = self.archive(record, run_dir)
        if self.git_commit:
            result.committed = self.commit_durable(record)
        result.removed = self.cleanup(record, store, run_dir)
        if self.keep is not None:
            self.prune(keep=self.keep)
        return result

    def archive(self, record: ExecutionRecord, run_dir: Path | None) -> ArchiveResult:
        now = self.clock().astimezone(timezone.utc)
        target = self._unique_dir(self.archive_root / now.strftime("%Y-%m") / f"{record.loop_id}-{now:%Y%m%dT%H%M%S}")
        target.mkdir(parents=True)

        deliverables_dir = target / "deliverables"
        taken: set[tuple[str, str | None]] = set()
        sources: set[Path] = set()

        copied: list[str] = []
        for name, deliverable in sorted(record.deliverables.items()):
            if self._copy_deliverable(deliverable, deliverables_dir, versioned=False, sources=sources) is not None:
                copied.append(name)
            taken.add((name, deliverable.item))

        # Newest first, so a file overwritten in place is kept once under its latest version.
        history: list[dict[str, Any]] = []
        for deliverable in reversed(record.superseded):
            key = (deliverable.name, deliverable.item)
            archived_as = self._copy_deliverable(deliverable, deliverables_dir, versioned=key in taken, sources=sources)
            taken.add(key)
            history.append(
                {
                    "name": deliverable.name,
                    "item": deliverable.item,
                    "version": deliverable.version,
                    "producer": deliverable.producer,
                    "archived_as": archived_as,
                }
            )
        history.reverse()

        if run_dir is not None and (run_dir / EVENTS_FILE).exists():
            shutil.copy2(run_dir / EVENTS_FILE, target / EVENTS_FILE)

        (target / RECORD_FILE).write_text(serialize_record(record), encoding="utf-8")
        summary = build_summary(record, archived_at=now.isoformat(), copied=copied, superseded=history)
        (target / SUMMARY_FILE).write_text(json.dumps(summary, indent=2, sort_keys=True) + "\n", encoding="utf-8")

        superseded = [entry["archived_as"] for entry in history if entry["archived_as"]]
        logger.info(
            "Archived run %s of %s to %s (%d deliverable(s), %d superseded)",
            record.run_id,
            record.loop_id,
            target,
            len(copied),
            len(superseded),
        )
        return ArchiveResult(path=target, copied=copied, superseded=superseded)

    def commit_durable(self, record: ExecutionRecord) -> bool:
        """Commit durable deliverables inside the working tree; False when nothing was committed."""
        paths: list[str] = []
        for deliverable in record.deliverables.values():
            source = self._resolve(deliverable.ref)
            if not deliverable.durable or source is None or not source.exists():
                continue
            try:
                paths.append(str(source.resolve().relative_to(self.work_dir.resolve())))
            except ValueError:
                continue
        if not paths:
            return False

        probe = self._git("rev-parse", "--is-inside-work-tree")
        if probe.returncode != 0:
            logger.warning("Working directory is not a git repository; durable deliverables not committed")
            return False

        added = self._git("add", "--", *sorted(paths))
        if added.returncode != 0:
            logger.warning("git add failed: %s", added.stderr.strip())
            return False
        committed = self._git("commit", "-m", f"loopwork: {record.loop_id} run {record.run_id} deliverables")
        if committed.returncode != 0:
            logger.warning("git commit failed: %s", (committed.stderr or committed.stdout).strip())
            return False
        return True

    def cleanup(self, record: ExecutionRecord, store: RecordStore, run_dir: Path | None) -> list[str]:
        """Delete ephemeral deliverables, the run directory and the active record."""
        removed: list[str] = []
        for deliverable in [*record.deliverables.values(), *record.superseded]:
            if deliverable.durable:
                continue
            source = self._resolve(deliverable.ref)
            if source is None or not source.exists() or not _within(source, self.work_dir):
                continue
            if source.is_dir():
                shutil.rmtree(source)
            else:
                source.unlink()
            if deliverable.name not in removed:
                removed.append(deliverable.name)

        if run_dir is not None and run_dir.exists():
            shutil.rmtree(run_dir)
        store.delete()
        return removed

    # ------------------------------------------------------------------

    def query_runs(
        self,
        *,
        loop: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ArchivedRun]:
        """Archived runs, newest first, filtered by loop and completion time."""
        runs: list[ArchivedRun] = []
        if not self.archive_root.exists():
            return runs
        for summary_path in self.archive_root.glob(f"*/*/{SUMMARY_FILE}"):
            try:
                summary = json.loads(summary_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("Skipping unreadable archive summary %s", summary_path)
                continue
            run = ArchivedRun(
                path=summary_path.parent,
                loop=str(summary.get("loop", "")),
                run_id=str(summary.get("run_id", "")),
                started_at=str(summary.get("started_at", "")),
                completed_at=str(summary.get("completed_at", "")),
                outcome=str(summary.get("outcome", "")),
                summary=summary,
            )
            if loop is not None and run.loop != loop:
                continue
            if since is not None:
                completed = run.completed
                if completed is None or completed < _aware(since):
                    continue
            runs.append(run)

        runs.sort(key=lambda r: (r.completed_at, r.path.name), reverse=True)
        return runs[:limit] if limit is not None else runs

    def prune(self, *, keep: int = DEFAULT_KEEP, loop: str | None = None) -> list[Path]:
        """Delete all but the *keep* most recent archived runs."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        removed: list[Path] = []
        for run in self.query_runs(loop=loop)[keep:]:
            shutil.rmtree(run.path)
            removed.append(run.path)
            month_dir = run.path.parent
            if month_dir.exists() and not any(month_dir.iterdir()):
                month_dir.rmdir()
        if removed:
            logger.info("Pruned %d archived run(s)", len(removed))
        return removed

    # ------------------------------------------------------------------

    def _copy_deliverable(
        self,
        deliverable: Deliverable,
        deliverables_dir: Path,
        *,
        versioned: bool,
        sources: set[Path],
    ) -> str | None:
        """Copy one deliverable; returns its path relative to ``deliverables/``."""
        source = self._resolve(deliverable.ref)
        if source is None or not source.exists():
            return None
        resolved = source.resolve()
        if resolved in sources:
            return None
        sources.add(resolved)

        folder = deliverables_dir / item_segment(deliverable.item) if deliverable.item is not None else deliverables_dir
        stem = f"{deliverable.name}.v{deliverable.version}" if versioned else deliverable.name
        destination = folder / (f"{stem}{source.suffix}" if source.is_file() else stem)
        folder.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, destination, dirs_exist_ok=True)
        else:
            shutil.copy2(source, destination)
        return destination.relative_to(deliverables_dir).as_posix()

    def _resolve(self, ref: str | None) -> Path | None:
        if not ref:
            return None
        path = Path(ref)
        return path if path.is_absolute() else self.work_dir / path

    def _git(self, *args: str) -> subprocess.CompletedProcess[str]:
        return self._run(
            ["git", *args],
            cwd=self.work_dir,
            capture_output=True,
            text=True,
            check=False,
        )

    @staticmethod
    def _unique_dir(path: Path) -> Path:
        candidate = path
        counter = 1
        while candidate.exists():
            counter += 1
            candidate = path.with_name(f"{path.name}-{counter}")
        return candidate


def build_summary(
    record: ExecutionRecord,
    *,
    archived_at: str,
    copied: list[str],
    superseded: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    started = _parse_iso(record.created_at)
    completed = _parse_iso(record.updated_at)
    duration = (completed - started).total_seconds() if started and completed else None
    skills = [s for p in record.phases for s in p.skills]
    return {
        "loop": record.loop_id,
        "run_id": record.run_id,
        "remote_execution_id": record.remote_execution_id,
        "started_at": record.created_at,
        "completed_at": record.updated_at,
        "archived_at": archived_at,
        "duration_seconds": duration,
        "outcome": str(record.status),
        "phases_completed": [p.name for p in record.phases if p.status == PhaseStatus.COMPLETED],
        "phases": {p.name: {"status": str(p.status), "started_at": p.started_at, "completed_at": p.completed_at} for p in record.phases},
        "gates": {
            g.gate_id: {
                "status": str(g.status),
                "type": str(g.effective_type),
                "approved_by": g.approved_by,
                "skip_reason": g.skip_reason,
                "rework_rounds": len(g.feedback),
            }
            for g in record.gates.values()
        },
        "gates_passed": sorted(g.gate_id for g in record.gates.values() if g.status == GateStatus.PASSED),
        "skills_skipped": {s.skill_id: s.reason for s in skills if s.status == SkillStatus.SKIPPED},
        "items": record.iteration.to_dict() if record.iteration else None,
        "deliverables": {
            name: {"producer": d.producer, "durable": d.durable, "version": d.version, "archived": name in copied}
            for name, d in sorted(record.deliverables.items())
        },
        "superseded": list(superseded or []),
        "metrics": dict(record.metrics),
    }


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return _aware(datetime.fromisoformat(value))
    except ValueError:
        return None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True
