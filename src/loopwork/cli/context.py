"""Wiring between the CLI and the engine for one project directory."""

from __future__ import annotations

import getpass
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from loopwork.archive.archival import ArchiveResult, ArchiveService
from loopwork.config import LoopworkConfig, load_config, locate_project_root, save_config, state_dir
from loopwork.definition.loader import load_definition
from loopwork.definition.models import LoopDefinition
from loopwork.errors import LoopworkError
from loopwork.record.models import ExecutionRecord
from loopwork.record.session import RunSession
from loopwork.record.store import FileRecordStore
from loopwork.scheduler.engine import PhaseScheduler
from loopwork.tracker.client import HttpCoordinationClient
from loopwork.tracker.tracker import ExecutionTracker

logger = logging.getLogger(__name__)

LOCK_FILE = "execution.lock"
RUNS_DIR = "runs"


def current_operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "operator"


@dataclass
class ProjectContext:
    root: Path
    config: LoopworkConfig
    archived: list[ArchiveResult] = field(default_factory=list)
    _tracker: ExecutionTracker | None = field(default=None, init=False, repr=False)

    @classmethod
    def discover(cls, start: Path | None = None, *, create: bool = False) -> ProjectContext:
        """Find the enclosing project, or initialize *start* when *create* is set."""
        origin = (start or Path.cwd()).resolve()
        root = locate_project_root(origin)
        if root is None:
            if not create:
                raise LoopworkError(
                    f"No .loopwork/ directory found from {origin}. Run 'loopwork start' in the project root."
                )
            root = origin
            state_dir(root).mkdir(parents=True, exist_ok=True)
            save_config(root, LoopworkConfig())
            logger.info("Initialized %s", state_dir(root))
        return cls(root=root, config=load_config(root))

    @property
    def state_dir(self) -> Path:
        return state_dir(self.root)

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / RUNS_DIR

    def store(self) -> FileRecordStore:
        return FileRecordStore(self.state_dir)

    @contextmanager
    def session(self) -> Iterator[RunSession]:
        """Hold the run lock; the remote client is closed when the session ends."""
        try:
            with RunSession(self.store(), lock_path=self.state_dir / LOCK_FILE) as session:
                yield session
        finally:
            self.close()

    def definition_path(self, explicit: str | None = None, record: ExecutionRecord | None = None) -> Path:
        if explicit:
            return (self.root / explicit).resolve() if not Path(explicit).is_absolute() else Path(explicit)
        if record is not None and record.definition_path and Path(record.definition_path).exists():
            return Path(record.definition_path)
        return self.root / self.config.definition

    def load_definition(self, explicit: str | None = None, record: ExecutionRecord | None = None) -> LoopDefinition:
        return load_definition(self.definition_path(explicit, record))

    def tracker(self) -> ExecutionTracker:
        if self._tracker is None:
            settings = self.config.tracker
            client = None
            if settings.server_url:
                client = HttpCoordinationClient(settings.server_url, token=settings.token, timeout=settings.timeout)
            self._tracker = ExecutionTracker(
                client,
                project=settings.project or self.root.name,
                attempts=settings.attempts,
                retry_delay=settings.retry_delay,
            )
        return self._tracker

    def close(self) -> None:
        if self._tracker is not None:
            self._tracker.close()
            self._tracker = None

    def archive_service(self) -> ArchiveService:
        settings = self.config.archive
        return ArchiveService(
            settings.root_path,
            self.root,
            git_commit=settings.git_commit,
            keep=settings.keep,
        )

    def _on_complete(self, store: FileRecordStore):
        def finalize(record: ExecutionRecord) -> None:
            run_dir = self.runs_dir / record.run_id
            self.archived.append(self.archive_service().finalize(record, store, run_dir))

        return finalize

    def begin(
        self,
        definition: LoopDefinition,
        *,
        seeds: dict[str, str | None] | None = None,
        items: list[str] | None = None,
    ) -> PhaseScheduler:
        store = self.store()
        return PhaseScheduler.begin(
            definition,
            store,
            work_dir=self.root,
            seeds=seeds,
            items=items,
            run_dir_root=self.runs_dir,
            tracker=self.tracker(),
            on_complete=self._on_complete(store),
            env=os.environ,
        )

    def scheduler(self, definition: LoopDefinition, record: ExecutionRecord) -> PhaseScheduler:
        store = self.store()
        return PhaseScheduler(
            definition,
            record,
            store,
            work_dir=self.root,
            run_dir=self.runs_dir / record.run_id,
            tracker=self.tracker(),
            on_complete=self._on_complete(store),
            env=os.environ,
        )
