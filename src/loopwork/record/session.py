"""Acquire/release semantics around the execution record.

An active record is the logical lock for a working context: a new run may
not start while one exists unless the caller explicitly resumes it or
restarts (which sets the old record aside, never overwrites it). A
:class:`RunSession` over a file store additionally holds a
:class:`filelock.FileLock` so two processes cannot drive the same
directory at once.
"""

from __future__ import annotations

import logging
from pathlib import Path

from filelock import FileLock, Timeout

from loopwork.errors import ConcurrentInvocation

from .models import ExecutionRecord, RunStatus
from .store import RecordStore

logger = logging.getLogger(__name__)


class RunSession:
    """Exclusive access to one working context's execution record."""

    def __init__(
        self,
        store: RecordStore,
        *,
        lock_path: Path | None = None,
        lock_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.lock_path = lock_path
        self.lock_timeout = lock_timeout
        self.record: ExecutionRecord | None = None
        self._lock: FileLock | None = None

    @property
    def held(self) -> bool:
        return self._lock is not None and self._lock.is_locked

    def acquire(self, *, resume: bool = False, restart: bool = False) -> ExecutionRecord | None:
        """Take the session and load the current record.

        Args:
            resume: Continue an active run.
            restart: Set an active run aside and start cold.

        Returns:
            The record to continue, or ``None`` for a cold start.

        Raises:
            ConcurrentInvocation: Another process holds the lock, or an
                active record exists and neither *resume* nor *restart*
                was requested.
            StateCorruption: The persisted record is invalid.
        """
        if resume and restart:
            raise ValueError("resume and restart are mutually exclusive")

        self._take_lock()
        try:
            record = self.store.load()
            if record is not None and record.status != RunStatus.COMPLETED and not (resume or restart):
                raise ConcurrentInvocation(record)
            if record is not None and restart:
                moved = self.store.set_aside("abandoned")
                logger.info("Restarting: previous run %s set aside as %s", record.run_id, moved)
                record = None
            if record is not None and record.status == RunStatus.COMPLETED:
                logger.debug("Completed record %s found; treating as cold start", record.run_id)
                record = None
        except BaseException:
            self.release()
            raise

        self.record = record
        return record

    def release(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def _take_lock(self) -> None:
        if self.lock_path is None or self._lock is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_path), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as exc:
            raise ConcurrentInvocation(
                None,
                f"Another loopwork process holds {self.lock_path}; wait for it to finish.",
            ) from exc
        self._lock = lock

    def __enter__(self) -> RunSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
