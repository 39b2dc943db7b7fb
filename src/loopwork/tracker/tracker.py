"""Best-effort mirror of local transitions to the remote coordination endpoint.

The remote execution id is obtained once when the run starts and persisted
in the execution record; it is never recreated. Each mirrored event gets a
bounded number of attempts with a fixed delay. When they are exhausted
the tracker degrades to local-only mode; while degraded every event gets
a single attempt, and the first success resumes normal mirroring with the
same id. The degraded flag is kept on the record so a later invocation
does not spend the full retry budget on an endpoint already known to be
down.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from loopwork.errors import RemoteSyncError
from loopwork.record.models import ExecutionRecord

from .client import CoordinationClient, NullCoordinationClient, idempotency_key

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 0.5


class ExecutionTracker:
    def __init__(
        self,
        client: CoordinationClient | None = None,
        *,
        project: str = "",
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.client: CoordinationClient = client or NullCoordinationClient()
        self.project = project
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.degraded = False
        self.failed_events: list[str] = []

    @property
    def enabled(self) -> bool:
        return bool(getattr(self.client, "enabled", True))

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    def start(self, record: ExecutionRecord) -> dict[str, Any] | None:
        """Create the remote execution once; returns its pre-run context.

        A record that already carries a remote id is never re-registered.
        If the start call fails, the run continues local-only.
        """
        if record.remote_execution_id or not self.enabled:
            return None

        key = idempotency_key("start", record.loop_id, record.run_id)
        body = self._call(
            record,
            "start",
            lambda: self.client.start_execution(record.loop_id, self.project or record.loop_id, key=key),
        )
        if not body:
            logger.warning("Remote execution not created; run %s continues local-only", record.run_id)
            return None

        record.remote_execution_id = str(body["id"])
        context = body.get("preLoopContext") or body.get("pre_run_context")
        if isinstance(context, dict):
            record.pre_run_context = context
        logger.info("Remote execution %s linked to run %s", record.remote_execution_id, record.run_id)
        return record.pre_run_context

    def skill_completed(self, record: ExecutionRecord, skill_id: str, deliverables: list[str], attempt: int) -> bool:
        return self._mirror(
            record,
            "skill-complete",
            lambda rid, key: self.client.complete_skill(rid, skill_id, deliverables, key=key),
            skill_id,
            attempt,
        )

    def phase_completed(self, record: ExecutionRecord, phase: str) -> bool:
        return self._mirror(
            record,
            "phase-complete",
            lambda rid, key: self.client.complete_phase(rid, phase, key=key),
            phase,
            _pass_count(record),
        )

    def gate_approved(self, record: ExecutionRecord, gate_id: str, approved_by: str) -> bool:
        return self._mirror(
            record,
            "gate-approve",
            lambda rid, key: self.client.approve_gate(rid, gate_id, approved_by, key=key),
            gate_id,
            _pass_count(record),
            len(record.gates[gate_id].feedback) if gate_id in record.gates else 0,
        )

    def phase_advanced(self, record: ExecutionRecord, from_phase: str, to_phase: str | None) -> bool:
        return self._mirror(
            record,
            "phase-advance",
            lambda rid, key: self.client.advance_phase(rid, from_phase, to_phase, key=key),
            from_phase,
            to_phase,
            _pass_count(record),
        )

    def _mirror(
        self,
        record: ExecutionRecord,
        kind: str,
        send: Callable[[str, str], None],
        *discriminators: object,
    ) -> bool:
        remote_id = record.remote_execution_id
        if not remote_id:
            return False
        key = idempotency_key(kind, remote_id, record.current_item, *discriminators)
        sent = self._call(record, kind, lambda: send(remote_id, key))
        return sent is not _FAILED

    def _call(self, record: ExecutionRecord, kind: str, fn: Callable[[], Any]) -> Any:
        if record.remote_degraded:
            self.degraded = True
        attempts = 1 if self.degraded else self.attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                result = fn()
            except RemoteSyncError as exc:
                last_error = exc
                logger.debug("Remote %s attempt %d/%d failed: %s", kind, attempt, attempts, exc)
                if not exc.transient:
                    break
                if attempt < attempts:
                    self._sleep(self.retry_delay)
                continue
            except Exception as exc:
                # A misbehaving client must not break the local state machine.
                last_error = exc
                logger.debug("Remote %s raised unexpectedly", kind, exc_info=True)
                break
            if self.degraded:
                logger.info("Remote sync restored on %s; resuming mirroring", kind)
                self.degraded = False
            record.remote_degraded = False
            return result

        self.failed_events.append(kind)
        if not self.degraded:
            logger.warning(
                "Remote sync degraded after %s failed (%s); continuing in local-only mode",
                kind,
                last_error,
            )
        self.degraded = True
        record.remote_degraded = True
        return _FAILED


class _Failed:
    def __bool__(self) -> bool:
        return False


_FAILED = _Failed()


def _pass_count(record: ExecutionRecord) -> int:
    return len(record.iteration.completed) if record.iteration else 0
