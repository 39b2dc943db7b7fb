"""Binary verification checks run by auto gates.

A check is either a ``module:function`` handler that receives a
:class:`CheckContext` and returns a bool (or ``(bool, detail)``), or a
shell command whose exit status decides the result (0 = pass).
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from loopwork.definition.models import CheckDef
from loopwork.errors import DefinitionError
from loopwork.record.models import Deliverable, ExecutionRecord
from loopwork.skills.executor import resolve_handler

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT = 600.0
_DETAIL_LINES = 20


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "detail": self.detail}


@dataclass(frozen=True)
class CheckContext:
    gate_id: str
    record: ExecutionRecord
    work_dir: Path
    inputs: Mapping[str, Deliverable] = field(default_factory=dict)


class CheckRunner:
    def __init__(
        self,
        work_dir: Path,
        *,
        env: Mapping[str, str] | None = None,
        default_timeout: float = DEFAULT_CHECK_TIMEOUT,
    ) -> None:
        self.work_dir = Path(work_dir)
        self.env = dict(env) if env is not None else None
        self.default_timeout = default_timeout

    def run(self, check: CheckDef, context: CheckContext) -> CheckResult:
        if check.command:
            return self._run_command(check, check.command)
        if check.handler is not None:
            return self._run_handler(check, context)
        return CheckResult(check.name, False, "check declares neither handler nor command")

    def _run_handler(self, check: CheckDef, context: CheckContext) -> CheckResult:
        try:
            handler = resolve_handler(check.handler)
        except DefinitionError as exc:
            return CheckResult(check.name, False, str(exc))
        try:
            outcome = handler(context)
        except Exception as exc:  # a crashing probe counts as a failing probe
            logger.warning("Check %s raised: %s", check.name, exc, exc_info=True)
            return CheckResult(check.name, False, f"{type(exc).__name__}: {exc}")

        if isinstance(outcome, CheckResult):
            return outcome
        if isinstance(outcome, tuple) and len(outcome) == 2:
            return CheckResult(check.name, bool(outcome[0]), str(outcome[1]))
        return CheckResult(check.name, bool(outcome))

    def _run_command(self, check: CheckDef, command: str) -> CheckResult:
        timeout = check.timeout or self.default_timeout
        env = {**os.environ, **self.env} if self.env is not None else None
        try:
            completed = subprocess.run(
                shlex.split(command),
                cwd=self.work_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
        except FileNotFoundError as exc:
            return CheckResult(check.name, False, f"command not found: {exc.filename}")
        except subprocess.TimeoutExpired:
            return CheckResult(check.name, False, f"timed out after {timeout:g}s")

        output = (completed.stdout or "") + (completed.stderr or "")
        tail = "\n".join(output.strip().splitlines()[-_DETAIL_LINES:])
        if completed.returncode == 0:
            return CheckResult(check.name, True, tail)
        return CheckResult(check.name, False, f"exit code {completed.returncode}\n{tail}".strip())
