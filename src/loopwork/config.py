"""Project configuration in ``.loopwork/config.yaml``.

Sections::

    definition: loop.yaml
    tracker:
      server_url: https://coord.example.com
      project: my-project
      timeout: 10
      attempts: 3
      retry_delay: 0.5
    archive:
      root: ~/.loopwork/archive
      git_commit: false
      keep: 10

Environment overrides: ``LOOPWORK_SERVER_URL``, ``LOOPWORK_TOKEN``,
``LOOPWORK_PROJECT``, ``LOOPWORK_ARCHIVE_ROOT``. The token is only read
from the environment and never written to disk.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from loopwork.errors import LoopworkError

CONFIG_DIR = ".loopwork"
CONFIG_FILE = "config.yaml"
DEFAULT_ARCHIVE_ROOT = "~/.loopwork/archive"


class ConfigError(LoopworkError):
    """Raised when configuration is invalid."""


@dataclass(slots=True)
class TrackerSettings:
    server_url: str | None = None
    token: str | None = None
    project: str | None = None
    timeout: float = 10.0
    attempts: int = 3
    retry_delay: float = 0.5

    @property
    def is_configured(self) -> bool:
        return bool(self.server_url)

    def to_dict(self) -> dict[str, object]:
        return {
            "server_url": self.server_url,
            "project": self.project,
            "timeout": self.timeout,
            "attempts": self.attempts,
            "retry_delay": self.retry_delay,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> TrackerSettings:
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            server_url=_optional_str(data.get("server_url")),
            project=_optional_str(data.get("project")),
            timeout=_number(data, "timeout", 10.0),
            attempts=int(_number(data, "attempts", 3)),
            retry_delay=_number(data, "retry_delay", 0.5),
        )


@dataclass(slots=True)
class ArchiveSettings:
    root: str = DEFAULT_ARCHIVE_ROOT
    git_commit: bool = False
    keep: int | None = None

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()

    def to_dict(self) -> dict[str, object]:
        return {"root": self.root, "git_commit": self.git_commit, "keep": self.keep}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ArchiveSettings:
        if not isinstance(data, Mapping):
            return cls()
        keep = data.get("keep")
        return cls(
            root=_optional_str(data.get("root")) or DEFAULT_ARCHIVE_ROOT,
            git_commit=bool(data.get("git_commit", False)),
            keep=int(keep) if keep is not None else None,
        )


@dataclass(slots=True)
class LoopworkConfig:
    definition: str = "loop.yaml"
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)

    def apply_env(self, env: Mapping[str, str]) -> LoopworkConfig:
        if env.get("LOOPWORK_SERVER_URL"):
            self.tracker.server_url = env["LOOPWORK_SERVER_URL"].strip()
        if env.get("LOOPWORK_TOKEN"):
            self.tracker.token = env["LOOPWORK_TOKEN"].strip()
        if env.get("LOOPWORK_PROJECT"):
            self.tracker.project = env["LOOPWORK_PROJECT"].strip()
        if env.get("LOOPWORK_ARCHIVE_ROOT"):
            self.archive.root = env["LOOPWORK_ARCHIVE_ROOT"].strip()
        return self


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _number(data: Mapping[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    return float(value)


def state_dir(project_root: Path) -> Path:
    return project_root / CONFIG_DIR


def config_path(project_root: Path) -> Path:
    return state_dir(project_root) / CONFIG_FILE


def locate_project_root(start: Path) -> Path | None:
    """Walk up from *start* to the first directory containing ``.loopwork/``."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / CONFIG_DIR).is_dir():
            return candidate
    return None


def _read_payload(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    yaml = YAML()
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.load(handle) or {}
    except YAMLError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    return payload if isinstance(payload, dict) else {}


def load_config(project_root: Path, env: Mapping[str, str] | None = None) -> LoopworkConfig:
    payload = _read_payload(config_path(project_root))
    config = LoopworkConfig(
        definition=_optional_str(payload.get("definition")) or "loop.yaml",
        tracker=TrackerSettings.from_dict(payload.get("tracker")),
        archive=ArchiveSettings.from_dict(payload.get("archive")),
    )
    return config.apply_env(os.environ if env is None else env)


def save_config(project_root: Path, config: LoopworkConfig) -> None:
    """Persist config, preserving unrelated sections and comments."""
    path = config_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)

    yaml = YAML()
    yaml.preserve_quotes = True
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.load(handle) or {}
    else:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    payload["definition"] = config.definition
    payload["tracker"] = config.tracker.to_dict()
    payload["archive"] = config.archive.to_dict()

    with path.open("w", encoding="utf-8") as handle:
        yaml.dump(payload, handle)
