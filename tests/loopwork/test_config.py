"""Tests for project configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from loopwork.config import ConfigError, LoopworkConfig, config_path, load_config, locate_project_root, save_config


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        config = load_config(tmp_path, env={})
        assert config.definition == "loop.yaml"
        assert not config.tracker.is_configured
        assert config.archive.keep is None

    def test_file_values(self, tmp_path: Path) -> None:
        path = config_path(tmp_path)
        path.parent.mkdir()
        path.write_text(
            "definition: loops/release.yaml\n"
            "tracker:\n  server_url: https://coord.example.com\n  attempts: 5\n"
            "archive:\n  keep: 3\n  git_commit: true\n",
            encoding="utf-8",
        )
        config = load_config(tmp_path, env={})
        assert config.definition == "loops/release.yaml"
        assert config.tracker.is_configured
        assert config.tracker.attempts == 5
        assert config.archive.keep == 3
        assert config.archive.git_commit

    def test_environment_overrides(self, tmp_path: Path) -> None:
        config = load_config(
            tmp_path,
            env={"LOOPWORK_SERVER_URL": " https://other ", "LOOPWORK_TOKEN": "t0k", "LOOPWORK_ARCHIVE_ROOT": "/srv/runs"},
        )
        assert config.tracker.server_url == "https://other"
        assert config.tracker.token == "t0k"
        assert config.archive.root_path == Path("/srv/runs")

    def test_non_numeric_timeout(self, tmp_path: Path) -> None:
        path = config_path(tmp_path)
        path.parent.mkdir()
        path.write_text("tracker:\n  timeout: soon\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="'timeout' must be a number"):
            load_config(tmp_path, env={})


def test_save_keeps_unrelated_sections_and_never_writes_token(tmp_path: Path) -> None:
    path = config_path(tmp_path)
    path.parent.mkdir()
    path.write_text("# team settings\nnotify: ops@example.com\n", encoding="utf-8")
    config = LoopworkConfig()
    config.tracker.token = "secret"

    save_config(tmp_path, config)

    text = path.read_text(encoding="utf-8")
    assert "notify: ops@example.com" in text
    assert "# team settings" in text
    assert "secret" not in text


def test_locate_project_root_walks_up(tmp_path: Path) -> None:
    (tmp_path / ".loopwork").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert locate_project_root(nested) == tmp_path.resolve()
