"""Tests for CLI project wiring."""

from __future__ import annotations

from pathlib import Path

import pytest

from loopwork.cli.context import ProjectContext
from loopwork.tracker.client import HttpCoordinationClient


@pytest.fixture
def ctx(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ProjectContext:
    monkeypatch.delenv("LOOPWORK_SERVER_URL", raising=False)
    context = ProjectContext.discover(tmp_path, create=True)
    context.config.tracker.server_url = "https://coord.example.com"
    return context


def test_tracker_is_shared_within_a_session(ctx: ProjectContext) -> None:
    with ctx.session():
        assert ctx.tracker() is ctx.tracker()


def test_session_exit_closes_remote_client(ctx: ProjectContext) -> None:
    with ctx.session():
        client = ctx.tracker().client
    assert isinstance(client, HttpCoordinationClient)
    assert client._client.is_closed


def test_session_closes_client_on_error(ctx: ProjectContext) -> None:
    with pytest.raises(RuntimeError):
        with ctx.session():
            client = ctx.tracker().client
            raise RuntimeError("boom")
    assert client._client.is_closed
