"""Tests for the HTTP coordination client."""

from __future__ import annotations

import json

import httpx
import pytest

from loopwork.errors import RemoteSyncError
from loopwork.tracker.client import HttpCoordinationClient, idempotency_key


def _client(handler) -> HttpCoordinationClient:
    return HttpCoordinationClient("https://coord.example.com/", token="secret", transport=httpx.MockTransport(handler))


class TestRequests:
    def test_start_execution(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "exec-1", "preLoopContext": {"notes": "hi"}})

        body = _client(handler).start_execution("release", "acme", key="k1")

        assert body["id"] == "exec-1"
        request = seen[0]
        assert request.method == "POST"
        assert request.url == "https://coord.example.com/api/executions"
        assert json.loads(request.content) == {"loopId": "release", "project": "acme"}
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["Idempotency-Key"] == "k1"

    @pytest.mark.parametrize(
        "call,path,payload",
        [
            (lambda c: c.complete_skill("e1", "write", ["notes"], key="k"), "/api/executions/e1/skills/write/complete", {"result": {"deliverables": ["notes"]}}),
            (lambda c: c.complete_phase("e1", "draft", key="k"), "/api/executions/e1/complete-phase", {"phase": "draft"}),
            (lambda c: c.approve_gate("e1", "review", "ana", key="k"), "/api/executions/e1/gates/review/approve", {"approvedBy": "ana"}),
            (lambda c: c.advance_phase("e1", "draft", "publish", key="k"), "/api/executions/e1/advance", {"from": "draft", "to": "publish"}),
        ],
    )
    def test_mirroring_routes(self, call, path: str, payload: dict) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        call(_client(handler))

        assert seen[0].method == "PUT"
        assert seen[0].url.path == path
        assert json.loads(seen[0].content) == payload


class TestErrors:
    def test_server_error_is_transient(self) -> None:
        client = _client(lambda request: httpx.Response(503, json={"error": "maintenance"}))
        with pytest.raises(RemoteSyncError) as excinfo:
            client.complete_phase("e1", "draft", key="k")
        assert excinfo.value.transient
        assert excinfo.value.status_code == 503
        assert "maintenance" in str(excinfo.value)

    def test_bad_request_is_permanent(self) -> None:
        client = _client(lambda request: httpx.Response(400, json={"error": "unknown gate"}))
        with pytest.raises(RemoteSyncError) as excinfo:
            client.approve_gate("e1", "nope", "ana", key="k")
        assert not excinfo.value.transient

    def test_rate_limit_is_transient(self) -> None:
        client = _client(lambda request: httpx.Response(429, text="slow down"))
        with pytest.raises(RemoteSyncError) as excinfo:
            client.complete_phase("e1", "draft", key="k")
        assert excinfo.value.transient

    def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteSyncError) as excinfo:
            _client(handler).complete_phase("e1", "draft", key="k")
        assert excinfo.value.transient

    def test_start_without_id(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(RemoteSyncError) as excinfo:
            client.start_execution("release", "acme", key="k")
        assert not excinfo.value.transient

    def test_malformed_json_body_is_permanent(self) -> None:
        client = _client(
            lambda request: httpx.Response(200, headers={"content-type": "application/json"}, content=b"")
        )
        with pytest.raises(RemoteSyncError) as excinfo:
            client.complete_phase("e1", "draft", key="k")
        assert not excinfo.value.transient
        assert "malformed" in str(excinfo.value)


def test_idempotency_key_is_deterministic() -> None:
    assert idempotency_key("a", 1, None) == idempotency_key("a", "1", "None")
    assert idempotency_key("a", 1) != idempotency_key("a", 2)
