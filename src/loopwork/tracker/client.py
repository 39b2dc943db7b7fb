"""Remote coordination endpoint clients.

:class:`HttpCoordinationClient` speaks the execution REST protocol with
``httpx``; :class:`NullCoordinationClient` is used when no server is
configured. Every mutating call carries an ``Idempotency-Key`` header so a
retried request is safe.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Protocol

import httpx

from loopwork.errors import RemoteSyncError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = frozenset({408, 425, 429})


def idempotency_key(*parts: object) -> str:
    """Deterministic key for one logical event (identical across retries)."""
    canonical = json.dumps([str(part) for part in parts], separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CoordinationClient(Protocol):
    def start_execution(self, loop_id: str, project: str, *, key: str) -> dict[str, Any]: ...

    def complete_skill(self, execution_id: str, skill_id: str, deliverables: list[str], *, key: str) -> None: ...

    def complete_phase(self, execution_id: str, phase: str, *, key: str) -> None: ...

    def approve_gate(self, execution_id: str, gate_id: str, approved_by: str, *, key: str) -> None: ...

    def advance_phase(self, execution_id: str, from_phase: str, to_phase: str | None, *, key: str) -> None: ...


class NullCoordinationClient:
    """No remote endpoint: start yields no id, so the run stays local-only."""

    enabled = False

    def start_execution(self, loop_id: str, project: str, *, key: str) -> dict[str, Any]:
        return {}

    def complete_skill(self, execution_id: str, skill_id: str, deliverables: list[str], *, key: str) -> None:
        return None

    def complete_phase(self, execution_id: str, phase: str, *, key: str) -> None:
        return None

    def approve_gate(self, execution_id: str, gate_id: str, approved_by: str, *, key: str) -> None:
        return None

    def advance_phase(self, execution_id: str, from_phase: str, to_phase: str | None, *, key: str) -> None:
        return None


class HttpCoordinationClient:
    enabled = True

    def __init__(
        self,
        server_url: str,
        *,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.server_url = server_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.server_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpCoordinationClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start_execution(self, loop_id: str, project: str, *, key: str) -> dict[str, Any]:
        body = self._request("POST", "/api/executions", {"loopId": loop_id, "project": project}, key)
        if not isinstance(body, dict) or not body.get("id"):
            raise RemoteSyncError("Start response did not include an execution id", transient=False)
        return body

    def complete_skill(self, execution_id: str, skill_id: str, deliverables: list[str], *, key: str) -> None:
        self._request(
            "PUT",
            f"/api/executions/{execution_id}/skills/{skill_id}/complete",
            {"result": {"deliverables": deliverables}},
            key,
        )

    def complete_phase(self, execution_id: str, phase: str, *, key: str) -> None:
        self._request("PUT", f"/api/executions/{execution_id}/complete-phase", {"phase": phase}, key)

    def approve_gate(self, execution_id: str, gate_id: str, approved_by: str, *, key: str) -> None:
        self._request(
            "PUT",
            f"/api/executions/{execution_id}/gates/{gate_id}/approve",
            {"approvedBy": approved_by},
            key,
        )

    def advance_phase(self, execution_id: str, from_phase: str, to_phase: str | None, *, key: str) -> None:
        self._request(
            "PUT",
            f"/api/executions/{execution_id}/advance",
            {"from": from_phase, "to": to_phase},
            key,
        )

    def _request(self, method: str, path: str, payload: dict[str, Any], key: str) -> Any:
        try:
            response = self._client.request(method, path, json=payload, headers={"Idempotency-Key": key})
        except httpx.HTTPError as exc:
            raise RemoteSyncError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            transient = response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS
            detail = _error_detail(response)
            raise RemoteSyncError(
                f"{method} {path} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
                transient=transient,
            )

        if "application/json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteSyncError(
                    f"{method} {path} returned a malformed JSON body",
                    status_code=response.status_code,
                    transient=False,
                ) from exc
        return response.text


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return str(body)[:200]
