"""HTTP client for one running `opencode serve` worker."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from .errors import RelayError


def _session_summary(value: Any, fallback_id: str | None = None) -> dict[str, Any] | None:
    if not isinstance(value, dict):
        return None
    sid = value.get("id")
    if not isinstance(sid, str):
        sid = value.get("sessionID") if isinstance(value.get("sessionID"), str) else fallback_id
    if not sid:
        return None

    summary: dict[str, Any] = {"id": sid}
    if isinstance(value.get("title"), str):
        summary["title"] = value["title"]

    updated = value.get("updatedAt")
    if not isinstance(updated, (int, float, str)) or isinstance(updated, bool):
        updated = value.get("lastActivity") if isinstance(value.get("lastActivity"), (int, float)) else None
    if updated is None:
        time_info = value.get("time")
        if isinstance(time_info, dict) and isinstance(time_info.get("updated"), (int, float)):
            updated = time_info["updated"]
    if updated is not None:
        summary["updatedAt"] = str(updated)

    status = value.get("status")
    if isinstance(status, str):
        summary["status"] = status
    elif isinstance(status, dict):
        summary["status"] = str(status.get("type") or "")
    return summary


def normalize_sessions_payload(payload: Any) -> list[dict[str, Any]]:
    """Accept a list, ``{"sessions": [...]}`` or an id-keyed map of sessions."""
    if isinstance(payload, list):
        items = [_session_summary(item) for item in payload]
    elif isinstance(payload, dict) and isinstance(payload.get("sessions"), list):
        items = [_session_summary(item) for item in payload["sessions"]]
    elif isinstance(payload, dict):
        items = [_session_summary(value, key) for key, value in payload.items()]
    else:
        return []
    return [item for item in items if item is not None]


class WorkerClient:
    """Thin async wrapper over the worker's fixed HTTP API."""

    def __init__(
        self,
        port: int,
        host: str = "127.0.0.1",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.port = port
        self.client = httpx.AsyncClient(
            base_url=f"http://{host}:{port}",
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "WorkerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        await self.aclose()

    async def healthy(self, path: str = "/global/health") -> bool:
        try:
            resp = await self.client.get(path, timeout=2.0)
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def session_statuses(self) -> dict[str, Any]:
        resp = await self.client.get("/session/status")
        resp.raise_for_status()
        data = resp.json()
        return data if isinstance(data, dict) else {}

    async def list_sessions(self) -> list[dict[str, Any]]:
        errors: list[str] = []
        try:
            resp = await self.client.get("/session")
            if resp.status_code >= 400:
                raise RuntimeError(f"GET /session returned {resp.status_code}")
            return normalize_sessions_payload(resp.json())
        except (httpx.HTTPError, ValueError, RuntimeError) as exc:
            errors.append(str(exc))

        try:
            statuses = await self.session_statuses()
            return [
                {"id": sid, **({"status": str(value["type"])} if isinstance(value, dict) and value.get("type") else {})}
                for sid, value in statuses.items()
            ]
        except (httpx.HTTPError, ValueError) as exc:
            errors.append(str(exc))

        raise RelayError(f"Unable to list sessions ({'; '.join(errors)})")

    async def create_session(self, title: str) -> str:
        try:
            resp = await self.client.post("/session", json={"title": title})
        except httpx.HTTPError as exc:
            raise RelayError(f"Failed to create session: {exc}") from exc
        if resp.status_code >= 400:
            raise RelayError(f"Failed to create session: {resp.status_code}")
        try:
            return str(resp.json()["id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise RelayError(f"Failed to create session: unexpected body {resp.text[:200]!r}") from exc

    async def prompt_async(
        self,
        session_id: str,
        message: str,
        model: dict[str, str] | None = None,
    ) -> None:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": message}]}
        if model:
            body["model"] = {"providerID": model["providerID"], "modelID": model["modelID"]}
        try:
            resp = await self.client.post(f"/session/{session_id}/prompt_async", json=body)
        except httpx.HTTPError as exc:
            raise RelayError(f"prompt_async failed: {exc}") from exc
        if resp.status_code >= 400:
            raise RelayError(f"prompt_async returned {resp.status_code}: {resp.text[:500]}")

    @asynccontextmanager
    async def events(self) -> AsyncIterator[httpx.Response]:
        """Open the worker's server-sent event feed."""
        try:
            async with self.client.stream(
                "GET",
                "/event",
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(10.0, read=None),
            ) as resp:
                if resp.status_code >= 400:
                    raise RelayError(f"SSE connection failed: {resp.status_code}")
                yield resp
        except httpx.HTTPError as exc:
            raise RelayError(f"SSE connection failed: {exc}") from exc

    async def submit_tool_result(self, session_id: str, tool_call_id: str, result: Any) -> bool:
        try:
            resp = await self.client.post(
                f"/session/{session_id}/tool",
                json={"toolCallId": tool_call_id, "result": result},
            )
        except httpx.HTTPError:
            return False
        return resp.status_code < 400

    async def model_catalog(self) -> dict[str, Any]:
        try:
            resp = await self.client.get("/provider")
        except httpx.HTTPError as exc:
            raise RelayError(f"Failed to get providers: {exc}") from exc
        if resp.status_code >= 400:
            raise RelayError(f"Failed to get providers: {resp.status_code}")
        data = resp.json()
        connected = set(data.get("connected") or [])
        providers = []
        for provider in data.get("all") or []:
            if not isinstance(provider, dict) or provider.get("id") not in connected:
                continue
            models = provider.get("models") or {}
            if isinstance(models, dict):
                models = list(models.values())
            providers.append(
                {
                    "id": provider.get("id"),
                    "name": provider.get("name"),
                    "models": [
                        {"id": m.get("id"), "name": m.get("name"), "providerID": m.get("providerID")}
                        for m in models
                        if isinstance(m, dict)
                    ],
                }
            )

        default_model: Any = None
        try:
            config_resp = await self.client.get("/config/providers")
            if config_resp.status_code < 400:
                default_model = config_resp.json().get("default") or None
        except (httpx.HTTPError, ValueError, AttributeError):
            default_model = None
        return {"providers": providers, "default": default_model}
