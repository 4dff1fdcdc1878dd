"""Adapter for the hosted request queue (a Convex deployment).

Only Convex's public HTTP function API is used: ``POST /api/query`` and
``POST /api/mutation``. Optional arguments are omitted rather than sent as
null, which Convex validators reject.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from .errors import QueueError, ValidationError
from .logging_utils import JsonlLogger, null_logger


class RequestType(str, Enum):
    AUTHENTICATE = "authenticate"
    REFRESH_JWT = "refresh_jwt"
    LIST_DIRS = "list_dirs"
    START_OPENCODE = "start_opencode"
    STOP_OPENCODE = "stop_opencode"
    RELAY_MESSAGE = "relay_message"
    GET_PROVIDERS = "get_providers"

    @classmethod
    def parse(cls, raw: Any) -> "RequestType":
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(f"Unknown request type: {raw}") from None


@dataclass
class QueuedRequest:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    jwt: str | None = None
    client_id: str | None = None

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "QueuedRequest":
        payload = doc.get("payload")
        return cls(
            id=str(doc.get("_id") or doc.get("id") or ""),
            type=str(doc.get("type") or ""),
            payload=payload if isinstance(payload, dict) else {},
            jwt=doc.get("jwt") or None,
            client_id=doc.get("clientId"),
        )


def _compact(args: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in args.items() if value is not None}


class ConvexQueue:
    def __init__(
        self,
        url: str,
        *,
        logger: JsonlLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.url = url.rstrip("/")
        self.logger = logger or null_logger("queue")
        self.client = httpx.AsyncClient(base_url=self.url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _call(self, kind: str, path: str, args: dict[str, Any]) -> Any:
        body = {"path": path, "args": _compact(args), "format": "json"}
        try:
            resp = await self.client.post(f"/api/{kind}", json=body)
        except httpx.HTTPError as exc:
            raise QueueError(f"{path}: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise QueueError(f"{path}: HTTP {resp.status_code} {resp.text[:200]}") from exc
        if not isinstance(data, dict) or data.get("status") != "success":
            message = data.get("errorMessage") if isinstance(data, dict) else None
            raise QueueError(f"{path}: {message or f'HTTP {resp.status_code}'}")
        return data.get("value")

    async def query(self, path: str, **args: Any) -> Any:
        return await self._call("query", path, args)

    async def mutation(self, path: str, **args: Any) -> Any:
        return await self._call("mutation", path, args)

    # -- request lifecycle -------------------------------------------------

    async def get_pending(self, host_id: str) -> list[QueuedRequest]:
        docs = await self.query("requests:getPendingForHost", hostId=host_id)
        if not isinstance(docs, list):
            return []
        return [QueuedRequest.from_document(doc) for doc in docs if isinstance(doc, dict)]

    async def mark_processing(self, request_id: str) -> None:
        await self.mutation("requests:markProcessing", requestId=request_id)

    async def mark_completed(self, request_id: str, response: dict[str, Any]) -> None:
        await self.mutation("requests:markCompleted", requestId=request_id, response=_compact(response))

    async def mark_failed(self, request_id: str, error: str) -> None:
        await self.mutation("requests:markFailed", requestId=request_id, error=error)

    # -- relay output sink ---------------------------------------------------

    async def update_partial_response(self, request_id: str, text: str | None, reasoning: str | None) -> None:
        await self.mutation("requests:updatePartialResponse", requestId=request_id, text=text, reasoning=reasoning)

    async def add_message_part(
        self, request_id: str, part_type: str, content: str, metadata: dict[str, Any] | None = None
    ) -> None:
        await self.mutation(
            "requests:addMessagePart",
            requestId=request_id,
            partType=part_type,
            content=content,
            metadata=metadata,
        )

    async def set_pending_tool(self, request_id: str, tool_name: str, tool_input: Any, tool_call_id: str) -> None:
        await self.mutation(
            "requests:setPendingTool",
            requestId=request_id,
            toolName=tool_name,
            toolInput=tool_input,
            toolCallId=tool_call_id,
        )

    async def get_tool_status(self, request_id: str) -> dict[str, Any] | None:
        value = await self.query("requests:getToolStatus", requestId=request_id)
        return value if isinstance(value, dict) else None

    # -- host presence -----------------------------------------------------

    async def update_host_status(
        self,
        host_id: str,
        active_directories: list[dict[str, Any]],
        version: str,
        platform: str,
    ) -> None:
        await self.mutation(
            "hosts:updateStatus",
            hostId=host_id,
            status="online",
            activeDirectories=active_directories,
            version=version,
            platform=platform,
        )

    async def mark_offline(self, host_id: str) -> None:
        await self.mutation("hosts:markOffline", hostId=host_id)
