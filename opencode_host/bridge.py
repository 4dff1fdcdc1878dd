"""Relay one queued chat message through a worker's streaming event feed.

Each in-flight relay is a small state machine::

    STREAMING -> AWAITING_TOOL -> STREAMING -> COMPLETED | FAILED

Partial output goes to a ``RelaySink`` (the hosted queue in production)
throttled to one write per push interval, plus one forced write on completion.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

import httpx

from .config import RuntimeSettings
from .errors import QueueError, RelayError
from .logging_utils import JsonlLogger, null_logger
from .supervisor import WorkerSupervisor
from .worker_api import WorkerClient


RELAY_SESSION_TITLE = "Remote relay"
NO_RESPONSE = "(No response)"


class RelaySink(Protocol):
    async def update_partial_response(self, request_id: str, text: str | None, reasoning: str | None) -> None: ...

    async def add_message_part(
        self, request_id: str, part_type: str, content: str, metadata: dict[str, Any] | None = None
    ) -> None: ...

    async def set_pending_tool(self, request_id: str, tool_name: str, tool_input: Any, tool_call_id: str) -> None: ...

    async def get_tool_status(self, request_id: str) -> dict[str, Any] | None: ...


class RelayState(str, Enum):
    STREAMING = "streaming"
    AWAITING_TOOL = "awaiting_tool"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PendingToolInvocation:
    request_id: str
    tool_name: str
    tool_input: Any
    tool_call_id: str
    session_id: str
    port: int


@dataclass
class RelayResult:
    ai_response: str
    reasoning: str

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {"aiResponse": self.ai_response}
        if self.reasoning:
            response["reasoning"] = self.reasoning
        return response


def _classify(raw_type: Any) -> str:
    normalized = raw_type.lower() if isinstance(raw_type, str) else ""
    if "reasoning" in normalized or "thinking" in normalized:
        return "reasoning"
    return "text"


def _part_type(props: dict[str, Any]) -> Any:
    part = props.get("part") if isinstance(props.get("part"), dict) else {}
    return part.get("type") or props.get("type") or props.get("partType")


def _event_session(props: dict[str, Any]) -> Any:
    if props.get("sessionID"):
        return props["sessionID"]
    for key in ("part", "info"):
        nested = props.get(key)
        if isinstance(nested, dict) and nested.get("sessionID"):
            return nested["sessionID"]
    return None


@dataclass
class _RelayRun:
    request_id: str
    port: int
    directory: str
    session_id: str = ""
    state: RelayState = RelayState.STREAMING
    deadline: float = 0.0
    text: str = ""
    reasoning: str = ""
    assistant_message_id: str | None = None
    part_kinds: dict[str, str] = field(default_factory=dict)
    added_parts: set[str] = field(default_factory=set)
    last_push: float = float("-inf")
    partial_writes: int = 0
    push_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RelayBridge:
    def __init__(
        self,
        supervisor: WorkerSupervisor,
        sink: RelaySink,
        settings: RuntimeSettings | None = None,
        *,
        logger: JsonlLogger | None = None,
        client_factory: Callable[[int], WorkerClient] = WorkerClient,
    ) -> None:
        self.supervisor = supervisor
        self.sink = sink
        self.settings = settings or RuntimeSettings()
        self.logger = logger or null_logger("bridge")
        self._client_factory = client_factory

        self.relay_sessions: dict[str, str] = {}
        self.pending: dict[str, PendingToolInvocation] = {}
        supervisor.add_listener(self._on_worker_event)

    def _on_worker_event(self, event: str, directory: str) -> None:
        if event == "released" and self.relay_sessions.pop(directory, None) is not None:
            self.logger.event("debug", "relay.session.dropped", directory=directory)

    # -- session acquisition ----------------------------------------------

    async def acquire_session(self, client: WorkerClient, directory: str, preferred: str | None = None) -> str:
        if preferred:
            return preferred

        existing = self.relay_sessions.get(directory)
        if existing:
            try:
                statuses = await client.session_statuses()
            except (httpx.HTTPError, ValueError) as exc:
                self.logger.event("warn", "relay.session.status_error", directory=directory, error=str(exc))
                statuses = {}
            status = statuses.get(existing)
            if isinstance(status, dict) and status.get("type") == "idle":
                return existing
            self.logger.event(
                "info",
                "relay.session.replace",
                directory=directory,
                session_id=existing,
                reason="busy" if status else "missing",
            )
            self.relay_sessions.pop(directory, None)

        session_id = await client.create_session(RELAY_SESSION_TITLE)
        self.relay_sessions[directory] = session_id
        self.logger.event("info", "relay.session.created", directory=directory, session_id=session_id)
        return session_id

    # -- sink writes -------------------------------------------------------

    async def _add_part(self, run: _RelayRun, key: str, part_type: str, content: str, metadata: Any = None) -> None:
        if key in run.added_parts:
            return
        run.added_parts.add(key)
        try:
            await self.sink.add_message_part(run.request_id, part_type, content, metadata)
        except QueueError as exc:
            self.logger.event("warn", "relay.part.error", request_id=run.request_id, error=str(exc))

    async def _push(self, run: _RelayRun, force: bool = False) -> None:
        if not run.text and not run.reasoning:
            return
        if not force and run.push_lock.locked():
            return
        async with run.push_lock:
            now = asyncio.get_running_loop().time()
            if not force and now - run.last_push < self.settings.push_interval:
                return
            run.last_push = now
            run.partial_writes += 1
            try:
                await self.sink.update_partial_response(run.request_id, run.text or None, run.reasoning or None)
            except QueueError as exc:
                self.logger.event("warn", "relay.partial.error", request_id=run.request_id, error=str(exc))

    async def _push_periodically(self, run: _RelayRun) -> None:
        while True:
            await asyncio.sleep(self.settings.push_interval)
            # Keeps the worker clear of the idle reaper while the model is quiet.
            self.supervisor.touch_port(run.port)
            if run.state is RelayState.STREAMING:
                await self._push(run)

    # -- event handling ----------------------------------------------------

    async def _handle_event(self, run: _RelayRun, client: WorkerClient, event: dict[str, Any]) -> bool:
        """Apply one worker event; return True once the session has gone idle."""
        kind = event.get("type")
        props = event.get("properties")
        if not isinstance(props, dict):
            props = {}
        ours = _event_session(props) == run.session_id
        if ours:
            self.supervisor.touch_port(run.port)

        if kind == "message.part.delta":
            if not ours or not props.get("delta"):
                return False
            delta = str(props["delta"])
            part_id = str(props["partID"]) if props.get("partID") else None
            part_kind = (run.part_kinds.get(part_id) if part_id else None) or _classify(_part_type(props))
            if part_kind == "reasoning":
                run.reasoning += delta
            else:
                run.text += delta
            if part_id and part_id not in run.part_kinds:
                run.part_kinds[part_id] = part_kind
                await self._add_part(run, f"part-{part_id}", part_kind, "")
            return False

        if kind in ("message.part.added", "message.part.updated"):
            part = props.get("part") if isinstance(props.get("part"), dict) else {}
            part_id = props.get("partID") or part.get("id")
            raw_type = _part_type(props)
            if ours and part_id and isinstance(raw_type, str) and raw_type.lower() in ("text", "reasoning", "thinking"):
                part_kind = _classify(raw_type)
                run.part_kinds[str(part_id)] = part_kind
                await self._add_part(run, f"part-{part_id}", part_kind, "")
            return False

        if kind == "message.updated":
            info = props.get("info") if isinstance(props.get("info"), dict) else {}
            if info.get("role") == "assistant" and info.get("sessionID") == run.session_id:
                run.assistant_message_id = info.get("id")
            return False

        if kind == "session.status":
            status = props.get("status") if isinstance(props.get("status"), dict) else {}
            return ours and status.get("type") == "idle"

        if kind == "session.idle":
            return ours

        if kind == "tool.invoke":
            if props.get("sessionID") and not ours:
                return False
            tool_call_id = props.get("toolCallId")
            tool_name = props.get("toolName")
            if tool_call_id and tool_name:
                await self._await_tool(run, client, str(tool_call_id), str(tool_name), props.get("input"))
            return False

        if kind == "tool.result":
            self.logger.event("debug", "relay.tool.result_event", request_id=run.request_id)
        return False

    async def _await_tool(
        self,
        run: _RelayRun,
        client: WorkerClient,
        tool_call_id: str,
        tool_name: str,
        tool_input: Any,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.logger.event(
            "info", "relay.tool.invoke", request_id=run.request_id, tool=tool_name, tool_call_id=tool_call_id
        )
        await self._add_part(
            run,
            f"tool-{tool_call_id}",
            "tool",
            f"Using tool: {tool_name}",
            {"toolName": tool_name, "toolInput": tool_input, "toolCallId": tool_call_id},
        )
        try:
            await self.sink.set_pending_tool(run.request_id, tool_name, tool_input, tool_call_id)
        except QueueError as exc:
            self.logger.event("error", "relay.tool.publish_error", request_id=run.request_id, error=str(exc))

        pending = PendingToolInvocation(
            request_id=run.request_id,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_call_id=tool_call_id,
            session_id=run.session_id,
            port=run.port,
        )
        self.pending[run.request_id] = pending
        run.state = RelayState.AWAITING_TOOL
        paused_at = loop.time()
        try:
            await self._push(run, force=True)
            forwarded = await self._wait_for_tool_result(pending, client)
        finally:
            self.pending.pop(run.request_id, None)
            run.deadline += loop.time() - paused_at
            run.state = RelayState.STREAMING
        self.logger.event(
            "info", "relay.tool.resume", request_id=run.request_id, tool_call_id=tool_call_id, forwarded=forwarded
        )

    async def _wait_for_tool_result(self, pending: PendingToolInvocation, client: WorkerClient) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.tool_wait_timeout
        mismatch_logged = False
        while loop.time() < deadline:
            try:
                status = await self.sink.get_tool_status(pending.request_id)
            except QueueError as exc:
                self.logger.event("warn", "relay.tool.poll_error", request_id=pending.request_id, error=str(exc))
                status = None
            result = status.get("toolResult") if isinstance(status, dict) else None
            if isinstance(result, dict):
                if result.get("toolCallId") == pending.tool_call_id:
                    ok = await client.submit_tool_result(pending.session_id, pending.tool_call_id, result.get("result"))
                    if not ok:
                        self.logger.event(
                            "error",
                            "relay.tool.submit_failed",
                            request_id=pending.request_id,
                            tool_call_id=pending.tool_call_id,
                        )
                    return ok
                if not mismatch_logged:
                    mismatch_logged = True
                    self.logger.event(
                        "warn",
                        "relay.tool.mismatch",
                        request_id=pending.request_id,
                        expected=pending.tool_call_id,
                        received=result.get("toolCallId"),
                    )
            self.supervisor.touch_port(pending.port)
            await asyncio.sleep(self.settings.tool_poll_interval)

        self.logger.event(
            "warn",
            "relay.tool.timeout",
            request_id=pending.request_id,
            tool_call_id=pending.tool_call_id,
            waited_seconds=self.settings.tool_wait_timeout,
        )
        return False

    async def _consume(
        self,
        run: _RelayRun,
        client: WorkerClient,
        message: str,
        model: dict[str, str] | None,
    ) -> bool:
        # Subscribe before prompting so early events are not missed.
        async with client.events() as response:
            await client.prompt_async(run.session_id, message, model)
            self.logger.event("debug", "relay.prompt.sent", request_id=run.request_id, session_id=run.session_id)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[5:].strip())
                except ValueError:
                    continue
                if isinstance(event, dict) and await self._handle_event(run, client, event):
                    return True
        return False

    # -- entry point -------------------------------------------------------

    async def relay(
        self,
        request_id: str,
        port: int,
        message: str,
        directory: str,
        *,
        model: dict[str, str] | None = None,
        session_id: str | None = None,
    ) -> RelayResult:
        loop = asyncio.get_running_loop()
        run = _RelayRun(request_id=request_id, port=port, directory=directory)
        client = self._client_factory(port)
        try:
            run.session_id = await self.acquire_session(client, directory, session_id)
            self.logger.event(
                "info", "relay.begin", request_id=request_id, port=port, session_id=run.session_id
            )
            run.deadline = loop.time() + self.settings.relay_timeout
            consumer = asyncio.ensure_future(self._consume(run, client, message, model))
            pusher = asyncio.ensure_future(self._push_periodically(run))
            try:
                completed = await self._await_consumer(run, consumer)
            finally:
                for task in (consumer, pusher):
                    task.cancel()
                await asyncio.gather(consumer, pusher, return_exceptions=True)

            if not completed:
                self.logger.event("warn", "relay.stream.closed", request_id=request_id, session_id=run.session_id)
            run.state = RelayState.COMPLETED
            await self._push(run, force=True)
        except BaseException:
            run.state = RelayState.FAILED
            raise
        finally:
            self.pending.pop(request_id, None)
            await client.aclose()

        result = RelayResult(ai_response=run.text or NO_RESPONSE, reasoning=run.reasoning)
        self.logger.event(
            "info",
            "relay.complete",
            request_id=request_id,
            chars=len(result.ai_response),
            partial_writes=run.partial_writes,
            status="ok",
        )
        return result

    async def _await_consumer(self, run: _RelayRun, consumer: asyncio.Future) -> bool:
        loop = asyncio.get_running_loop()
        while True:
            if run.state is RelayState.AWAITING_TOOL:
                wait_for = self.settings.tool_poll_interval
            else:
                wait_for = run.deadline - loop.time()
                if wait_for <= 0:
                    self.logger.event(
                        "error",
                        "relay.timeout",
                        request_id=run.request_id,
                        session_id=run.session_id,
                        status="failed",
                    )
                    raise RelayError(f"Timed out waiting for AI response ({self.settings.relay_timeout:g}s)")
            done, _ = await asyncio.wait({consumer}, timeout=wait_for)
            if done:
                return consumer.result()
