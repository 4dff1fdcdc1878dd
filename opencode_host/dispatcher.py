"""Pull requests off the hosted queue and route them to their handlers."""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from typing import Any, Awaitable, Callable

from .bridge import RelayBridge
from .config import HostIdentity, RuntimeSettings
from .credentials import CredentialAuthority
from .directories import list_directories, resolve_existing_directory, resolve_within_base
from .errors import QueueError, RelayError, ValidationError
from .logging_utils import JsonlLogger, null_logger, stable_hash
from .request_queue import ConvexQueue, QueuedRequest, RequestType
from .supervisor import WorkerSupervisor
from .worker_api import WorkerClient


MAX_SESSIONS_REPORTED = 50
DEDUP_CAPACITY = 1000
DEDUP_KEEP = 500
SHUTDOWN_ERROR = "Host shutting down"


def _require_field(payload: dict[str, Any], name: str, label: str | None = None) -> Any:
    value = payload.get(name)
    if value in (None, ""):
        raise ValidationError(f"Missing {label or name}")
    return value


def _parse_port(raw: Any) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid port: {raw!r}") from None
    if not 0 < port < 65536:
        raise ValidationError(f"Invalid port: {raw!r}")
    return port


class CommandDispatcher:
    def __init__(
        self,
        identity: HostIdentity,
        authority: CredentialAuthority,
        supervisor: WorkerSupervisor,
        bridge: RelayBridge,
        queue: ConvexQueue,
        settings: RuntimeSettings | None = None,
        *,
        logger: JsonlLogger | None = None,
        client_factory: Callable[[int], WorkerClient] = WorkerClient,
    ) -> None:
        self.identity = identity
        self.authority = authority
        self.supervisor = supervisor
        self.bridge = bridge
        self.queue = queue
        self.settings = settings or RuntimeSettings()
        self.logger = logger or null_logger("dispatcher")
        self._client_factory = client_factory

        self.seen: OrderedDict[str, None] = OrderedDict()
        self.in_flight: dict[asyncio.Task, str] = {}
        self._handlers: dict[RequestType, Callable[[QueuedRequest], Awaitable[dict[str, Any]]]] = {
            RequestType.AUTHENTICATE: self._authenticate,
            RequestType.REFRESH_JWT: self._refresh_jwt,
            RequestType.LIST_DIRS: self._list_dirs,
            RequestType.START_OPENCODE: self._start_opencode,
            RequestType.STOP_OPENCODE: self._stop_opencode,
            RequestType.RELAY_MESSAGE: self._relay_message,
            RequestType.GET_PROVIDERS: self._get_providers,
        }

    # -- intake ------------------------------------------------------------

    def remember(self, request_id: str) -> bool:
        """Record a request id; False when it was already seen."""
        if request_id in self.seen:
            return False
        self.seen[request_id] = None
        if len(self.seen) > DEDUP_CAPACITY:
            while len(self.seen) > DEDUP_KEEP:
                self.seen.popitem(last=False)
        return True

    async def poll_once(self) -> list[asyncio.Task]:
        requests = await self.queue.get_pending(self.identity.host_id)
        started: list[asyncio.Task] = []
        for request in requests:
            if not request.id or not self.remember(request.id):
                continue
            task = asyncio.ensure_future(self.process_request(request))
            self.in_flight[task] = request.id
            task.add_done_callback(self._forget_task)
            started.append(task)
        return started

    async def run(self, stop_event: asyncio.Event) -> None:
        failures = 0
        while not stop_event.is_set():
            try:
                await self.poll_once()
                failures = 0
            except QueueError as exc:
                failures += 1
                if failures == 1 or failures % 20 == 0:
                    self.logger.event("warn", "queue.poll.error", error=str(exc), failures=failures)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.request_poll_interval)
            except asyncio.TimeoutError:
                pass

    def _forget_task(self, task: asyncio.Task) -> None:
        self.in_flight.pop(task, None)

    async def drain(self) -> None:
        """Cancel in-flight requests and record them as failed."""
        interrupted = {task: request_id for task, request_id in self.in_flight.items() if not task.done()}
        for task in interrupted:
            task.cancel()
        await asyncio.gather(*interrupted, return_exceptions=True)
        for request_id in interrupted.values():
            self.logger.event("warn", "request.interrupted", request_id=request_id)
            try:
                await self.queue.mark_failed(request_id, SHUTDOWN_ERROR)
            except QueueError as exc:
                self.logger.event("error", "request.mark_failed_error", request_id=request_id, error=str(exc))

    # -- processing --------------------------------------------------------

    async def process_request(self, request: QueuedRequest) -> None:
        self.logger.event(
            "info",
            "request.received",
            request_id=request.id,
            type=request.type,
            client=stable_hash(request.client_id) if request.client_id else None,
        )
        try:
            await self.queue.mark_processing(request.id)
        except QueueError as exc:
            self.logger.event("error", "request.claim_failed", request_id=request.id, error=str(exc))
            # Unclaimed, so the next poll retries it.
            self.seen.pop(request.id, None)
            return

        try:
            response = await self.handle(request)
            await self.queue.mark_completed(request.id, response)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self.logger.event(
                "error",
                "request.failed",
                request_id=request.id,
                type=request.type,
                error=message,
                error_code=exc.__class__.__name__,
            )
            try:
                await self.queue.mark_failed(request.id, message)
            except QueueError as write_exc:
                self.logger.event("error", "request.mark_failed_error", request_id=request.id, error=str(write_exc))
            return
        self.logger.event("info", "request.completed", request_id=request.id, type=request.type, status="ok")

    async def handle(self, request: QueuedRequest) -> dict[str, Any]:
        handler = self._handlers[RequestType.parse(request.type)]
        return await handler(request)

    # -- handlers ----------------------------------------------------------

    async def _authenticate(self, request: QueuedRequest) -> dict[str, Any]:
        proof = request.payload.get("otp") or request.payload.get("otpAttempt")
        return {"jwtToken": self.authority.issue(proof)}

    async def _refresh_jwt(self, request: QueuedRequest) -> dict[str, Any]:
        return {"jwtToken": self.authority.refresh(request.jwt)}

    async def _list_dirs(self, request: QueuedRequest) -> dict[str, Any]:
        self.authority.require(request.jwt)
        requested = request.payload.get("path") or "/"
        target, names = await list_directories(self.identity.base_path, requested)
        self.logger.event("info", "fs.list", path=str(target), count=len(names))
        return {"directories": names}

    async def _start_opencode(self, request: QueuedRequest) -> dict[str, Any]:
        self.authority.require(request.jwt)
        directory = _require_field(request.payload, "directory")
        full_path = await resolve_existing_directory(self.identity.base_path, directory)
        record = await self.supervisor.ensure_started(full_path)

        response: dict[str, Any] = {"port": record.port, "pid": record.pid}
        try:
            async with self._client_factory(record.port) as client:
                sessions = await client.list_sessions()
            response["sessionsJson"] = json.dumps(sessions[:MAX_SESSIONS_REPORTED])
            self.logger.event("info", "sessions.listed", port=record.port, count=len(sessions))
        except RelayError as exc:
            self.logger.event("warn", "sessions.list_failed", port=record.port, error=str(exc))
        return response

    async def _stop_opencode(self, request: QueuedRequest) -> dict[str, Any]:
        self.authority.require(request.jwt)
        directory = _require_field(request.payload, "directory")
        await self.supervisor.stop(resolve_within_base(self.identity.base_path, directory))
        return {}

    async def _relay_message(self, request: QueuedRequest) -> dict[str, Any]:
        self.authority.require(request.jwt)
        payload = request.payload
        port = _parse_port(_require_field(payload, "port"))
        directory = payload.get("directory")

        record = self.supervisor.find_by_port(port)
        if record is None and not directory:
            raise RelayError(f"no active worker on port {port}")
        message = _require_field(payload, "message")

        if record is None:
            full_path = await resolve_existing_directory(self.identity.base_path, directory)
            self.logger.event("info", "relay.restart", directory=str(full_path), previous_port=port)
            record = await self.supervisor.ensure_started(full_path)
        else:
            self.supervisor.touch_port(record.port)

        model = None
        if payload.get("providerID") and payload.get("modelID"):
            model = {"providerID": str(payload["providerID"]), "modelID": str(payload["modelID"])}

        result = await self.bridge.relay(
            request.id,
            record.port,
            str(message),
            record.directory,
            model=model,
            session_id=payload.get("sessionId") or None,
        )
        return result.to_response()

    async def _get_providers(self, request: QueuedRequest) -> dict[str, Any]:
        self.authority.require(request.jwt)
        port = _parse_port(_require_field(request.payload, "port"))
        if self.supervisor.find_by_port(port) is None:
            raise RelayError(f"no active worker on port {port}")
        async with self._client_factory(port) as client:
            catalog = await client.model_catalog()
        self.logger.event("info", "providers.listed", port=port, count=len(catalog["providers"]))
        return {"providersJson": json.dumps(catalog)}
