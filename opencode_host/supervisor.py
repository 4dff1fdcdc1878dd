"""Per-directory supervision of `opencode serve` worker processes.

One worker per canonical directory, one directory per port. Every exit path
(explicit stop, idle reap, crash, failed startup, daemon shutdown) funnels
into ``WorkerSupervisor._release`` so the record map and listeners always
agree with the set of live processes.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .config import RuntimeSettings
from .errors import StartupError
from .logging_utils import JsonlLogger, null_logger
from .ports import allocate_port
from .worker_api import WorkerClient


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


@dataclass
class WorkerRecord:
    directory: str
    port: int
    pid: int
    process: asyncio.subprocess.Process = field(repr=False)
    started_at: float
    last_activity: float
    state: WorkerState = WorkerState.STARTING

    def snapshot(self) -> dict[str, Any]:
        return {
            "path": self.directory,
            "port": self.port,
            "pid": self.pid,
            "startedAt": int(self.started_at * 1000),
            "lastActivity": int(self.last_activity * 1000),
        }


# Listener signature: (event, directory) where event is "started" or "released".
WorkerListener = Callable[[str, str], None]


class WorkerSupervisor:
    def __init__(
        self,
        opencode_path: str,
        port_min: int,
        port_max: int,
        idle_timeout: float,
        settings: RuntimeSettings | None = None,
        *,
        logger: JsonlLogger | None = None,
        clock: Callable[[], float] = time.time,
        client_factory: Callable[[int], WorkerClient] = WorkerClient,
    ) -> None:
        self.opencode_path = opencode_path
        self.port_min = port_min
        self.port_max = port_max
        self.idle_timeout = idle_timeout
        self.settings = settings or RuntimeSettings()
        self.logger = logger or null_logger("supervisor")
        self.worker_logger = self.logger.child("worker")
        self._clock = clock
        self._client_factory = client_factory

        self.records: dict[str, WorkerRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._reserved_ports: set[int] = set()
        self._listeners: list[WorkerListener] = []
        self._background: set[asyncio.Task] = set()

    # -- lookups -----------------------------------------------------------

    @staticmethod
    def canonical(directory: str | Path) -> str:
        return str(Path(directory).expanduser().resolve())

    def add_listener(self, listener: WorkerListener) -> None:
        self._listeners.append(listener)

    def get(self, directory: str | Path) -> WorkerRecord | None:
        return self.records.get(self.canonical(directory))

    def find_by_port(self, port: int) -> WorkerRecord | None:
        for record in self.records.values():
            if record.port == port:
                return record
        return None

    def touch_port(self, port: int) -> None:
        record = self.find_by_port(port)
        if record is not None:
            record.last_activity = self._clock()

    def claimed_ports(self) -> set[int]:
        return {record.port for record in self.records.values()} | self._reserved_ports

    def active_directories(self) -> list[dict[str, Any]]:
        return [record.snapshot() for record in self.records.values()]

    def _lock_for(self, directory: str) -> asyncio.Lock:
        lock = self._locks.get(directory)
        if lock is None:
            lock = self._locks[directory] = asyncio.Lock()
        return lock

    def _spawn_task(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _notify(self, event: str, directory: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, directory)
            except Exception as exc:
                self.logger.event("warn", "worker.listener.error", directory=directory, error=str(exc))

    # -- lifecycle ---------------------------------------------------------

    async def ensure_started(self, directory: str | Path) -> WorkerRecord:
        """Return the directory's worker, starting one if none is tracked.

        Concurrent callers for one directory are serialized on a per-directory
        lock, so they all observe the same record.
        """
        key = self.canonical(directory)
        async with self._lock_for(key):
            record = self.records.get(key)
            if record is not None:
                record.last_activity = self._clock()
                return record
            return await self._start(key)

    async def _start(self, directory: str) -> WorkerRecord:
        port = allocate_port(self.port_min, self.port_max, self.claimed_ports())
        self._reserved_ports.add(port)
        try:
            self.logger.event("info", "worker.start.begin", directory=directory, port=port)
            try:
                process = await asyncio.create_subprocess_exec(
                    self.opencode_path,
                    "serve",
                    "--port",
                    str(port),
                    "--hostname",
                    "127.0.0.1",
                    cwd=directory,
                    env={**os.environ},
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as exc:
                self.logger.event("error", "worker.start.spawn_error", directory=directory, port=port, error=str(exc))
                raise StartupError(f"Cannot launch {self.opencode_path}: {exc}") from exc

            now = self._clock()
            record = WorkerRecord(
                directory=directory,
                port=port,
                pid=process.pid,
                process=process,
                started_at=now,
                last_activity=now,
            )
            self._spawn_task(self._forward_output(process.stdout, port, "stdout"))
            self._spawn_task(self._forward_output(process.stderr, port, "stderr"))

            try:
                await self._wait_ready(record)
            except BaseException:
                await self._terminate(record, force=True)
                raise

            record.state = WorkerState.READY
            record.last_activity = self._clock()
            self.records[directory] = record
            self._spawn_task(self._watch_exit(record))
        finally:
            self._reserved_ports.discard(port)

        self.logger.event("info", "worker.start.ready", directory=directory, port=port, pid=record.pid, status="ok")
        self._notify("started", directory)
        return record

    async def _wait_ready(self, record: WorkerRecord) -> None:
        timeout = self.settings.startup_timeout
        deadline = time.monotonic() + timeout
        async with self._client_factory(record.port) as client:
            while True:
                returncode = record.process.returncode
                if returncode is not None:
                    raise StartupError(
                        f"opencode serve for {record.directory} exited early with code {returncode}"
                    )
                if await client.healthy(self.settings.health_path):
                    return
                if time.monotonic() >= deadline:
                    self.logger.event(
                        "error",
                        "worker.start.timeout",
                        directory=record.directory,
                        port=record.port,
                        status="failed",
                        error_code="WORKER_STARTUP_TIMEOUT",
                    )
                    raise StartupError(
                        f"opencode serve failed to start on port {record.port} within {timeout:g}s"
                    )
                await asyncio.sleep(self.settings.health_interval)

    async def _terminate(self, record: WorkerRecord, force: bool = False) -> None:
        process = record.process
        if process.returncode is not None:
            return
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.stop_grace)
            return
        except asyncio.TimeoutError:
            self.logger.event(
                "warn",
                "worker.stop.escalate",
                directory=record.directory,
                port=record.port,
                pid=record.pid,
                status="force_kill",
            )
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def stop(self, directory: str | Path, reason: str = "requested") -> None:
        key = self.canonical(directory)
        async with self._lock_for(key):
            record = self.records.get(key)
            if record is None:
                return
            record.state = WorkerState.STOPPING
            self.logger.event("info", "worker.stop.begin", directory=key, port=record.port, reason=reason)
            try:
                await self._terminate(record)
            finally:
                self._release(key, record, reason)

    def _release(self, directory: str, record: WorkerRecord, reason: str) -> None:
        if self.records.get(directory) is not record:
            return
        del self.records[directory]
        self.logger.event(
            "info",
            "worker.released",
            directory=directory,
            port=record.port,
            pid=record.pid,
            reason=reason,
            returncode=record.process.returncode,
        )
        self._notify("released", directory)

    async def _watch_exit(self, record: WorkerRecord) -> None:
        returncode = await record.process.wait()
        if record.state is WorkerState.STOPPING:
            return
        self.logger.event(
            "warn",
            "worker.exited",
            directory=record.directory,
            port=record.port,
            pid=record.pid,
            returncode=returncode,
            status="crashed",
        )
        self._release(record.directory, record, "exited")

    async def _forward_output(self, stream: asyncio.StreamReader | None, port: int, name: str) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                self.worker_logger.event("warn", "worker.output.truncated", port=port, stream=name)
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self.worker_logger.event("info", "worker.output", port=port, stream=name, line=text)

    async def reap_idle(self, now: float | None = None) -> list[str]:
        now = self._clock() if now is None else now
        reaped: list[str] = []
        for directory, record in list(self.records.items()):
            idle_for = now - record.last_activity
            if idle_for <= self.idle_timeout:
                continue
            if self.records.get(directory) is not record:
                continue
            self.logger.event("info", "worker.reap", directory=directory, port=record.port, idle_seconds=int(idle_for))
            await self.stop(directory, reason="idle")
            reaped.append(directory)
        return reaped

    async def run_reaper(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.reap_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.reap_idle()
            except Exception as exc:
                self.logger.event("error", "worker.reap.error", error=str(exc))

    async def stop_all(self) -> None:
        directories = list(self.records)
        if directories:
            self.logger.event("info", "worker.stop_all", count=len(directories))
        results = await asyncio.gather(
            *(self.stop(directory, reason="shutdown") for directory in directories),
            return_exceptions=True,
        )
        for directory, result in zip(directories, results):
            if isinstance(result, BaseException):
                self.logger.event("warn", "worker.stop.error", directory=directory, error=str(result))
        for task in list(self._background):
            task.cancel()
