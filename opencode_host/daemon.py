"""Host companion daemon: wiring, background loops and the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Callable, TextIO

from .bridge import RelayBridge
from .config import (
    VERSION,
    HostIdentity,
    RuntimeSettings,
    default_config_dir,
    format_host_id,
    generate_one_time_code,
    load_or_create_identity,
    resolve_convex_url,
    with_queue_url,
)
from .credentials import CredentialAuthority
from .dispatcher import CommandDispatcher
from .errors import ConfigError, QueueError
from .logging_utils import JsonlLogger, null_logger, read_logging_config, utc_now_iso
from .request_queue import ConvexQueue
from .supervisor import WorkerSupervisor
from .worker_api import WorkerClient


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def _state_path(config_dir: Path) -> Path:
    return config_dir / "state.json"


class HostDaemon:
    def __init__(
        self,
        identity: HostIdentity,
        settings: RuntimeSettings | None = None,
        *,
        config_dir: Path | None = None,
        dev: bool = False,
        logger: JsonlLogger | None = None,
        queue: Any = None,
        one_time_code: str | None = None,
        clock: Callable[[], float] = time.time,
        client_factory: Callable[[int], WorkerClient] = WorkerClient,
        out: TextIO | None = None,
    ) -> None:
        self.identity = identity
        self.settings = settings or RuntimeSettings()
        self.config_dir = config_dir or default_config_dir()
        self.state_path = _state_path(self.config_dir)
        self.dev = dev
        self.logger = logger or null_logger("daemon")
        self.one_time_code = one_time_code or generate_one_time_code()
        self.out = out or sys.stdout

        self.queue = queue or ConvexQueue(identity.convex_url, logger=self.logger.child("queue"))
        self.authority = CredentialAuthority(
            identity.host_id,
            identity.jwt_secret,
            self.one_time_code,
            ttl=self.settings.credential_ttl,
            refresh_grace=self.settings.refresh_grace,
            clock=clock,
            logger=self.logger.child("auth"),
        )
        self.supervisor = WorkerSupervisor(
            identity.opencode_path,
            identity.port_min,
            identity.port_max,
            identity.idle_timeout,
            self.settings,
            logger=self.logger.child("supervisor"),
            clock=clock,
            client_factory=client_factory,
        )
        self.bridge = RelayBridge(
            self.supervisor,
            self.queue,
            self.settings,
            logger=self.logger.child("bridge"),
            client_factory=client_factory,
        )
        self.dispatcher = CommandDispatcher(
            identity,
            self.authority,
            self.supervisor,
            self.bridge,
            self.queue,
            self.settings,
            logger=self.logger.child("dispatcher"),
            client_factory=client_factory,
        )
        self.supervisor.add_listener(self._on_worker_event)

        self.stop_event = asyncio.Event()
        self.stopping = False
        self._background: set[asyncio.Task] = set()

    # -- presentation ------------------------------------------------------

    def banner(self) -> str:
        identity = self.identity
        rule = "─" * 37
        lines = [
            "======================================",
            f"  OpenCode Host Companion v{VERSION}",
            "======================================",
            "",
            f"[config] Host ID: {format_host_id(identity.host_id)}",
            f"[config] Mode: {'dev' if self.dev else 'prod'}",
            f"[config] Convex URL: {identity.convex_url}",
            f"[config] Base path: {identity.base_path}",
            f"[config] Port range: {identity.port_min}-{identity.port_max}",
            f"[config] Inactivity timeout: {identity.idle_timeout:g}s",
            "",
            rule,
            "  Copy this Host ID to connect:",
            f"  {format_host_id(identity.host_id)}",
            "  OTP (One time password):",
            f"  {self.one_time_code}",
            rule,
            "",
        ]
        return "\n".join(lines)

    # -- presence ----------------------------------------------------------

    def write_state(self, status: str = "running") -> None:
        data = {
            "host_id": self.identity.host_id,
            "status": status,
            "updated_at": utc_now_iso(),
            "daemon_pid": os.getpid(),
            "version": VERSION,
            "convex_url": self.identity.convex_url,
            "workers": self.supervisor.active_directories(),
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            self.logger.event("warn", "state.write.error", error=str(exc))

    async def send_heartbeat(self) -> None:
        directories = self.supervisor.active_directories()
        try:
            await self.queue.update_host_status(self.identity.host_id, directories, VERSION, sys.platform)
        except QueueError as exc:
            self.logger.event("warn", "heartbeat.error", error=str(exc))
        else:
            self.logger.event("debug", "heartbeat.sent", workers=len(directories))
        self.write_state("running")

    async def _heartbeat_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.identity.heartbeat_interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.send_heartbeat()

    def _on_worker_event(self, event: str, directory: str) -> None:
        if self.stopping:
            return
        task = asyncio.ensure_future(self.send_heartbeat())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- lifecycle ---------------------------------------------------------

    def request_stop(self, reason: str) -> None:
        if not self.stop_event.is_set():
            self.logger.event("info", "daemon.stop.signal", reason=reason)
        self.stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig, name in ((signal.SIGTERM, "sigterm"), (signal.SIGINT, "sigint")):
            try:
                loop.add_signal_handler(sig, self.request_stop, name)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self) -> None:
        self._install_signal_handlers()
        self.out.write(self.banner() + "\n")
        self.out.flush()
        self.logger.event(
            "info",
            "daemon.start",
            status="ok",
            version=VERSION,
            mode="dev" if self.dev else "prod",
            convex_url=self.identity.convex_url,
            base_path=str(self.identity.base_path),
        )

        await self.send_heartbeat()
        loops = [
            asyncio.ensure_future(self.dispatcher.run(self.stop_event)),
            asyncio.ensure_future(self._heartbeat_loop()),
            asyncio.ensure_future(self.supervisor.run_reaper(self.stop_event)),
        ]
        try:
            await self.stop_event.wait()
        finally:
            await self.shutdown(loops)

    async def shutdown(self, loops: list[asyncio.Task] | None = None) -> None:
        self.stopping = True
        self.stop_event.set()
        self.logger.event("info", "daemon.shutdown.begin", workers=len(self.supervisor.records))

        for task in loops or []:
            task.cancel()
        await asyncio.gather(*(loops or []), return_exceptions=True)
        await self.dispatcher.drain()
        await self.supervisor.stop_all()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

        try:
            await self.queue.mark_offline(self.identity.host_id)
        except QueueError as exc:
            self.logger.event("warn", "daemon.offline.error", error=str(exc))
        self.write_state("stopped")
        await self.queue.aclose()
        self.logger.event("info", "daemon.stopped", status="ok")


# -- command line --------------------------------------------------------


def start_command(args: argparse.Namespace) -> int:
    config_dir = default_config_dir()
    try:
        identity, created = load_or_create_identity(config_dir)
        log_config = read_logging_config(echo=True)
        log_config.level = args.debug_log_level
        logger = JsonlLogger(
            config_dir / "logs" / "host.jsonl",
            component="daemon",
            host_id=identity.host_id,
            run_id=f"{int(time.time())}-{os.getpid()}",
            config=log_config,
        )
    except (ConfigError, OSError) as exc:
        print(f"[fatal] {exc}", file=sys.stderr)
        return 1

    identity = with_queue_url(identity, args.dev)
    if created:
        logger.event("info", "config.created", path=str(config_dir / "config.json"))
    daemon = HostDaemon(
        identity,
        RuntimeSettings.from_env(),
        config_dir=config_dir,
        dev=args.dev,
        logger=logger,
    )
    asyncio.run(daemon.run())
    return 0


def stop_command(args: argparse.Namespace) -> int:
    state_path = _state_path(default_config_dir())
    if not state_path.exists():
        print("No host daemon state found; nothing to stop.")
        return 0
    try:
        state = json.loads(state_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Cannot read {state_path}: {exc}", file=sys.stderr)
        return 1

    def terminate_pid(pid: int, label: str) -> None:
        if not pid or not _pid_alive(pid):
            print(f"{label} pid={pid} is not running")
            return
        initial_sig = signal.SIGKILL if args.force else signal.SIGTERM
        try:
            os.kill(pid, initial_sig)
            print(f"Sent {initial_sig.name} to {label} pid={pid}")
        except ProcessLookupError:
            print(f"{label} pid={pid} already exited")
            return
        if initial_sig == signal.SIGKILL:
            return

        deadline = time.monotonic() + 20
        while time.monotonic() < deadline:
            if not _pid_alive(pid):
                return
            time.sleep(0.2)
        try:
            os.kill(pid, signal.SIGKILL)
            print(f"Escalated SIGKILL to {label} pid={pid}")
        except ProcessLookupError:
            pass

    terminate_pid(int(state.get("daemon_pid") or 0), "daemon")
    if args.force:
        for worker in state.get("workers") or []:
            pid = worker.get("pid") if isinstance(worker, dict) else None
            if pid:
                terminate_pid(int(pid), f"worker:{worker.get('port')}")
    return 0


def status_command(args: argparse.Namespace) -> int:
    state_path = _state_path(default_config_dir())
    if not state_path.exists():
        print("No host daemon state found.")
        return 0
    print(state_path.read_text(encoding="utf-8"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opencode-host",
        description="OpenCode Host Companion: runs opencode serve workers for remote clients.",
        epilog=(
            "Config is stored at ~/.config/opencode-host/config.json. "
            f"CONVEX_URL overrides the queue URL (default {resolve_convex_url(False)})."
        ),
    )
    parser.add_argument("-v", "--version", action="version", version=VERSION)
    sub = parser.add_subparsers(dest="command")

    start = sub.add_parser("start", help="Run the host daemon in the foreground")
    start.add_argument("--dev", action="store_true", help="Use the development deployment")
    start.add_argument("--debug-log-level", default=os.environ.get("OPENCODE_HOST_LOG_LEVEL", "info"))

    stop = sub.add_parser("stop", help="Stop a running host daemon")
    stop.add_argument("--force", action="store_true")

    sub.add_parser("status", help="Print host daemon state")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command in (None, "start"):
        if args.command is None:
            args.dev = False
            args.debug_log_level = os.environ.get("OPENCODE_HOST_LOG_LEVEL", "info")
        return start_command(args)
    if args.command == "stop":
        return stop_command(args)
    if args.command == "status":
        return status_command(args)
    raise RuntimeError(f"Unknown command: {args.command}")  # pragma: no cover


if __name__ == "__main__":
    sys.exit(main())
