#!/usr/bin/env python3
"""End-to-end daemon runs: in-memory queue, real mock `opencode serve` workers."""

from __future__ import annotations

import asyncio
import contextlib
import io
import json
import os
import unittest
from typing import Any
from unittest import mock

from opencode_host.daemon import HostDaemon, build_parser, main
from opencode_host.logging_utils import JsonlLogger, LoggerConfig
from tests.host_sim.doubles import MemoryQueue
from tests.host_sim.harness import HostSandbox, fast_settings, wait_until


CODE = "271828"


class HostDaemonFlowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.sandbox = HostSandbox()
        self.project = self.sandbox.project("proj")
        self.queue = MemoryQueue()
        self.out = io.StringIO()
        self.log_path = self.sandbox.config_dir / "logs" / "host.jsonl"
        self.daemon = HostDaemon(
            self.sandbox.identity(),
            fast_settings(),
            config_dir=self.sandbox.config_dir,
            logger=JsonlLogger(self.log_path, "daemon", host_id="1234567890", config=LoggerConfig(level="debug")),
            queue=self.queue,
            one_time_code=CODE,
            out=self.out,
        )
        self.run_task = asyncio.ensure_future(self.daemon.run())
        self.addAsyncCleanup(self._stop_daemon)
        await wait_until(lambda: len(self.queue.heartbeats) >= 1)

    async def _stop_daemon(self) -> None:
        self.daemon.request_stop("test")
        await asyncio.wait_for(self.run_task, timeout=15)
        self.sandbox.close()

    async def _request(self, type: str, payload: dict[str, Any] | None = None, jwt: str | None = None, timeout: float = 20.0) -> tuple[str, Any]:
        request = self.queue.add(type, payload, jwt)
        return await self.queue.wait_outcome(request.id, timeout=timeout)

    async def _login(self) -> str:
        status, response = await self._request("authenticate", {"otp": CODE})
        self.assertEqual(status, "completed")
        return response["jwtToken"]

    async def test_banner_and_presence(self) -> None:
        banner = self.out.getvalue()
        self.assertIn("123 456 7890", banner)
        self.assertIn(CODE, banner)

        beat = self.queue.heartbeats[0]
        self.assertEqual(beat["hostId"], "1234567890")
        self.assertEqual(beat["activeDirectories"], [])
        state = json.loads((self.sandbox.config_dir / "state.json").read_text(encoding="utf-8"))
        self.assertEqual(state["status"], "running")
        self.assertEqual(state["daemon_pid"], os.getpid())

    async def test_start_relay_stop(self) -> None:
        token = await self._login()

        status, started = await self._request("start_opencode", {"directory": "/proj"}, token)
        self.assertEqual(status, "completed")
        port = started["port"]
        self.assertTrue(self.sandbox.port_min <= port <= self.sandbox.port_max)
        self.assertEqual(json.loads(started["sessionsJson"]), [])
        await wait_until(
            lambda: any(beat["activeDirectories"] for beat in self.queue.heartbeats),
        )

        status, reply = await self._request("relay_message", {"port": port, "message": "hi"}, token)
        self.assertEqual(status, "completed")
        self.assertEqual(reply, {"aiResponse": "Echo: hi", "reasoning": "Considering the request."})
        self.assertGreaterEqual(len(self.queue.partials), 1)
        self.assertEqual(sorted({part[1] for part in self.queue.parts}), ["reasoning", "text"])

        status, providers = await self._request("get_providers", {"port": port}, token)
        self.assertEqual(status, "completed")
        self.assertEqual(json.loads(providers["providersJson"])["providers"][0]["id"], "mock")

        self.assertEqual(
            await self._request("relay_message", {"port": 9999, "message": "hi"}, token),
            ("failed", "no active worker on port 9999"),
        )

        record = self.daemon.supervisor.get(self.project)
        assert record is not None
        self.assertEqual(await self._request("stop_opencode", {"directory": "/proj"}, token), ("completed", {}))
        self.assertIsNone(self.daemon.supervisor.get(self.project))
        self.assertIsNotNone(record.process.returncode)

    async def test_tool_round_trip(self) -> None:
        token = await self._login()
        with mock.patch.dict(os.environ, {"MOCK_OPENCODE_TOOL": "approve"}):
            status, started = await self._request("start_opencode", {"directory": "proj"}, token)
        self.assertEqual(status, "completed")

        request = self.queue.add("relay_message", {"port": started["port"], "message": "hi"}, token)
        await wait_until(lambda: bool(self.queue.pending_tools), timeout=10)
        pending = self.queue.pending_tools[0]
        self.assertEqual(pending["requestId"], request.id)
        self.assertEqual(pending["toolName"], "approve")
        self.assertIn(request.id, self.daemon.bridge.pending)

        self.queue.tool_status[request.id] = {
            "toolResult": {"toolCallId": pending["toolCallId"], "result": {"approved": True}}
        }
        status, reply = await self.queue.wait_outcome(request.id, timeout=20)

        self.assertEqual(status, "completed")
        self.assertEqual(reply["aiResponse"], 'Echo: hi [tool:{"approved": true}]')
        self.assertEqual(self.daemon.bridge.pending, {})

    async def test_shutdown_stops_workers_and_goes_offline(self) -> None:
        token = await self._login()
        status, _ = await self._request("start_opencode", {"directory": "/proj"}, token)
        self.assertEqual(status, "completed")
        record = self.daemon.supervisor.get(self.project)
        assert record is not None

        self.daemon.request_stop("test")
        await asyncio.wait_for(self.run_task, timeout=15)

        self.assertIsNotNone(record.process.returncode)
        self.assertEqual(self.daemon.supervisor.records, {})
        self.assertEqual(self.queue.offline, ["1234567890"])
        self.assertTrue(self.queue.closed)
        state = json.loads((self.sandbox.config_dir / "state.json").read_text(encoding="utf-8"))
        self.assertEqual(state["status"], "stopped")
        self.assertEqual(state["workers"], [])

        events = [json.loads(line)["event"] for line in self.log_path.read_text(encoding="utf-8").splitlines()]
        self.assertIn("daemon.start", events)
        self.assertIn("worker.released", events)
        self.assertEqual(events[-1], "daemon.stopped")


class CommandLineTests(unittest.TestCase):
    def test_parser(self) -> None:
        parser = build_parser()
        self.assertTrue(parser.parse_args(["stop", "--force"]).force)
        args = parser.parse_args(["start", "--dev", "--debug-log-level", "debug"])
        self.assertTrue(args.dev)
        self.assertEqual(args.debug_log_level, "debug")

    def test_status_prints_state(self) -> None:
        with HostSandbox() as sandbox:
            (sandbox.config_dir / "state.json").write_text('{"status": "running"}', encoding="utf-8")
            out = io.StringIO()
            with mock.patch("opencode_host.daemon.default_config_dir", return_value=sandbox.config_dir):
                with contextlib.redirect_stdout(out):
                    self.assertEqual(main(["status"]), 0)
        self.assertIn('"status": "running"', out.getvalue())

    def test_stop_without_state(self) -> None:
        with HostSandbox() as sandbox:
            out = io.StringIO()
            with mock.patch("opencode_host.daemon.default_config_dir", return_value=sandbox.config_dir):
                with contextlib.redirect_stdout(out):
                    self.assertEqual(main(["stop"]), 0)
        self.assertIn("nothing to stop", out.getvalue())


if __name__ == "__main__":
    unittest.main(verbosity=2)
