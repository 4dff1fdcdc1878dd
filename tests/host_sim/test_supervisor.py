#!/usr/bin/env python3
"""Worker lifecycle against real mock `opencode serve` child processes."""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import unittest
from unittest import mock

import httpx

from opencode_host.errors import AllocationError, StartupError
from opencode_host.supervisor import WorkerState, WorkerSupervisor
from tests.host_sim.harness import HostSandbox, fast_settings, wait_until


class WorkerSupervisorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.sandbox = HostSandbox(port_span=4)
        self.events: list[tuple[str, str]] = []

    def tearDown(self) -> None:
        self.sandbox.close()

    def _supervisor(self, *, opencode_path: str | None = None, port_max: int | None = None, **settings) -> WorkerSupervisor:  # type: ignore[no-untyped-def]
        supervisor = WorkerSupervisor(
            opencode_path or str(self.sandbox.opencode),
            self.sandbox.port_min,
            port_max if port_max is not None else self.sandbox.port_max,
            60.0,
            fast_settings(**settings),
        )
        supervisor.add_listener(lambda event, directory: self.events.append((event, directory)))
        self.addAsyncCleanup(supervisor.stop_all)
        return supervisor

    async def test_concurrent_starts_share_one_worker(self) -> None:
        supervisor = self._supervisor()
        project = self.sandbox.project("alpha")

        first, second = await asyncio.gather(
            supervisor.ensure_started(project),
            supervisor.ensure_started(str(project) + "/"),
        )

        self.assertIs(first, second)
        self.assertEqual(first.state, WorkerState.READY)
        self.assertEqual(first.directory, str(project))
        self.assertTrue(self.sandbox.port_min <= first.port <= self.sandbox.port_max)
        self.assertEqual(self.events, [("started", str(project))])

        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{first.port}/global/health")
        self.assertEqual(response.status_code, 200)

    async def test_distinct_directories_get_distinct_ports(self) -> None:
        supervisor = self._supervisor()
        alpha = await supervisor.ensure_started(self.sandbox.project("alpha"))
        beta = await supervisor.ensure_started(self.sandbox.project("beta"))

        self.assertNotEqual(alpha.port, beta.port)
        self.assertIs(supervisor.find_by_port(beta.port), beta)
        self.assertEqual(
            sorted(entry["path"] for entry in supervisor.active_directories()),
            sorted([alpha.directory, beta.directory]),
        )

    async def test_stop_releases_the_worker(self) -> None:
        supervisor = self._supervisor()
        project = self.sandbox.project("alpha")
        record = await supervisor.ensure_started(project)

        await supervisor.stop(project)

        self.assertIsNotNone(record.process.returncode)
        self.assertIsNone(supervisor.get(project))
        self.assertIsNone(supervisor.find_by_port(record.port))
        self.assertEqual(self.events, [("started", str(project)), ("released", str(project))])

        # Stopping an untracked directory is a no-op.
        await supervisor.stop(project)
        self.assertEqual(len(self.events), 2)

    async def test_idle_workers_are_reaped(self) -> None:
        supervisor = self._supervisor()
        idle = await supervisor.ensure_started(self.sandbox.project("idle"))
        busy = await supervisor.ensure_started(self.sandbox.project("busy"))
        busy.last_activity = idle.last_activity + 30

        reaped = await supervisor.reap_idle(now=idle.last_activity + 61)

        self.assertEqual(reaped, [idle.directory])
        self.assertIsNone(supervisor.get(idle.directory))
        self.assertIs(supervisor.get(busy.directory), busy)

    async def test_touch_port_defers_reaping(self) -> None:
        clock = [1000.0]
        supervisor = WorkerSupervisor(
            str(self.sandbox.opencode),
            self.sandbox.port_min,
            self.sandbox.port_max,
            60.0,
            fast_settings(),
            clock=lambda: clock[0],
        )
        self.addAsyncCleanup(supervisor.stop_all)
        record = await supervisor.ensure_started(self.sandbox.project("alpha"))

        clock[0] += 50
        supervisor.touch_port(record.port)
        clock[0] += 50
        self.assertEqual(await supervisor.reap_idle(), [])

        clock[0] += 11
        self.assertEqual(await supervisor.reap_idle(), [record.directory])

    async def test_crashed_worker_is_released(self) -> None:
        supervisor = self._supervisor()
        project = self.sandbox.project("alpha")
        record = await supervisor.ensure_started(project)

        os.kill(record.pid, signal.SIGKILL)
        await wait_until(lambda: supervisor.get(project) is None)

        self.assertEqual(self.events[-1], ("released", str(project)))
        replacement = await supervisor.ensure_started(project)
        self.assertNotEqual(replacement.pid, record.pid)

    async def test_unhealthy_worker_fails_startup_and_frees_port(self) -> None:
        supervisor = self._supervisor(startup_timeout=0.6)
        project = self.sandbox.project("alpha")

        with mock.patch.dict(os.environ, {"MOCK_OPENCODE_UNHEALTHY": "1"}):
            with self.assertRaisesRegex(StartupError, r"failed to start on port \d+ within 0.6s"):
                await supervisor.ensure_started(project)

        self.assertEqual(supervisor.records, {})
        self.assertEqual(supervisor.claimed_ports(), set())
        self.assertEqual(self.events, [])

    async def test_missing_executable_is_a_startup_error(self) -> None:
        supervisor = self._supervisor(opencode_path=str(self.sandbox.root / "bin" / "no-such-opencode"))

        with self.assertRaisesRegex(StartupError, "Cannot launch"):
            await supervisor.ensure_started(self.sandbox.project("alpha"))
        self.assertEqual(supervisor.claimed_ports(), set())

    async def test_exhausted_range_is_an_allocation_error(self) -> None:
        supervisor = self._supervisor(port_max=self.sandbox.port_min)
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", self.sandbox.port_min))
        holder.listen(1)
        try:
            with self.assertRaises(AllocationError):
                await supervisor.ensure_started(self.sandbox.project("alpha"))
        finally:
            holder.close()
        self.assertEqual(supervisor.records, {})


if __name__ == "__main__":
    unittest.main(verbosity=2)
