#!/usr/bin/env python3
"""Worker HTTP client against an in-process transport."""

from __future__ import annotations

import json
import unittest

import httpx

from opencode_host.errors import RelayError
from opencode_host.worker_api import WorkerClient, normalize_sessions_payload


class NormalizeSessionsTests(unittest.TestCase):
    def test_list_shape(self) -> None:
        payload = [
            {"id": "ses_1", "title": "First", "time": {"updated": 1700}},
            {"sessionID": "ses_2", "status": {"type": "busy"}},
            {"title": "no id"},
            "junk",
        ]
        self.assertEqual(
            normalize_sessions_payload(payload),
            [
                {"id": "ses_1", "title": "First", "updatedAt": "1700"},
                {"id": "ses_2", "status": "busy"},
            ],
        )

    def test_wrapped_and_keyed_shapes(self) -> None:
        wrapped = {"sessions": [{"id": "a", "updatedAt": "2024-01-01"}]}
        self.assertEqual(normalize_sessions_payload(wrapped), [{"id": "a", "updatedAt": "2024-01-01"}])

        keyed = {"ses_x": {"status": "idle", "lastActivity": 5}}
        self.assertEqual(normalize_sessions_payload(keyed), [{"id": "ses_x", "updatedAt": "5", "status": "idle"}])
        self.assertEqual(normalize_sessions_payload(None), [])


class WorkerClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, handler) -> WorkerClient:  # type: ignore[no-untyped-def]
        return WorkerClient(4100, transport=httpx.MockTransport(handler))

    async def test_list_sessions_falls_back_to_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/session":
                return httpx.Response(500)
            return httpx.Response(200, json={"ses_1": {"type": "idle"}, "ses_2": {}})

        async with self._client(handler) as client:
            sessions = await client.list_sessions()
        self.assertEqual(sessions, [{"id": "ses_1", "status": "idle"}, {"id": "ses_2"}])

    async def test_list_sessions_raises_when_both_fail(self) -> None:
        async with self._client(lambda request: httpx.Response(503)) as client:
            with self.assertRaisesRegex(RelayError, "Unable to list sessions"):
                await client.list_sessions()

    async def test_prompt_body_carries_model_selector(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(204)

        async with self._client(handler) as client:
            await client.prompt_async("ses_1", "hello", {"providerID": "p", "modelID": "m"})
        self.assertEqual(
            seen,
            [{"parts": [{"type": "text", "text": "hello"}], "model": {"providerID": "p", "modelID": "m"}}],
        )

    async def test_prompt_failure_status(self) -> None:
        async with self._client(lambda request: httpx.Response(400, text="bad model")) as client:
            with self.assertRaisesRegex(RelayError, "prompt_async returned 400: bad model"):
                await client.prompt_async("ses_1", "hello")

    async def test_health_is_false_when_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with self._client(handler) as client:
            self.assertFalse(await client.healthy())

    async def test_model_catalog_keeps_connected_providers(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/provider":
                return httpx.Response(
                    200,
                    json={
                        "all": [
                            {"id": "a", "name": "A", "models": {"m1": {"id": "m1", "name": "M1", "providerID": "a"}}},
                            {"id": "b", "name": "B", "models": {}},
                        ],
                        "connected": ["a"],
                    },
                )
            return httpx.Response(200, json={"default": {"a": "m1"}})

        async with self._client(handler) as client:
            catalog = await client.model_catalog()
        self.assertEqual(
            catalog,
            {
                "providers": [{"id": "a", "name": "A", "models": [{"id": "m1", "name": "M1", "providerID": "a"}]}],
                "default": {"a": "m1"},
            },
        )

    async def test_submit_tool_result(self) -> None:
        seen: list[tuple[str, dict]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200)

        async with self._client(handler) as client:
            self.assertTrue(await client.submit_tool_result("ses_9", "call_1", {"ok": True}))
        self.assertEqual(seen, [("/session/ses_9/tool", {"toolCallId": "call_1", "result": {"ok": True}})])


if __name__ == "__main__":
    unittest.main(verbosity=2)
