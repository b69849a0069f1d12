"""Tests for the httpx backend against a mock transport."""

from __future__ import annotations

import json
import unittest

import httpx

from research_chat.backend import HttpChatBackend
from research_chat.codec import encode
from research_chat.config import CapabilityOverride
from research_chat.exceptions import (
    BackendHTTPError,
    ChatConnectionError,
    SessionCreationError,
)
from research_chat.models import Attachment, Role

BASE_URL = "http://agent.test/research-agent/api"


class RecordingHandler:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, responses: dict[tuple[str, str], httpx.Response]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.responses:
            return httpx.Response(404, json={"message": f"no route {key}"})
        return self.responses[key]


class HttpChatBackendTests(unittest.IsolatedAsyncioTestCase):
    """Validate endpoints, payload shapes and error mapping."""

    def _backend(self, handler, **kwargs) -> HttpChatBackend:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        backend = HttpChatBackend(BASE_URL, client=client, **kwargs)
        self.addAsyncCleanup(backend.aclose)
        return backend

    @staticmethod
    async def _read(response) -> bytes:
        data = b"".join([chunk async for chunk in response.body])
        await response.aclose()
        return data

    async def test_create_session_posts_json_and_returns_id(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/research-agent/api/chats/create"): httpx.Response(
                    200, json={"result": {"id": "chat-42"}}
                )
            }
        )
        backend = self._backend(handler)

        session_id = await backend.create_session(encode("Hello", llm_id="1"))

        self.assertEqual(session_id, "chat-42")
        body = json.loads(handler.requests[0].content)
        self.assertEqual(body, {"role": "user", "contentType": "text/plain", "content": "Hello"})

    async def test_create_session_without_id_raises(self) -> None:
        handler = RecordingHandler(
            {("POST", "/research-agent/api/chats/create"): httpx.Response(200, json={"result": {}})}
        )
        backend = self._backend(handler)
        with self.assertRaises(SessionCreationError):
            await backend.create_session(encode("Hello"))

    async def test_text_stream_for_existing_session(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/research-agent/api/chats/s1/message/stream"): httpx.Response(
                    200, content=b"Hi!"
                )
            }
        )
        backend = self._backend(handler, headers_provider=lambda: {"Authorization": "Bearer t"})

        response = await backend.open_message_stream("s1", encode("Hello", llm_id="3"))

        self.assertEqual(await self._read(response), b"Hi!")
        self.assertEqual(response.session_id, "s1")
        request = handler.requests[0]
        self.assertEqual(request.url.params["llmId"], "3")
        self.assertEqual(request.headers["Content-Type"], "text/plain")
        self.assertEqual(request.headers["Authorization"], "Bearer t")
        self.assertEqual(request.content, b"Hello")

    async def test_new_session_stream_reads_id_from_header(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/research-agent/api/chat-stream"): httpx.Response(
                    200, content=b"ok", headers={"X-Chat-Id": "fresh-7"}
                )
            }
        )
        backend = self._backend(handler)

        response = await backend.open_new_session_stream(encode("Hello"))

        self.assertEqual(response.session_id, "fresh-7")
        self.assertEqual(await self._read(response), b"ok")

    async def test_multipart_stream_sends_raw_file(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/research-agent/api/chat-stream-multimodal"): httpx.Response(
                    200, content=b"A cat."
                ),
                ("POST", "/research-agent/api/create-stream-multimodal-chat"): httpx.Response(
                    200, content=b"New.", headers={"X-Chat-Id": "m-1"}
                ),
            }
        )
        backend = self._backend(handler)
        attachment = Attachment(data=b"\x89PNG-bytes", file_name="cat.png", mime_type="image/png")
        payload = encode("What is this?", attachment, llm_id="2")

        response = await backend.open_message_stream("s9", payload)
        self.assertEqual(await self._read(response), b"A cat.")
        fresh = await backend.open_new_session_stream(payload)
        self.assertEqual(fresh.session_id, "m-1")
        await fresh.aclose()

        existing, created = handler.requests
        self.assertTrue(existing.headers["Content-Type"].startswith("multipart/form-data"))
        for field in (b'name="file"', b'name="fileName"', b'name="fileType"', b'name="fileSize"',
                      b'name="prompt"', b'name="llmId"', b'name="chatId"', b"\x89PNG-bytes"):
            self.assertIn(field, existing.content)
        self.assertNotIn(b'name="chatId"', created.content)

    async def test_stream_error_status_raises_http_error(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/research-agent/api/chats/s1/message/stream"): httpx.Response(
                    503, text="overloaded"
                )
            }
        )
        backend = self._backend(handler)
        with self.assertRaises(BackendHTTPError) as ctx:
            await backend.open_message_stream("s1", encode("Hello"))
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIn("overloaded", str(ctx.exception))

    async def test_no_content_response_has_no_body(self) -> None:
        handler = RecordingHandler(
            {("POST", "/research-agent/api/chats/s1/message/stream"): httpx.Response(204)}
        )
        backend = self._backend(handler)
        response = await backend.open_message_stream("s1", encode("Hello"))
        self.assertIsNone(response.body)
        await response.aclose()

    async def test_connection_failure_maps_to_connection_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        backend = self._backend(refuse)
        with self.assertRaises(ChatConnectionError):
            await backend.open_message_stream("s1", encode("Hello"))
        with self.assertRaises(ChatConnectionError):
            await backend.create_session(encode("Hello"))

    async def test_persist_message_maps_assistant_role(self) -> None:
        handler = RecordingHandler(
            {("POST", "/research-agent/api/chats/s1/messages"): httpx.Response(200, json={"ok": True})}
        )
        backend = self._backend(handler)

        await backend.persist_message("s1", "  Hi there \n", Role.ASSISTANT)
        await backend.persist_message("s1", "Question", Role.USER)

        bodies = [json.loads(request.content) for request in handler.requests]
        self.assertEqual(bodies[0], {"content": "Hi there", "role": "agent"})
        self.assertEqual(bodies[1], {"content": "Question", "role": "user"})

    async def test_notify_abort_and_delete(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/research-agent/api/chats/s1/abort"): httpx.Response(200),
                ("DELETE", "/research-agent/api/chats/s1"): httpx.Response(200, json={"ok": True}),
            }
        )
        backend = self._backend(handler)
        await backend.notify_abort("s1")
        await backend.delete_session("s1")
        self.assertEqual(
            [(r.method, r.url.path) for r in handler.requests],
            [
                ("POST", "/research-agent/api/chats/s1/abort"),
                ("DELETE", "/research-agent/api/chats/s1"),
            ],
        )

    async def test_request_error_status_carries_server_message(self) -> None:
        handler = RecordingHandler({})
        backend = self._backend(handler)
        with self.assertRaises(BackendHTTPError) as ctx:
            await backend.fetch_history("missing")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertIn("no route", str(ctx.exception))

    async def test_fetch_history_returns_messages(self) -> None:
        messages = [
            {"role": "user", "content": "Hello", "timestamp": "2024-01-01T10:00:00Z"},
            {"role": "agent", "content": "Hi!", "timestamp": "2024-01-01T10:00:01Z"},
        ]
        handler = RecordingHandler(
            {
                ("GET", "/research-agent/api/chats/s1"): httpx.Response(
                    200, json={"result": {"id": "s1", "messages": messages}}
                )
            }
        )
        backend = self._backend(handler)
        self.assertEqual(await backend.fetch_history("s1"), messages)

    async def test_list_sessions_sorted_newest_first(self) -> None:
        chats = [
            {"id": "old", "last_updated": "2024-01-01T00:00:00Z"},
            {"id": "undated"},
            {"id": "new", "last_updated": "2024-03-01T00:00:00Z"},
        ]
        handler = RecordingHandler(
            {("GET", "/research-agent/api/chats"): httpx.Response(200, json={"result": chats})}
        )
        backend = self._backend(handler)
        result = await backend.list_sessions()
        self.assertEqual([chat["id"] for chat in result], ["new", "old", "undated"])

    async def test_list_models_applies_overrides(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/research-agent/api/llms/capabilities"): httpx.Response(
                    200,
                    json=[
                        {"id": "1", "name": "Text", "supportsImage": False},
                        {"id": "2", "name": "Vision", "supportsImage": True},
                    ],
                )
            }
        )
        backend = self._backend(
            handler,
            capability_overrides={
                "1": CapabilityOverride(image=True),
                "2": CapabilityOverride(disabled=True),
            },
        )
        models = await backend.list_models()
        self.assertEqual([model.id for model in models], ["1"])
        self.assertTrue(models[0].image)


if __name__ == "__main__":
    unittest.main()
