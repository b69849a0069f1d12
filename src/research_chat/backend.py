"""Backend collaborator interface and its httpx implementation."""

from __future__ import annotations

from collections.abc import AsyncIterable, Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Protocol

import httpx

from .capabilities import ModelCapabilities, apply_capability_overrides
from .codec import MultipartPayload, WirePayload
from .config import CapabilityOverride, Config
from .exceptions import (
    BackendHTTPError,
    ChatConnectionError,
    ResearchChatError,
    SessionCreationError,
)
from .models import Role

LOGGER = logging.getLogger(__name__)

HeadersProvider = Callable[[], Mapping[str, str]]


@dataclass
class StreamResponse:
    """An opened streaming response. ``body`` is None when nothing is readable."""

    body: AsyncIterable[bytes] | None
    session_id: str | None = None
    status_code: int = 200
    close_callback: Callable[[], Awaitable[None]] | None = None

    async def aclose(self) -> None:
        if self.close_callback is not None:
            await self.close_callback()


class ChatBackend(Protocol):
    """Remote operations the session controller depends on."""

    async def create_session(self, payload: WirePayload) -> str: ...

    async def open_message_stream(
        self, session_id: str, payload: WirePayload
    ) -> StreamResponse: ...

    async def open_new_session_stream(self, payload: WirePayload) -> StreamResponse: ...

    async def persist_message(self, session_id: str, content: str, role: Role) -> None: ...

    async def notify_abort(self, session_id: str) -> None: ...

    async def fetch_history(self, session_id: str) -> list[dict[str, Any]]: ...


def _result(data: Any) -> Any:
    if isinstance(data, Mapping) and "result" in data:
        return data["result"]
    return data


def _sort_key_updated(chat: Mapping[str, Any]) -> float:
    value = chat.get("last_updated") or chat.get("lastUpdated")
    if not isinstance(value, str):
        return float("-inf")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return float("-inf")


class HttpChatBackend:
    """Talk to the research agent REST API over httpx.

    Text exchanges send ``text/plain`` bodies; attachments go out as
    ``multipart/form-data`` with the raw file bytes.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 120.0,
        headers_provider: HeadersProvider | None = None,
        session_id_header: str = "X-Chat-Id",
        assistant_role_label: str = "agent",
        capability_overrides: Mapping[str, CapabilityOverride] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers_provider = headers_provider
        self.session_id_header = session_id_header
        self.assistant_role_label = assistant_role_label
        self.capability_overrides = dict(capability_overrides or {})
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls, config: Config, headers_provider: HeadersProvider | None = None
    ) -> HttpChatBackend:
        return cls(
            config.service.base_url,
            timeout=config.service.timeout_seconds,
            headers_provider=headers_provider,
            session_id_header=config.service.session_id_header,
            assistant_role_label=config.service.assistant_role_label,
            capability_overrides=config.capabilities.overrides,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self, content_type: str | None = None) -> dict[str, str]:
        headers = dict(self._headers_provider() if self._headers_provider else {})
        if content_type is not None:
            headers["Content-Type"] = content_type
        return headers

    def _map_exception(self, exc: Exception) -> ResearchChatError:
        if isinstance(exc, ResearchChatError):
            return exc
        if isinstance(
            exc,
            (
                httpx.ConnectError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
                httpx.NetworkError,
            ),
        ):
            return ChatConnectionError(f"Unable to reach backend at {self.base_url}.")
        return ResearchChatError(f"Backend request failed: {exc}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, Mapping) and data.get("message"):
            return str(data["message"])
        return response.text.strip() or "No error message"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, self._url(path), **kwargs)
        except Exception as exc:  # noqa: BLE001 - mapped to domain errors.
            raise self._map_exception(exc) from exc
        if response.is_error:
            raise BackendHTTPError(
                f"HTTP error {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
            )
        return response

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return {"status": response.status_code, "ok": True}
        try:
            return response.json()
        except ValueError:
            return {"status": response.status_code, "ok": True}

    async def _open_stream(self, request: httpx.Request) -> StreamResponse:
        try:
            response = await self._client.send(request, stream=True)
        except Exception as exc:  # noqa: BLE001 - mapped to domain errors.
            raise self._map_exception(exc) from exc

        LOGGER.info(
            "backend.stream.opened",
            extra={
                "event": "backend.stream.opened",
                "path": request.url.path,
                "status": response.status_code,
            },
        )
        if response.is_error:
            await response.aread()
            await response.aclose()
            raise BackendHTTPError(
                f"HTTP error! status: {response.status_code} - {response.text or 'No error message'}",
                status_code=response.status_code,
            )

        body = None if response.status_code == 204 else response.aiter_bytes()
        return StreamResponse(
            body=body,
            session_id=response.headers.get(self.session_id_header),
            status_code=response.status_code,
            close_callback=response.aclose,
        )

    def _stream_request(
        self, payload: WirePayload, *, text_path: str, multipart_path: str, chat_id: str | None
    ) -> httpx.Request:
        if isinstance(payload, MultipartPayload):
            LOGGER.info(
                "backend.multipart",
                extra={
                    "event": "backend.multipart",
                    "file_name": payload.file_name,
                    "file_type": payload.mime_type,
                    "file_size": payload.size,
                },
            )
            return self._client.build_request(
                "POST",
                self._url(multipart_path),
                data=payload.form_fields(chat_id=chat_id),
                files=payload.files(),
                headers=self._headers(),
            )
        return self._client.build_request(
            "POST",
            self._url(text_path),
            params={"llmId": payload.llm_id},
            content=payload.text.encode("utf-8"),
            headers=self._headers("text/plain"),
        )

    async def create_session(self, payload: WirePayload) -> str:
        data = await self._request_json(
            "POST",
            "/chats/create",
            json=payload.to_json(),
            headers=self._headers("application/json"),
        )
        result = _result(data)
        session_id = None
        if isinstance(result, Mapping):
            session_id = result.get("id") or result.get("sessionId")
        if not session_id:
            raise SessionCreationError("Failed to create chat or retrieve chat ID.")
        return str(session_id)

    async def open_message_stream(
        self, session_id: str, payload: WirePayload
    ) -> StreamResponse:
        request = self._stream_request(
            payload,
            text_path=f"/chats/{session_id}/message/stream",
            multipart_path="/chat-stream-multimodal",
            chat_id=session_id,
        )
        stream = await self._open_stream(request)
        stream.session_id = stream.session_id or session_id
        return stream

    async def open_new_session_stream(self, payload: WirePayload) -> StreamResponse:
        request = self._stream_request(
            payload,
            text_path="/chat-stream",
            multipart_path="/create-stream-multimodal-chat",
            chat_id=None,
        )
        return await self._open_stream(request)

    def role_label(self, role: Role) -> str:
        return self.assistant_role_label if role is Role.ASSISTANT else role.value

    async def persist_message(self, session_id: str, content: str, role: Role) -> None:
        await self._request_json(
            "POST",
            f"/chats/{session_id}/messages",
            json={"content": content.strip(), "role": self.role_label(role)},
            headers=self._headers("application/json"),
        )

    async def notify_abort(self, session_id: str) -> None:
        await self._request("POST", f"/chats/{session_id}/abort", headers=self._headers())

    async def fetch_history(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request_json(
            "GET", f"/chats/{session_id}", headers=self._headers("application/json")
        )
        result = _result(data)
        messages = result.get("messages") if isinstance(result, Mapping) else None
        return [dict(m) for m in messages or [] if isinstance(m, Mapping)]

    async def list_sessions(self) -> list[dict[str, Any]]:
        """Return session summaries, most recently updated first."""
        data = await self._request_json(
            "GET", "/chats", headers=self._headers("application/json")
        )
        result = _result(data)
        if not isinstance(result, list):
            LOGGER.warning(
                "backend.sessions.unexpected_shape",
                extra={"event": "backend.sessions.unexpected_shape"},
            )
            return []
        chats = [dict(c) for c in result if isinstance(c, Mapping)]
        chats.sort(key=_sort_key_updated, reverse=True)
        return chats

    async def delete_session(self, session_id: str) -> None:
        await self._request_json(
            "DELETE", f"/chats/{session_id}", headers=self._headers("application/json")
        )

    async def list_models(self) -> list[ModelCapabilities]:
        """Return available models with configured overrides applied."""
        data = await self._request_json(
            "GET", "/llms/capabilities", headers=self._headers("application/json")
        )
        result = _result(data)
        if not isinstance(result, list):
            return []
        models = [
            ModelCapabilities.from_payload(item)
            for item in result
            if isinstance(item, Mapping)
        ]
        return apply_capability_overrides(models, self.capability_overrides)
