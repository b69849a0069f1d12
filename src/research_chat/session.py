"""Session controller: owns the transcript and drives one exchange at a time."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import contextlib
from dataclasses import replace
from datetime import UTC, datetime
from enum import Enum
import logging
from typing import Any, TypeVar

from . import codec
from .abort import AbortCoordinator, CancelToken
from .backend import ChatBackend, StreamResponse
from .config import Config, SettingsChannel
from .content_parser import parse_content
from .exceptions import (
    ChatStreamingError,
    ExchangeCancelledError,
    MissingStreamBodyError,
)
from .models import (
    Attachment,
    ChatSession,
    ContentItem,
    Message,
    ParsedView,
    Role,
    StreamExchange,
    new_message_id,
)
from .state import SessionState, StateManager, VisualState
from .stream_reader import StreamReader
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

STOPPED_SUFFIX = " (stopped by user)"
EMPTY_RESPONSE_TEXT = "(No response from model.)"
SESSION_CREATE_ERROR = "Error: Could not initiate chat session. {detail}"
NO_BODY_ERROR = "Error: Did not receive a streamable response."
STREAM_ERROR_SUFFIX = "\nError reading stream: {detail}"
HISTORY_LOAD_ERROR = "Error loading chat. Please try again."


class SessionEvent(str, Enum):
    """Notifications delivered to controller observers."""

    MESSAGE_ADDED = "message.added"
    MESSAGE_UPDATED = "message.updated"
    STATE_CHANGED = "state.changed"
    SESSION_CHANGED = "session.changed"


Observer = Callable[[SessionEvent, Message | None], None]


def _record_timestamp(record: Mapping[str, Any]) -> datetime | None:
    for key in ("timestamp", "created_at", "createdAt"):
        value = record.get(key)
        if isinstance(value, (int, float)):
            # Epoch milliseconds.
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        if isinstance(value, str) and value.strip():
            try:
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                continue
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


class SessionController:
    """Run exchanges against a ChatBackend and keep the transcript current.

    The controller is the only writer of the message list. Every exchange gets
    its own cancel token; a coroutine whose token was cancelled stops touching
    controller state at its next suspension point, so ``stop()`` can return the
    session to idle synchronously.
    """

    EXCHANGE_TASK_NAME = "active_exchange"

    def __init__(
        self,
        backend: ChatBackend,
        settings: SettingsChannel | None = None,
        *,
        task_manager: TaskManager | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or SettingsChannel()
        self.task_manager = task_manager or TaskManager()
        config = self.settings.current
        abort_kwargs: dict[str, Any] = {}
        if clock is not None:
            abort_kwargs["clock"] = clock
        self.abort = AbortCoordinator(
            backend.notify_abort,
            task_manager=self.task_manager,
            cooldown_seconds=config.chat.abort_cooldown_seconds,
            notify_timeout_seconds=config.chat.abort_notify_timeout_seconds,
            **abort_kwargs,
        )
        self.state = StateManager()
        self.state.on_change(self._on_state_change)
        self.session = ChatSession()
        self._index: dict[str, int] = {}
        self._observers: list[Observer] = []
        self._exchange: StreamExchange | None = None
        self._visual_state = VisualState.DEFAULT
        self._generation = 0
        self._unsubscribe_settings = self.settings.subscribe(self._on_settings_changed)

    # -- observation -------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer(event, message)``; returns an unsubscribe callable."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _emit(self, event: SessionEvent, message: Message | None = None) -> None:
        for observer in list(self._observers):
            try:
                observer(event, message)
            except Exception as exc:  # noqa: BLE001 - observers must not break exchanges.
                LOGGER.error(f"Session observer failed: {exc}")

    def _on_state_change(self, old: SessionState, new: SessionState) -> None:
        self._emit(SessionEvent.STATE_CHANGED)

    def _on_settings_changed(self, old: Config, new: Config) -> None:
        self.abort.cooldown_seconds = new.chat.abort_cooldown_seconds
        self.abort.notify_timeout_seconds = new.chat.abort_notify_timeout_seconds

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self.session.messages)

    @property
    def visual_state(self) -> VisualState:
        return self._visual_state

    @property
    def is_busy(self) -> bool:
        return self.state.is_busy

    @property
    def is_streaming(self) -> bool:
        return self.state.is_streaming

    @property
    def can_submit(self) -> bool:
        return self.state.can_send_message()

    def get_message(self, message_id: str) -> Message | None:
        index = self._index.get(message_id)
        return None if index is None else self.session.messages[index]

    def view(self, message_id: str) -> ParsedView | None:
        """Return the current render-ready view of one message."""
        message = self.get_message(message_id)
        return None if message is None else message.renderable

    def _set_visual_state(self, value: VisualState) -> None:
        if self._visual_state is not value:
            self._visual_state = value
            self._emit(SessionEvent.STATE_CHANGED)

    # -- transcript mutation ----------------------------------------------

    def _build_message(
        self,
        role: Role,
        raw_content: str | list[ContentItem],
        *,
        historical: bool = False,
        attachment: Attachment | None = None,
        created_at: datetime | None = None,
    ) -> Message:
        expand = (
            False if historical else self.settings.current.chat.expand_live_thinking
        )
        message = Message(
            id=new_message_id(role.value),
            role=role,
            raw_content=raw_content,
            renderable=parse_content(raw_content, expand_thinking=expand),
            attachment=attachment,
            historical=historical,
        )
        if created_at is not None:
            message.created_at = created_at
        return message

    def _append(self, message: Message) -> Message:
        self._index[message.id] = len(self.session.messages)
        self.session.messages.append(message)
        self._emit(SessionEvent.MESSAGE_ADDED, message)
        return message

    def _append_system(self, text: str) -> Message:
        return self._append(self._build_message(Role.SYSTEM, text))

    def _update_content(self, message_id: str, raw_content: str) -> Message | None:
        """Replace one message's content and recompute only its view."""
        index = self._index.get(message_id)
        if index is None:
            return None
        current = self.session.messages[index]
        expand = (
            False if current.historical else self.settings.current.chat.expand_live_thinking
        )
        updated = replace(
            current,
            raw_content=raw_content,
            renderable=parse_content(raw_content, expand_thinking=expand),
        )
        self.session.messages[index] = updated
        self._emit(SessionEvent.MESSAGE_UPDATED, updated)
        return updated

    def _reset_session(self, session: ChatSession | None = None) -> None:
        self._generation += 1
        self.session = session or ChatSession()
        self._index = {}
        self._emit(SessionEvent.SESSION_CHANGED)

    # -- exchange lifecycle ------------------------------------------------

    def submit(
        self, text: str, attachment: Attachment | None = None
    ) -> asyncio.Task[None] | None:
        """Start an exchange, or stop the active one.

        Returns the task running the new exchange, or None when nothing was
        started (blank input, a stop request, or a finalizing exchange). Must be
        called from inside a running event loop.
        """
        if self.state.has_active_exchange:
            self.stop()
            return None
        if not self.state.can_send_message():
            LOGGER.debug(
                "session.submit.ignored",
                extra={"event": "session.submit.ignored", "state": self.state.state.value},
            )
            return None
        if not text.strip() and attachment is None:
            return None

        config = self.settings.current
        payload = codec.encode(text, attachment, llm_id=config.service.llm_id)
        if attachment is not None:
            attachment.preview_data_url = codec.build_preview(attachment)
            raw_content: str | list[ContentItem] = payload.to_content_items()
        else:
            raw_content = text
        self._append(
            self._build_message(Role.USER, raw_content, attachment=attachment)
        )
        if self.session.title is None:
            self.session.title = codec.extract_title(
                raw_content, max_length=config.chat.title_max_length
            )

        token = self.abort.begin()
        if self.session.session_id is None:
            self.state.transition_to(SessionState.CREATING_SESSION)
        else:
            self.state.transition_to(SessionState.AWAITING_STREAM)
        self._set_visual_state(VisualState.ACTIVITY)
        LOGGER.info(
            "session.exchange.start",
            extra={
                "event": "session.exchange.start",
                "session_id": self.session.session_id,
                "has_attachment": attachment is not None,
            },
        )
        return self.task_manager.spawn(
            self._run_exchange(token, payload, config), name=self.EXCHANGE_TASK_NAME
        )

    async def send(self, text: str, attachment: Attachment | None = None) -> None:
        """Submit and wait for the resulting exchange, if any, to settle."""
        task = self.submit(text, attachment)
        if task is not None:
            await task

    def stop(self) -> bool:
        """Stop the active exchange. Returns False if there was nothing to stop."""
        if not self.state.has_active_exchange:
            return False
        token = self.abort.active_token
        self.abort.cancel(self.session.session_id)
        exchange = self._exchange
        if exchange is not None and exchange.assistant_message_id is not None:
            self._update_content(
                exchange.assistant_message_id, exchange.accumulated_text + STOPPED_SUFFIX
            )
        self._exchange = None
        if token is not None:
            self.abort.finish(token)
        self.state.settle(SessionState.ABORTED)
        self._set_visual_state(VisualState.DEFAULT)
        return True

    def _discard_exchange(self) -> None:
        if self.state.has_active_exchange:
            self.stop()
        elif self.state.state is SessionState.FINALIZING:
            # Only the final persistence call is outstanding; drop it locally.
            token = self.abort.active_token
            if token is not None:
                token.cancel("discarded")
                self.abort.finish(token)
            self._exchange = None
            self.state.transition_to(SessionState.IDLE)

    def new_chat(self) -> None:
        """Discard the current session, stopping any exchange first."""
        self._discard_exchange()
        self._reset_session()
        self._set_visual_state(VisualState.DEFAULT)

    async def _until_cancelled(self, token: CancelToken, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless ``token`` fires first."""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await waiter

        if not work.done():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await work
            raise ExchangeCancelledError("Exchange stopped by user.")
        result = work.result()
        if token.cancelled:
            if isinstance(result, StreamResponse):
                await result.aclose()
            raise ExchangeCancelledError("Exchange stopped by user.")
        return result

    async def _persist_best_effort(
        self, token: CancelToken, session_id: str, content: str, role: Role
    ) -> None:
        try:
            await self._until_cancelled(
                token, self.backend.persist_message(session_id, content, role)
            )
        except ExchangeCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - persistence is best effort.
            LOGGER.warning(
                "session.persist.failed",
                extra={
                    "event": "session.persist.failed",
                    "session_id": session_id,
                    "role": role.value,
                    "error": str(exc),
                },
            )

    def _adopt_session_id(self, session_id: str) -> None:
        self.session.session_id = session_id
        LOGGER.info(
            "session.created",
            extra={"event": "session.created", "session_id": session_id},
        )

    def _fail(self, text: str) -> None:
        self._append_system(text)
        self._exchange = None
        self.state.settle(SessionState.FAILED)
        self._set_visual_state(VisualState.ERROR)

    async def _acquire_stream(
        self, token: CancelToken, payload: codec.WirePayload, config: Config
    ) -> StreamResponse | None:
        """Create the session if needed and open the response stream.

        Returns None after reporting a setup failure.
        """
        session_id = self.session.session_id
        if session_id is None and config.chat.session_bootstrap == "stream_creates":
            try:
                response = await self._until_cancelled(
                    token, self.backend.open_new_session_stream(payload)
                )
            except ExchangeCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - reported as a system message.
                if token.cancelled:
                    raise ExchangeCancelledError("Exchange stopped by user.") from exc
                self._fail(SESSION_CREATE_ERROR.format(detail=exc))
                return None
            if response.session_id:
                self._adopt_session_id(response.session_id)
            else:
                # Without an id the reply cannot be persisted to this session.
                LOGGER.warning(
                    "session.bootstrap.missing_id",
                    extra={
                        "event": "session.bootstrap.missing_id",
                        "status": response.status_code,
                    },
                )
            self.state.transition_to(SessionState.AWAITING_STREAM)
            return response

        if session_id is None:
            try:
                session_id = await self._until_cancelled(
                    token, self.backend.create_session(payload)
                )
            except ExchangeCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - reported as a system message.
                if token.cancelled:
                    raise ExchangeCancelledError("Exchange stopped by user.") from exc
                LOGGER.warning(
                    "session.create.failed",
                    extra={"event": "session.create.failed", "error": str(exc)},
                )
                self._fail(SESSION_CREATE_ERROR.format(detail=exc))
                return None
            self._adopt_session_id(session_id)
            self.state.transition_to(SessionState.AWAITING_STREAM)
        elif config.chat.persist_user_messages:
            content = (
                payload.text
                if isinstance(payload, codec.TextPayload)
                else codec.encode_items(payload.to_content_items())
            )
            await self._persist_best_effort(token, session_id, content, Role.USER)

        try:
            return await self._until_cancelled(
                token, self.backend.open_message_stream(session_id, payload)
            )
        except ExchangeCancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - reported as a system message.
            if token.cancelled:
                raise ExchangeCancelledError("Exchange stopped by user.") from exc
            LOGGER.warning(
                "session.stream.open_failed",
                extra={"event": "session.stream.open_failed", "error": str(exc)},
            )
            self._fail(f"Error: {exc}")
            return None

    async def _run_exchange(
        self, token: CancelToken, payload: codec.WirePayload, config: Config
    ) -> None:
        try:
            response = await self._acquire_stream(token, payload, config)
            if response is None:
                return
            try:
                await self._consume(token, response)
            except MissingStreamBodyError as exc:
                LOGGER.warning(
                    "session.stream.no_body",
                    extra={
                        "event": "session.stream.no_body",
                        "status": response.status_code,
                    },
                )
                self._fail(str(exc))
            finally:
                await response.aclose()
        except ExchangeCancelledError:
            LOGGER.info(
                "session.exchange.cancelled",
                extra={"event": "session.exchange.cancelled"},
            )
        finally:
            self.abort.finish(token)

    async def _consume(self, token: CancelToken, response: StreamResponse) -> None:
        if response.body is None:
            raise MissingStreamBodyError(NO_BODY_ERROR)

        self.state.transition_to(SessionState.STREAMING)
        assistant = self._append(self._build_message(Role.ASSISTANT, ""))
        exchange = StreamExchange(cancel_token=token, assistant_message_id=assistant.id)
        self._exchange = exchange

        reader = StreamReader(response.body, cancel_token=token)
        try:
            async for delta in reader:
                if token.cancelled:
                    return
                exchange.accumulated_text += delta
                self._update_content(assistant.id, exchange.accumulated_text)
        except ChatStreamingError as exc:
            if token.cancelled:
                return
            self._update_content(
                assistant.id,
                exchange.accumulated_text + STREAM_ERROR_SUFFIX.format(detail=exc),
            )
            self._exchange = None
            self.state.settle(SessionState.FAILED)
            self._set_visual_state(VisualState.ERROR)
            return
        finally:
            await reader.aclose()

        if token.cancelled:
            return
        await self._finalize(token, exchange, assistant.id)

    async def _finalize(
        self, token: CancelToken, exchange: StreamExchange, assistant_id: str
    ) -> None:
        self.state.transition_to(SessionState.FINALIZING)
        session_id = self.session.session_id
        final_text = exchange.accumulated_text
        if not final_text.strip():
            self._update_content(assistant_id, EMPTY_RESPONSE_TEXT)
        elif session_id is not None:
            await self._persist_best_effort(
                token, session_id, final_text, Role.ASSISTANT
            )
            if token.cancelled:
                return

        self._exchange = None
        self.state.transition_to(SessionState.IDLE)
        self._set_visual_state(VisualState.DEFAULT)
        LOGGER.info(
            "session.exchange.done",
            extra={
                "event": "session.exchange.done",
                "session_id": session_id,
                "chars": len(final_text),
            },
        )

    # -- history -----------------------------------------------------------

    def _message_from_record(self, record: Mapping[str, Any]) -> Message:
        label = str(record.get("role") or "").strip().lower()
        if label == Role.USER.value:
            role = Role.USER
        elif label == Role.SYSTEM.value:
            role = Role.SYSTEM
        else:
            # The backend labels model output "agent"; anything else is the model too.
            role = Role.ASSISTANT
        content = record.get("content")
        raw_content: str | list[ContentItem]
        if isinstance(content, (list, tuple)):
            raw_content = codec.coerce_items(content)
        elif content is None:
            raw_content = ""
        else:
            raw_content = str(content)
        return self._build_message(
            role,
            raw_content,
            historical=True,
            created_at=_record_timestamp(record),
        )

    async def load_session(self, session_id: str) -> bool:
        """Replace the transcript with a stored session. Returns True on success."""
        self._discard_exchange()
        self._reset_session(ChatSession(session_id=session_id))
        generation = self._generation
        try:
            records = await self.backend.fetch_history(session_id)
        except Exception as exc:  # noqa: BLE001 - reported as a system message.
            LOGGER.warning(
                "session.history.failed",
                extra={
                    "event": "session.history.failed",
                    "session_id": session_id,
                    "error": str(exc),
                },
            )
            if generation == self._generation:
                self._append_system(HISTORY_LOAD_ERROR)
                self._set_visual_state(VisualState.ERROR)
            return False

        if generation != self._generation:
            return False

        indexed = [
            (position, _record_timestamp(record), record)
            for position, record in enumerate(records)
        ]
        indexed.sort(
            key=lambda row: (row[1] is None, row[1] or datetime.min.replace(tzinfo=UTC), row[0])
        )
        config = self.settings.current
        for _, _, record in indexed:
            message = self._append(self._message_from_record(record))
            if self.session.title is None and message.role is Role.USER:
                self.session.title = codec.extract_title(
                    message.raw_content, max_length=config.chat.title_max_length
                )
        self._set_visual_state(VisualState.DEFAULT)
        LOGGER.info(
            "session.history.loaded",
            extra={
                "event": "session.history.loaded",
                "session_id": session_id,
                "messages": len(indexed),
            },
        )
        return True

    async def aclose(self) -> None:
        """Stop any exchange and cancel outstanding background work."""
        self._unsubscribe_settings()
        self._discard_exchange()
        await self.task_manager.cancel_all()
