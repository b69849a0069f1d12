"""Domain types shared by the session controller, codec and content parser."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
import mimetypes
from pathlib import Path
import re
import time
from typing import Any, ClassVar, Literal
from uuid import uuid4

from .abort import CancelToken


class Role(str, Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MimeClass(str, Enum):
    """Coarse attachment classification used for payloads and labels."""

    IMAGE = "image"
    PDF = "pdf"
    TEXT = "text"
    OTHER = "other"

    @classmethod
    def from_mime_type(cls, mime_type: str) -> MimeClass:
        normalized = mime_type.strip().lower()
        if normalized.startswith("image/"):
            return cls.IMAGE
        if normalized == "application/pdf":
            return cls.PDF
        if normalized.startswith("text/"):
            return cls.TEXT
        return cls.OTHER


@dataclass(frozen=True)
class TextItem:
    """Plain text content item."""

    text: str
    type: ClassVar[Literal["text"]] = "text"

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ImageUrlItem:
    """Image reference, usually a ``data:image/...;base64,...`` URL."""

    url: str
    detail: str = "auto"
    type: ClassVar[Literal["image_url"]] = "image_url"

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "image_url": {"url": self.url, "detail": self.detail}}


@dataclass(frozen=True)
class FileUrlItem:
    """Non-image file reference such as an embedded PDF."""

    url: str
    detail: str = "auto"
    type: ClassVar[Literal["file_url"]] = "file_url"

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "file_url": {"url": self.url, "detail": self.detail}}

    @property
    def is_pdf(self) -> bool:
        return self.url.startswith("data:application/pdf") or self.url.lower().endswith(
            ".pdf"
        )


ContentItem = TextItem | ImageUrlItem | FileUrlItem


@dataclass(frozen=True)
class PlainText:
    """Raw content that is ordinary prose."""

    text: str


@dataclass(frozen=True)
class StructuredItems:
    """Raw content that already is (or parses to) a content-item list."""

    items: tuple[ContentItem, ...]


@dataclass(frozen=True)
class LegacyDump:
    """Raw content in the non-JSON ``key=value`` serialization of older history."""

    text: str


RawContent = PlainText | StructuredItems | LegacyDump


@dataclass
class Attachment:
    """A single local file attached to an outgoing user message."""

    data: bytes
    file_name: str
    mime_type: str
    preview_data_url: str | None = None

    @property
    def mime_class(self) -> MimeClass:
        return MimeClass.from_mime_type(self.mime_type)

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: str | Path) -> Attachment:
        """Read a file from disk and guess its MIME type from the extension."""
        resolved = Path(path).expanduser()
        mime_type, _ = mimetypes.guess_type(resolved.name)
        return cls(
            data=resolved.read_bytes(),
            file_name=resolved.name,
            mime_type=mime_type or "application/octet-stream",
        )


def new_message_id(prefix: str) -> str:
    """Return a locally unique, opaque message id."""
    return f"{prefix}-{uuid4().hex}"


@dataclass(frozen=True)
class ThinkingBlock:
    """A closed ``<thinking>`` aside extracted from assistant text."""

    id: str
    text: str
    is_open: bool = False


_COMPLETED_STATUS = re.compile(r"\b(completed|finished|done|succeeded|success(fully)?)\b", re.I)


@dataclass(frozen=True)
class ParsedView:
    """Derived, render-ready view of a message. Recomputed, never persisted."""

    visible_text: str = ""
    thinking_blocks: tuple[ThinkingBlock, ...] = ()
    in_progress_thinking: str | None = None
    tool_events: tuple[str, ...] = ()
    media_items: tuple[ContentItem, ...] = ()

    @property
    def is_thinking(self) -> bool:
        return self.in_progress_thinking is not None

    @property
    def current_tool_status(self) -> str | None:
        return self.tool_events[-1] if self.tool_events else None

    @property
    def tool_phase_complete(self) -> bool:
        status = self.current_tool_status
        return status is not None and bool(_COMPLETED_STATUS.search(status))

    def segments(self) -> Iterator[tuple[str, Any]]:
        """Yield ``(kind, value)`` pairs in rendering order.

        Media first, then the in-progress thinking text, then completed thinking
        blocks oldest first, then the visible text.
        """
        for item in self.media_items:
            yield "media", item
        if self.in_progress_thinking is not None:
            yield "thinking_in_progress", self.in_progress_thinking
        for block in self.thinking_blocks:
            yield "thinking", block
        if self.visible_text:
            yield "text", self.visible_text


@dataclass
class Message:
    """One entry in the chat transcript."""

    id: str
    role: Role
    raw_content: str | list[ContentItem]
    renderable: ParsedView = field(default_factory=ParsedView)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attachment: Attachment | None = None
    historical: bool = False

    @property
    def text(self) -> str:
        """Return raw content as a string when it is one, otherwise an empty string."""
        return self.raw_content if isinstance(self.raw_content, str) else ""


@dataclass
class ChatSession:
    """Identity and ordered transcript of one conversation."""

    session_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    title: str | None = None


@dataclass
class StreamExchange:
    """Ephemeral bookkeeping for one response body being consumed."""

    cancel_token: CancelToken
    accumulated_text: str = ""
    started_at: float = field(default_factory=time.monotonic)
    assistant_message_id: str | None = None
