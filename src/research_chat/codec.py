"""Multimodal payload encoding and tolerant decoding of stored content.

``decode`` runs on persisted history written by older clients, so it is total:
whatever it is given, it returns a list of content items and never raises.
"""

from __future__ import annotations

import base64
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import json
import logging
import re
from typing import Any

from .legacy_dump import LegacyDumpError, parse_legacy_dump
from .models import (
    Attachment,
    ContentItem,
    FileUrlItem,
    ImageUrlItem,
    LegacyDump,
    MimeClass,
    PlainText,
    RawContent,
    StructuredItems,
    TextItem,
)

LOGGER = logging.getLogger(__name__)

MULTIMODAL_MARKER = "Multimodal content:"
UNREADABLE_ATTACHMENT_NOTICE = (
    "📎 *This message contained files that cannot be displayed due to a data format issue*"
)
DEFAULT_TITLE = "New chat"
DEFAULT_LLM_ID = "1"

# Regex fallback tier for dumps the structured builder rejects.
_FALLBACK_TEXT = re.compile(r"\btext=(.*?)(?=,\s*[A-Za-z_]\w*=|[}\]]|$)", re.S)
_IMAGE_DATA = r"(data:image/[^,\s]+,[\w+/=-]*)"
_FALLBACK_IMAGE_PATTERNS = (
    re.compile(r"type=image_url[^}]*file_url=\{url=" + _IMAGE_DATA),
    re.compile(r"type=image_url[^}]*image_url=\{url=" + _IMAGE_DATA),
    re.compile(r"(?:file_url|image_url)=\{url=" + _IMAGE_DATA),
    re.compile(r"url=" + _IMAGE_DATA),
)
_FALLBACK_FILE = re.compile(r"url=(data:(?:application|text)/[^,}\s]*,[^,}\s]*)")


@dataclass(frozen=True)
class TextPayload:
    """Outbound payload for a text-only exchange."""

    text: str
    llm_id: str = DEFAULT_LLM_ID

    @property
    def display_text(self) -> str:
        return self.text

    def to_json(self) -> dict[str, Any]:
        return {"role": "user", "contentType": "text/plain", "content": self.text}


@dataclass(frozen=True)
class MultipartPayload:
    """Outbound payload carrying one binary attachment plus an optional prompt."""

    prompt: str
    data: bytes
    file_name: str
    mime_type: str
    llm_id: str = DEFAULT_LLM_ID

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def display_text(self) -> str:
        return self.prompt

    def form_fields(self, chat_id: str | None = None) -> dict[str, str]:
        """Return the non-file multipart fields in the backend's naming."""
        fields = {
            "fileName": self.file_name,
            "fileType": self.mime_type,
            "fileSize": str(self.size),
        }
        if self.prompt.strip():
            fields["prompt"] = self.prompt
        fields["llmId"] = self.llm_id
        if chat_id is not None:
            fields["chatId"] = chat_id
        return fields

    def files(self) -> dict[str, tuple[str, bytes, str]]:
        return {"file": (self.file_name, self.data, self.mime_type)}

    def to_content_items(self) -> list[ContentItem]:
        """Render the payload as content items with a base64 data URL.

        Only used where the transport cannot carry binary data.
        """
        items: list[ContentItem] = []
        if self.prompt.strip():
            items.append(TextItem(self.prompt))
        url = to_data_url(self.data, self.mime_type)
        if MimeClass.from_mime_type(self.mime_type) is MimeClass.IMAGE:
            items.append(ImageUrlItem(url))
        else:
            items.append(FileUrlItem(url))
        return items

    def to_json(self) -> dict[str, Any]:
        return {
            "role": "user",
            "contentType": "application/json",
            "content": [item.to_wire() for item in self.to_content_items()],
        }


WirePayload = TextPayload | MultipartPayload


def to_data_url(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def build_preview(attachment: Attachment) -> str | None:
    """Return a data URL preview for image attachments, None otherwise."""
    if attachment.mime_class is not MimeClass.IMAGE:
        return None
    return to_data_url(attachment.data, attachment.mime_type)


def encode(
    text: str,
    attachment: Attachment | None = None,
    *,
    llm_id: str = DEFAULT_LLM_ID,
) -> WirePayload:
    """Build the outbound payload for one user submission."""
    if attachment is None:
        return TextPayload(text=text, llm_id=llm_id)
    return MultipartPayload(
        prompt=text,
        data=attachment.data,
        file_name=attachment.file_name,
        mime_type=attachment.mime_type,
        llm_id=llm_id,
    )


def encode_items(items: Iterable[ContentItem]) -> str:
    """Serialize content items to their JSON wire form."""
    return json.dumps([item.to_wire() for item in items], ensure_ascii=False)


def _url_and_detail(ref: Any) -> tuple[str, str]:
    if isinstance(ref, str):
        return ref.strip(), "auto"
    if isinstance(ref, Mapping):
        url = ref.get("url")
        detail = ref.get("detail")
        return (str(url).strip() if url else "", str(detail) if detail else "auto")
    return "", "auto"


def item_from_mapping(data: Mapping[str, Any]) -> ContentItem | None:
    """Coerce one wire-form mapping into a ContentItem, or None if unusable."""
    kind = str(data.get("type") or "").strip()
    if kind == "text" or (not kind and "text" in data):
        text = data.get("text")
        return TextItem("" if text is None else str(text))
    if kind in ("image_url", "file_url"):
        # Older encoders paired type=image_url with a file_url reference.
        ref = data.get(kind) or data.get("image_url") or data.get("file_url")
        url, detail = _url_and_detail(ref if ref is not None else data.get("url"))
        if not url:
            return None
        if kind == "image_url":
            return ImageUrlItem(url, detail)
        return FileUrlItem(url, detail)
    return None


def coerce_items(values: Iterable[Any]) -> list[ContentItem]:
    items: list[ContentItem] = []
    for value in values:
        if isinstance(value, (TextItem, ImageUrlItem, FileUrlItem)):
            items.append(value)
        elif isinstance(value, Mapping):
            item = item_from_mapping(value)
            if item is not None:
                items.append(item)
        elif isinstance(value, str):
            items.append(TextItem(value))
    return items


def looks_like_json(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("[") or stripped.startswith("{")


def is_legacy_dump(text: str) -> bool:
    return "type=" in text and ("image_url" in text or "file_url" in text)


def _unwrap(parsed: Any) -> list[ContentItem] | None:
    if isinstance(parsed, list):
        return coerce_items(parsed)
    if isinstance(parsed, Mapping) and isinstance(parsed.get("content"), list):
        return coerce_items(parsed["content"])
    return None


def _decode_json(text: str) -> list[ContentItem] | None:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    items = _unwrap(parsed)
    return items or None


def _decode_legacy(text: str) -> list[ContentItem] | None:
    try:
        records = parse_legacy_dump(text)
    except LegacyDumpError as exc:
        LOGGER.debug(
            "codec.legacy.structured_failed",
            extra={"event": "codec.legacy.structured_failed", "reason": str(exc)},
        )
        records = []
    items = coerce_items(r for r in records if isinstance(r, Mapping))
    if items:
        return items

    items = _regex_fallback(text)
    if items:
        LOGGER.info(
            "codec.legacy.regex_fallback",
            extra={"event": "codec.legacy.regex_fallback", "items": len(items)},
        )
        return items
    return None


def _regex_fallback(text: str) -> list[ContentItem]:
    parts: list[ContentItem] = []
    for match in _FALLBACK_TEXT.finditer(text):
        value = match.group(1).strip().strip("\"'").rstrip("}").strip()
        if value and value != "null":
            parts.append(TextItem(value))

    seen: set[str] = set()
    for pattern in _FALLBACK_IMAGE_PATTERNS:
        for match in pattern.finditer(text):
            url = match.group(1).strip()
            if url and url not in seen:
                seen.add(url)
                parts.append(ImageUrlItem(url))

    for match in _FALLBACK_FILE.finditer(text):
        url = match.group(1).strip()
        if url:
            parts.append(FileUrlItem(url))
    return parts


def _decode_string(text: str) -> list[ContentItem]:
    if MULTIMODAL_MARKER in text and "ArrayList" in text:
        return [TextItem(UNREADABLE_ATTACHMENT_NOTICE)]
    if looks_like_json(text):
        items = _decode_json(text)
        if items:
            return items
    if is_legacy_dump(text):
        items = _decode_legacy(text)
        if items:
            return items
    return [TextItem(text)]


def decode(raw: Any) -> list[ContentItem]:
    """Resolve stored or streamed content into a list of content items."""
    try:
        if raw is None:
            return [TextItem("")]
        if isinstance(raw, (list, tuple)):
            return coerce_items(raw)
        if isinstance(raw, Mapping):
            items = _unwrap(raw)
            if items is not None:
                return items
            return [TextItem(json.dumps(raw, ensure_ascii=False, default=str))]
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return _decode_string(str(raw))
    except Exception as exc:  # noqa: BLE001 - decoding must never fail the caller.
        LOGGER.warning(
            "codec.decode.failed",
            extra={"event": "codec.decode.failed", "error": str(exc)},
        )
        return [TextItem(raw if isinstance(raw, str) else repr(raw))]


def classify_raw_content(raw: Any) -> RawContent:
    """Resolve the raw content shape once so callers can pattern-match on it."""
    if isinstance(raw, (list, tuple, Mapping)):
        return StructuredItems(tuple(decode(raw)))
    text = raw if isinstance(raw, str) else ("" if raw is None else str(raw))
    if MULTIMODAL_MARKER in text:
        return StructuredItems(tuple(decode(text)))
    if looks_like_json(text):
        items = _decode_json(text)
        if items:
            return StructuredItems(tuple(items))
    if is_legacy_dump(text):
        return LegacyDump(text)
    return PlainText(text)


def media_label(item: ContentItem) -> str:
    if isinstance(item, ImageUrlItem):
        return "🖼️ Image"
    if isinstance(item, FileUrlItem) and item.is_pdf:
        return "📄 PDF document"
    return "📎 File"


def extract_title(raw: Any, max_length: int = 50) -> str:
    """Summarize content for session lists: first text, else a media label."""
    items = decode(raw)
    for item in items:
        if isinstance(item, TextItem):
            text = " ".join(item.text.split())
            if not text:
                continue
            if len(text) > max_length:
                return text[: max(1, max_length - 1)].rstrip() + "…"
            return text
    for item in items:
        if not isinstance(item, TextItem):
            return media_label(item)
    return DEFAULT_TITLE
