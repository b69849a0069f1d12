"""Derive the render-ready view of a message from its accumulated raw content.

Parsing is stateless: every call re-reads the whole text of one message, which
is cheap next to network latency and makes partial (still streaming) input
safe to process after every delta.

Thinking tags are resolved first. Tool-status annotations are only looked for
in the text outside thinking spans, so an annotation inside an open thinking
block stays part of that block.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from . import codec
from .models import (
    ContentItem,
    LegacyDump,
    ParsedView,
    PlainText,
    StructuredItems,
    TextItem,
    ThinkingBlock,
)

LOGGER = logging.getLogger(__name__)

_THINKING_PAIR = re.compile(r"<(thinking|think)>([\s\S]*?)</(thinking|think)>")
_OPENING_TAGS = ("<thinking>", "<think>")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")

TOOL_LEAD_PHRASES: tuple[str, ...] = (
    "calling tool",
    "executing tool",
    "tool completed",
    "tool execution",
    "tool result",
    "tool error",
    "tool call",
    "using tool",
    "running tool",
)


def extract_thinking(text: str) -> tuple[str, list[ThinkingBlock], str | None]:
    """Split ``text`` into visible text, closed thinking blocks, and an open tail.

    Returns ``(visible_text, blocks, in_progress)`` where ``in_progress`` is the
    trimmed text after a trailing unclosed opening tag, or None.
    """
    visible: list[str] = []
    blocks: list[ThinkingBlock] = []
    position = 0

    for match in _THINKING_PAIR.finditer(text):
        visible.append(text[position : match.start()])
        blocks.append(
            ThinkingBlock(id=f"thinking-{len(blocks)}", text=match.group(2).strip())
        )
        position = match.end()

    remainder = text[position:]
    in_progress: str | None = None
    open_index = -1
    open_tag = ""
    for tag in _OPENING_TAGS:
        index = remainder.rfind(tag)
        if index > open_index:
            open_index, open_tag = index, tag
    if open_index != -1:
        visible.append(remainder[:open_index])
        in_progress = remainder[open_index + len(open_tag) :].strip()
    else:
        visible.append(remainder)

    return "".join(visible), blocks, in_progress


def _lead_phrase_at(text: str, index: int) -> bool:
    """Return True if ``text[index]`` opens a recognized tool annotation."""
    head = text[index + 1 : index + 1 + 32].lstrip().lower()
    return any(head.startswith(phrase) for phrase in TOOL_LEAD_PHRASES)


def _scan_balanced(text: str, start: int) -> int:
    """Return the index just past the bracket that closes ``text[start]``.

    Unterminated annotations (the stream is still open) run to end of text.
    """
    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return index + 1
    return len(text)


def extract_tool_events(text: str) -> tuple[str, list[str]]:
    """Remove tool-status annotations from ``text``.

    Returns the cleaned text and the annotations in order of appearance, with
    consecutive duplicates collapsed. Removal can splice a new annotation
    together out of its surroundings, so passes repeat until none is found.
    """
    cleaned, events = _extract_tool_events_once(text)
    found = bool(events)
    while found:
        cleaned, more = _extract_tool_events_once(cleaned)
        found = bool(more)
        for event in more:
            if not events or events[-1] != event:
                events.append(event)
    return cleaned, events


def _extract_tool_events_once(text: str) -> tuple[str, list[str]]:
    kept: list[str] = []
    events: list[str] = []
    position = 0
    search_from = 0

    while True:
        index = text.find("[", search_from)
        if index == -1:
            break
        if not _lead_phrase_at(text, index):
            search_from = index + 1
            continue
        end = _scan_balanced(text, index)
        kept.append(text[position:index])
        annotation = text[index:end].strip()
        if not events or events[-1] != annotation:
            events.append(annotation)
        position = search_from = end

    kept.append(text[position:])
    cleaned = _EXCESS_NEWLINES.sub("\n\n", "".join(kept)).strip()
    return cleaned, events


def tool_status_label(event: str) -> str:
    """Return an annotation without its outer brackets, for status lines."""
    label = event.strip()
    if label.startswith("["):
        label = label[1:]
    if label.endswith("]"):
        label = label[:-1]
    return label.strip()


def parse_text(text: str, *, expand_thinking: bool = False) -> ParsedView:
    """Run thinking extraction, then tool extraction, over prose."""
    visible, blocks, in_progress = extract_thinking(text)
    visible, events = extract_tool_events(visible)
    if expand_thinking:
        blocks = [
            ThinkingBlock(id=block.id, text=block.text, is_open=True)
            for block in blocks
        ]
    return ParsedView(
        visible_text=visible,
        thinking_blocks=tuple(blocks),
        in_progress_thinking=in_progress,
        tool_events=tuple(events),
    )


def _parse_items(
    items: tuple[ContentItem, ...] | list[ContentItem], *, expand_thinking: bool
) -> ParsedView:
    texts = [item.text for item in items if isinstance(item, TextItem)]
    media = tuple(item for item in items if not isinstance(item, TextItem))
    view = parse_text("\n\n".join(texts), expand_thinking=expand_thinking)
    return ParsedView(
        visible_text=view.visible_text,
        thinking_blocks=view.thinking_blocks,
        in_progress_thinking=view.in_progress_thinking,
        tool_events=view.tool_events,
        media_items=media,
    )


def parse_content(raw: Any, *, expand_thinking: bool = False) -> ParsedView:
    """Build the ParsedView for raw message content. Never raises."""
    try:
        resolved = codec.classify_raw_content(raw)
        match resolved:
            case PlainText(text=text):
                return parse_text(text, expand_thinking=expand_thinking)
            case StructuredItems(items=items):
                return _parse_items(items, expand_thinking=expand_thinking)
            case LegacyDump(text=text):
                return _parse_items(
                    codec.decode(text), expand_thinking=expand_thinking
                )
    except Exception as exc:  # noqa: BLE001 - degrade to raw text, never propagate.
        LOGGER.warning(
            "parser.failed",
            extra={"event": "parser.failed", "error": str(exc)},
        )
    return ParsedView(visible_text=raw if isinstance(raw, str) else str(raw or ""))
