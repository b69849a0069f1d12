"""Tests for thinking-tag and tool-status extraction."""

from __future__ import annotations

import unittest

from research_chat.content_parser import (
    extract_thinking,
    extract_tool_events,
    parse_content,
    parse_text,
    tool_status_label,
)
from research_chat.models import ImageUrlItem, TextItem

PNG_URL = "data:image/png;base64,iVBORw0KGgo="


class ThinkingExtractionTests(unittest.TestCase):
    """Validate complete and in-progress thinking blocks."""

    def test_n_complete_pairs(self) -> None:
        text = (
            "Intro <thinking> first </thinking>middle"
            "<think>second</think> and <thinking>third</thinking>end"
        )
        view = parse_text(text)
        self.assertEqual(
            [block.text for block in view.thinking_blocks], ["first", "second", "third"]
        )
        self.assertEqual(
            [block.id for block in view.thinking_blocks],
            ["thinking-0", "thinking-1", "thinking-2"],
        )
        self.assertIsNone(view.in_progress_thinking)
        self.assertFalse(view.is_thinking)
        self.assertEqual(view.visible_text, "Intro middle and end")
        self.assertNotIn("first", view.visible_text)

    def test_trailing_unclosed_tag(self) -> None:
        visible, blocks, in_progress = extract_thinking(
            "Answer so far <think>  still working it out  "
        )
        self.assertEqual(visible, "Answer so far ")
        self.assertEqual(blocks, [])
        self.assertEqual(in_progress, "still working it out")

    def test_unclosed_tag_after_complete_pair(self) -> None:
        view = parse_text("<think>done</think>Visible<thinking>partial")
        self.assertEqual(len(view.thinking_blocks), 1)
        self.assertEqual(view.in_progress_thinking, "partial")
        self.assertEqual(view.visible_text, "Visible")
        self.assertTrue(view.is_thinking)

    def test_expand_flag_marks_blocks_open(self) -> None:
        collapsed = parse_text("<think>a</think>b")
        expanded = parse_text("<think>a</think>b", expand_thinking=True)
        self.assertFalse(collapsed.thinking_blocks[0].is_open)
        self.assertTrue(expanded.thinking_blocks[0].is_open)


class ToolEventExtractionTests(unittest.TestCase):
    """Validate bracket scanning, collapsing and idempotence."""

    def test_annotations_are_removed_and_collected(self) -> None:
        text = "Let me check.\n[Calling tool: search]\n\n\n\nFound it. [Tool completed: search]"
        cleaned, events = extract_tool_events(text)
        self.assertEqual(cleaned, "Let me check.\n\nFound it.")
        self.assertEqual(events, ["[Calling tool: search]", "[Tool completed: search]"])

    def test_nested_brackets_are_balanced(self) -> None:
        text = "Before [Executing tool: fetch [url=https://x.test/[a]]] after"
        cleaned, events = extract_tool_events(text)
        self.assertEqual(events, ["[Executing tool: fetch [url=https://x.test/[a]]]"])
        self.assertEqual(cleaned, "Before  after")

    def test_consecutive_duplicates_collapse(self) -> None:
        text = "[Using tool: calc][Using tool: calc] x [Using tool: calc]"
        _, events = extract_tool_events(text)
        self.assertEqual(events, ["[Using tool: calc]"])

    def test_unterminated_annotation_runs_to_end(self) -> None:
        cleaned, events = extract_tool_events("Working [Running tool: crawl, page 3")
        self.assertEqual(cleaned, "Working")
        self.assertEqual(events, ["[Running tool: crawl, page 3"])

    def test_lead_phrase_is_case_insensitive(self) -> None:
        _, events = extract_tool_events("[TOOL RESULT: 42]")
        self.assertEqual(events, ["[TOOL RESULT: 42]"])

    def test_ordinary_brackets_are_kept(self) -> None:
        cleaned, events = extract_tool_events("See [1] and [note: not a tool].")
        self.assertEqual(cleaned, "See [1] and [note: not a tool].")
        self.assertEqual(events, [])

    def test_extraction_is_idempotent(self) -> None:
        samples = [
            "a [Calling tool: x] b [Tool error: boom] c",
            "[[Calling tool: x]Calling tool: y]",
            "[Tool call: [nested [deep]]] tail [Tool result: ok",
        ]
        for text in samples:
            with self.subTest(text=text):
                cleaned, _ = extract_tool_events(text)
                again, more = extract_tool_events(cleaned)
                self.assertEqual(more, [])
                self.assertEqual(again, cleaned)

    def test_status_and_completion(self) -> None:
        running = parse_text("[Calling tool: search]")
        done = parse_text("[Calling tool: search] [Tool completed successfully]")
        self.assertEqual(running.current_tool_status, "[Calling tool: search]")
        self.assertFalse(running.tool_phase_complete)
        self.assertTrue(done.tool_phase_complete)
        self.assertEqual(tool_status_label("[Calling tool: search]"), "Calling tool: search")


class PrecedenceTests(unittest.TestCase):
    def test_annotation_inside_thinking_stays_in_thinking(self) -> None:
        view = parse_text("<think>plan [Calling tool: search] next</think>Answer")
        self.assertEqual(view.tool_events, ())
        self.assertIn("[Calling tool: search]", view.thinking_blocks[0].text)
        self.assertEqual(view.visible_text, "Answer")

    def test_annotation_inside_open_thinking_stays_in_progress(self) -> None:
        view = parse_text("Hi <thinking>maybe [Using tool: calc")
        self.assertEqual(view.tool_events, ())
        self.assertEqual(view.in_progress_thinking, "maybe [Using tool: calc")


class ParseContentTests(unittest.TestCase):
    """Validate structured content and rendering order."""

    def test_structured_items_split_media(self) -> None:
        view = parse_content(
            [
                {"type": "text", "text": "<think>hmm</think>Look"},
                {"type": "image_url", "image_url": {"url": PNG_URL}},
            ]
        )
        self.assertEqual(view.media_items, (ImageUrlItem(PNG_URL),))
        self.assertEqual(view.visible_text, "Look")

        kinds = [kind for kind, _ in view.segments()]
        self.assertEqual(kinds, ["media", "thinking", "text"])

    def test_segments_order_with_in_progress(self) -> None:
        view = parse_content(
            [TextItem("<think>one</think>Body<think>two"), ImageUrlItem(PNG_URL)]
        )
        kinds = [kind for kind, _ in view.segments()]
        self.assertEqual(kinds, ["media", "thinking_in_progress", "thinking", "text"])

    def test_legacy_dump_content(self) -> None:
        view = parse_content(f"type=text, text=Caption, type=image_url, file_url={{url={PNG_URL}}}")
        self.assertEqual(view.visible_text, "Caption")
        self.assertEqual(view.media_items, (ImageUrlItem(PNG_URL),))

    def test_plain_text_is_never_lost(self) -> None:
        self.assertEqual(parse_content("Hello there").visible_text, "Hello there")
        self.assertEqual(parse_content("").visible_text, "")


if __name__ == "__main__":
    unittest.main()
