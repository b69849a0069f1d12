"""Tests for payload encoding and tolerant content decoding."""

from __future__ import annotations

import json
import unittest

from research_chat import codec
from research_chat.models import (
    Attachment,
    FileUrlItem,
    ImageUrlItem,
    LegacyDump,
    PlainText,
    StructuredItems,
    TextItem,
)

PNG_URL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAAB=="
PDF_URL = "data:application/pdf;base64,JVBERi0xLjQK"


class EncodeTests(unittest.TestCase):
    """Validate outbound payload construction."""

    def test_text_only_payload(self) -> None:
        payload = codec.encode("Hello", llm_id="7")
        self.assertIsInstance(payload, codec.TextPayload)
        self.assertEqual(payload.text, "Hello")
        self.assertEqual(payload.llm_id, "7")
        self.assertEqual(
            payload.to_json(),
            {"role": "user", "contentType": "text/plain", "content": "Hello"},
        )

    def test_attachment_payload_keeps_raw_bytes(self) -> None:
        attachment = Attachment(data=b"\x89PNG\r\n", file_name="cat.png", mime_type="image/png")
        payload = codec.encode("What is this?", attachment, llm_id="2")

        self.assertIsInstance(payload, codec.MultipartPayload)
        self.assertEqual(payload.files(), {"file": ("cat.png", b"\x89PNG\r\n", "image/png")})
        self.assertEqual(
            payload.form_fields(chat_id="abc"),
            {
                "fileName": "cat.png",
                "fileType": "image/png",
                "fileSize": "6",
                "prompt": "What is this?",
                "llmId": "2",
                "chatId": "abc",
            },
        )

    def test_blank_prompt_is_omitted_from_form(self) -> None:
        attachment = Attachment(data=b"%PDF", file_name="a.pdf", mime_type="application/pdf")
        fields = codec.encode("   ", attachment).form_fields()
        self.assertNotIn("prompt", fields)
        self.assertNotIn("chatId", fields)

    def test_content_items_use_data_urls(self) -> None:
        image = codec.encode(
            "look", Attachment(data=b"img", file_name="x.png", mime_type="image/png")
        )
        pdf = codec.encode(
            "", Attachment(data=b"%PDF", file_name="x.pdf", mime_type="application/pdf")
        )

        image_items = image.to_content_items()
        self.assertEqual(image_items[0], TextItem("look"))
        self.assertEqual(image_items[1], ImageUrlItem(codec.to_data_url(b"img", "image/png")))

        pdf_items = pdf.to_content_items()
        self.assertEqual(len(pdf_items), 1)
        self.assertIsInstance(pdf_items[0], FileUrlItem)
        self.assertTrue(pdf_items[0].is_pdf)

    def test_preview_only_for_images(self) -> None:
        image = Attachment(data=b"img", file_name="x.png", mime_type="image/png")
        pdf = Attachment(data=b"%PDF", file_name="x.pdf", mime_type="application/pdf")
        self.assertEqual(codec.build_preview(image), "data:image/png;base64,aW1n")
        self.assertIsNone(codec.build_preview(pdf))


class DecodeTests(unittest.TestCase):
    """Validate that decode is total and recovers structure."""

    def test_round_trip_text_and_image(self) -> None:
        items = [TextItem("Describe this"), ImageUrlItem(PNG_URL)]
        decoded = codec.decode(codec.encode_items(items))
        self.assertEqual(decoded, items)
        self.assertEqual(decoded[1].url, PNG_URL)

    def test_never_raises_on_odd_input(self) -> None:
        for raw in ("", "plain prose", '{"type": "text", "text": "trunc', "[", "}{", None, 42):
            with self.subTest(raw=raw):
                items = codec.decode(raw)
                self.assertIsInstance(items, list)
                self.assertTrue(items)

    def test_truncated_json_falls_back_to_text(self) -> None:
        raw = '[{"type": "text", "text": "trunc'
        self.assertEqual(codec.decode(raw), [TextItem(raw)])

    def test_malformed_dump_keeps_data_url_intact(self) -> None:
        raw = f"type=text, text=Here is a picture, type=image_url, file_url={{url={PNG_URL}, detail=auto}}"
        items = codec.decode(raw)
        self.assertEqual(items, [TextItem("Here is a picture"), ImageUrlItem(PNG_URL)])

    def test_regex_fallback_when_structure_is_broken(self) -> None:
        raw = (
            "garbage } type=text, text=Look at this, "
            "type=image_url, image_url={url=data:image/jpeg;base64,/9j/4AAQ==}"
        )
        items = codec.decode(raw)
        self.assertEqual(
            items,
            [TextItem("Look at this"), ImageUrlItem("data:image/jpeg;base64,/9j/4AAQ==")],
        )

    def test_mapping_with_content_list(self) -> None:
        raw = {"role": "user", "content": [{"type": "text", "text": "hi"}]}
        self.assertEqual(codec.decode(raw), [TextItem("hi")])

    def test_file_url_items(self) -> None:
        raw = json.dumps([{"type": "file_url", "file_url": {"url": PDF_URL}}])
        items = codec.decode(raw)
        self.assertEqual(items, [FileUrlItem(PDF_URL)])
        self.assertTrue(items[0].is_pdf)

    def test_unreadable_multimodal_placeholder(self) -> None:
        items = codec.decode("Multimodal content: [java.util.ArrayList@1a2b3c]")
        self.assertEqual(items, [TextItem(codec.UNREADABLE_ATTACHMENT_NOTICE)])


class ClassifyTests(unittest.TestCase):
    def test_classification(self) -> None:
        self.assertEqual(codec.classify_raw_content("just words"), PlainText("just words"))
        self.assertEqual(codec.classify_raw_content(None), PlainText(""))
        self.assertIsInstance(
            codec.classify_raw_content([{"type": "text", "text": "a"}]), StructuredItems
        )
        self.assertIsInstance(
            codec.classify_raw_content('[{"type": "text", "text": "a"}]'), StructuredItems
        )
        dump = f"type=image_url, image_url={{url={PNG_URL}}}"
        self.assertEqual(codec.classify_raw_content(dump), LegacyDump(dump))

    def test_bracketed_prose_stays_plain(self) -> None:
        self.assertEqual(
            codec.classify_raw_content("[Calling tool: search]"),
            PlainText("[Calling tool: search]"),
        )


class ExtractTitleTests(unittest.TestCase):
    """Validate session title derivation."""

    def test_first_text_is_collapsed(self) -> None:
        self.assertEqual(codec.extract_title("  What   is\n the  answer? "), "What is the answer?")

    def test_long_text_is_truncated(self) -> None:
        title = codec.extract_title("a" * 80, max_length=50)
        self.assertEqual(len(title), 50)
        self.assertTrue(title.endswith("…"))

    def test_media_labels(self) -> None:
        self.assertEqual(codec.extract_title([ImageUrlItem(PNG_URL)]), "🖼️ Image")
        self.assertEqual(codec.extract_title([FileUrlItem(PDF_URL)]), "📄 PDF document")
        self.assertEqual(
            codec.extract_title([FileUrlItem("data:text/csv;base64,YQ==")]), "📎 File"
        )

    def test_text_wins_over_media(self) -> None:
        self.assertEqual(
            codec.extract_title([ImageUrlItem(PNG_URL), TextItem("caption")]), "caption"
        )

    def test_empty_content_uses_default(self) -> None:
        self.assertEqual(codec.extract_title(""), codec.DEFAULT_TITLE)
        self.assertEqual(codec.extract_title([]), codec.DEFAULT_TITLE)


if __name__ == "__main__":
    unittest.main()
