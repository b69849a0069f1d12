"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

import contextlib
import io
import unittest
from unittest.mock import AsyncMock, patch

from rich.console import Console

from research_chat.__main__ import main, render_message
from research_chat.config import Config
from research_chat.content_parser import parse_content
from research_chat.models import Message, Role


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def test_version_flag_prints_version(self) -> None:
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout), patch(
            "research_chat.__main__.ensure_config_dir"
        ) as ensure_mock:
            main(["--version"])
        self.assertTrue(stdout.getvalue().startswith("research-chat "))
        ensure_mock.assert_not_called()

    def test_no_arguments_prints_help(self) -> None:
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout), patch(
            "research_chat.__main__._run", new=AsyncMock(return_value=0)
        ) as run_mock:
            main([])
        self.assertIn("usage: research-chat", stdout.getvalue())
        run_mock.assert_not_called()

    def test_main_ensures_config_and_runs_prompt(self) -> None:
        with patch("research_chat.__main__.ensure_config_dir") as ensure_mock, patch(
            "research_chat.__main__.load_config", return_value=Config()
        ), patch("research_chat.__main__.configure_logging") as logging_mock, patch(
            "research_chat.__main__._run", new=AsyncMock(return_value=0)
        ) as run_mock:
            main(["Hello", "--model", "7"])

        ensure_mock.assert_called_once()
        logging_mock.assert_called_once()
        run_mock.assert_awaited_once()
        args, settings, _console = run_mock.await_args.args
        self.assertEqual(args.prompt, "Hello")
        self.assertEqual(settings.current.service.llm_id, "7")

    def test_failed_run_exits_non_zero(self) -> None:
        with patch("research_chat.__main__.ensure_config_dir"), patch(
            "research_chat.__main__.load_config", return_value=Config()
        ), patch("research_chat.__main__.configure_logging"), patch(
            "research_chat.__main__._run", new=AsyncMock(return_value=1)
        ):
            with self.assertRaises(SystemExit) as ctx:
                main(["Hello"])
        self.assertEqual(ctx.exception.code, 1)


class RenderMessageTests(unittest.TestCase):
    """Validate the rich rendering of parsed message views."""

    def render(self, message: Message) -> str:
        console = Console(record=True, width=80, color_system=None)
        console.print(render_message(message))
        return console.export_text()

    def test_collapsed_thinking_and_tool_status(self) -> None:
        raw = "<thinking>plan it</thinking>[Tool completed: search]Final answer"
        message = Message(
            id="assistant-1",
            role=Role.ASSISTANT,
            raw_content=raw,
            renderable=parse_content(raw),
        )
        output = self.render(message)
        self.assertIn("Agent", output)
        self.assertIn("Thinking (7 chars)", output)
        self.assertIn("Final answer", output)
        self.assertIn("Tool completed: search", output)
        self.assertNotIn("plan it", output)

    def test_in_progress_thinking_is_shown(self) -> None:
        raw = "<think>still working"
        message = Message(
            id="assistant-2",
            role=Role.ASSISTANT,
            raw_content=raw,
            renderable=parse_content(raw),
        )
        self.assertIn("still working", self.render(message))

    def test_system_message(self) -> None:
        message = Message(
            id="system-1",
            role=Role.SYSTEM,
            raw_content="Error: boom",
            renderable=parse_content("Error: boom"),
        )
        output = self.render(message)
        self.assertIn("System", output)
        self.assertIn("Error: boom", output)


if __name__ == "__main__":
    unittest.main()
