"""CLI entrypoint for research-chat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
import contextlib
from importlib import metadata
from pathlib import Path
import signal

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .backend import HttpChatBackend
from .capabilities import ModelCapabilities
from .codec import media_label
from .config import SettingsChannel, ensure_config_dir, load_config
from .content_parser import tool_status_label
from .exceptions import ConfigValidationError, ResearchChatError
from .logging_utils import configure_logging
from .models import Attachment, Message, Role
from .session import SessionController, SessionEvent
from .state import VisualState

_ROLE_STYLES = {
    Role.USER: ("You", "bold cyan"),
    Role.ASSISTANT: ("Agent", "bold magenta"),
    Role.SYSTEM: ("System", "bold red"),
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="research-chat",
        description="Research Chat - stream answers from a research agent backend",
    )
    parser.add_argument("prompt", nargs="?", help="Message to send")
    parser.add_argument("--attach", metavar="PATH", help="Attach one file to the message")
    parser.add_argument("--session", metavar="ID", help="Continue an existing session")
    parser.add_argument("--model", metavar="LLM_ID", help="Model id to answer with")
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List the models the backend offers and exit",
    )
    parser.add_argument("--history", metavar="ID", help="Print a stored session and exit")
    parser.add_argument("--config", metavar="PATH", help="Path to an alternative config.toml")
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser


def render_message(message: Message) -> RenderableType:
    """Build a rich renderable for one message from its parsed view."""
    label, style = _ROLE_STYLES[message.role]
    parts: list[RenderableType] = [Text(label, style=style)]
    view = message.renderable
    for kind, value in view.segments():
        if kind == "media":
            parts.append(Text(media_label(value), style="dim"))
        elif kind == "thinking_in_progress":
            parts.append(
                Panel(Text(value, style="italic"), title="Thinking…", border_style="yellow")
            )
        elif kind == "thinking":
            if value.is_open:
                parts.append(Panel(Text(value.text, style="italic"), title="Thinking"))
            else:
                parts.append(Text(f"▸ Thinking ({len(value.text)} chars)", style="dim"))
        elif kind == "text":
            if message.role is Role.SYSTEM:
                parts.append(Text(value, style="red"))
            else:
                parts.append(Markdown(value))
    status = view.current_tool_status
    if status is not None:
        parts.append(
            Text(
                f"⚙ {tool_status_label(status)}",
                style="green" if view.tool_phase_complete else "cyan",
            )
        )
    return Group(*parts)


def _models_table(models: list[ModelCapabilities]) -> Table:
    table = Table(title="Models")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Image")
    table.add_column("PDF")
    table.add_column("Tools")
    for model in models:
        marker = " (default)" if model.is_default else ""
        table.add_row(
            model.id,
            f"{model.name}{marker}",
            "yes" if model.image else "no",
            "yes" if model.pdf else "no",
            "yes" if model.tools else "no",
        )
    return table


async def _stream_prompt(
    controller: SessionController,
    console: Console,
    prompt: str,
    attachment: Attachment | None,
) -> None:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, controller.stop)

    try:
        with Live(console=console, refresh_per_second=12, transient=False) as live:

            def _on_event(event: SessionEvent, message: Message | None) -> None:
                if message is None or event is SessionEvent.STATE_CHANGED:
                    return
                if message.role is Role.USER:
                    live.console.print(render_message(message))
                elif message.role is Role.ASSISTANT:
                    live.update(render_message(message))
                else:
                    live.console.print(render_message(message))

            unsubscribe = controller.subscribe(_on_event)
            try:
                await controller.send(prompt, attachment)
            finally:
                unsubscribe()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


async def _run(args: argparse.Namespace, settings: SettingsChannel, console: Console) -> int:
    backend = HttpChatBackend.from_config(settings.current)
    controller = SessionController(backend, settings)
    try:
        if args.list_models:
            console.print(_models_table(await backend.list_models()))
            return 0

        if args.history:
            loaded = await controller.load_session(args.history)
            if controller.session.title:
                console.rule(controller.session.title)
            for message in controller.messages:
                console.print(render_message(message))
            return 0 if loaded else 1

        if args.session:
            if not await controller.load_session(args.session):
                for message in controller.messages:
                    console.print(render_message(message))
                return 1

        attachment = Attachment.from_path(args.attach) if args.attach else None
        await _stream_prompt(controller, console, args.prompt or "", attachment)
        return 1 if controller.visual_state is VisualState.ERROR else 0
    except (ResearchChatError, OSError) as exc:
        console.print(Text(f"Error: {exc}", style="red"))
        return 1
    finally:
        await controller.aclose()
        await backend.aclose()


def main(argv: Sequence[str] | None = None) -> None:
    """Load configuration, handle CLI flags, and run one command."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("research-chat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"research-chat {version}")
        return

    if not (args.prompt or args.attach or args.list_models or args.history):
        parser.print_help()
        return

    ensure_config_dir()
    config = load_config(Path(args.config).expanduser() if args.config else None)
    configure_logging(config.logging.model_dump())
    settings = SettingsChannel(config)
    if args.model:
        try:
            settings.update("service", llm_id=args.model)
        except ConfigValidationError as exc:
            parser.error(str(exc))

    exit_code = asyncio.run(_run(args, settings, Console()))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
