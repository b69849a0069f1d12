"""Top-level package for research-chat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .backend import ChatBackend, HttpChatBackend, StreamResponse
    from .codec import decode, encode, extract_title
    from .config import Config, SettingsChannel, ensure_config_dir, load_config
    from .content_parser import parse_content
    from .exceptions import (
        BackendHTTPError,
        ChatConnectionError,
        ChatStreamingError,
        ConfigValidationError,
        ResearchChatError,
    )
    from .session import SessionController
    from .state import SessionState, StateManager, VisualState

__all__ = [
    "BackendHTTPError",
    "ChatBackend",
    "ChatConnectionError",
    "ChatStreamingError",
    "Config",
    "ConfigValidationError",
    "HttpChatBackend",
    "ResearchChatError",
    "SessionController",
    "SessionState",
    "SettingsChannel",
    "StateManager",
    "StreamResponse",
    "VisualState",
    "decode",
    "encode",
    "ensure_config_dir",
    "extract_title",
    "load_config",
    "parse_content",
]


def __getattr__(name: str) -> Any:
    """Lazily import symbols to keep package import cheap."""
    if name == "SessionController":
        from .session import SessionController

        return SessionController
    if name in {"ChatBackend", "HttpChatBackend", "StreamResponse"}:
        from . import backend

        return getattr(backend, name)
    if name in {"Config", "SettingsChannel", "ensure_config_dir", "load_config"}:
        from . import config

        return getattr(config, name)
    if name in {"decode", "encode", "extract_title"}:
        from . import codec

        return getattr(codec, name)
    if name == "parse_content":
        from .content_parser import parse_content

        return parse_content
    if name in {
        "BackendHTTPError",
        "ChatConnectionError",
        "ChatStreamingError",
        "ConfigValidationError",
        "ResearchChatError",
    }:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"SessionState", "StateManager", "VisualState"}:
        from . import state

        return getattr(state, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
