"""Configuration loading, validation and the settings update channel."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

from platformdirs import user_config_path, user_state_path
from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

APP_NAME = "research-chat"
CONFIG_DIR = user_config_path(APP_NAME)
CONFIG_PATH = CONFIG_DIR / "config.toml"
BACKEND_URL_ENV = "RESEARCH_CHAT_BACKEND_URL"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class ServiceConfig(BaseModel):
    """Research agent backend endpoint settings."""

    base_url: str = "http://localhost:8081/research-agent/api"
    timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    llm_id: str = "1"
    session_id_header: str = "X-Chat-Id"
    assistant_role_label: str = "agent"

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("base_url must be a string.")
        normalized = value.strip().rstrip("/")
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
            raise ValueError("base_url must be an http(s) URL with a hostname.")
        return normalized

    @field_validator("llm_id", "session_id_header", "assistant_role_label", mode="before")
    @classmethod
    def _validate_non_empty_string(cls, value: Any) -> str:
        if not isinstance(value, (str, int)):
            raise ValueError("Expected a string value.")
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("String value must not be empty.")
        return normalized


class ChatConfig(BaseModel):
    """Exchange lifecycle behaviour."""

    session_bootstrap: Literal["create_then_stream", "stream_creates"] = (
        "create_then_stream"
    )
    persist_user_messages: bool = True
    abort_cooldown_seconds: float = Field(default=1.0, ge=0, le=60)
    abort_notify_timeout_seconds: float = Field(default=5.0, gt=0, le=120)
    title_max_length: int = Field(default=50, ge=8, le=500)
    expand_live_thinking: bool = False


class CapabilityOverride(BaseModel):
    """Per-model overrides applied on top of backend-reported capabilities."""

    disabled: bool | None = None
    text: bool | None = None
    image: bool | None = None
    pdf: bool | None = None
    tools: bool | None = None


class CapabilitiesConfig(BaseModel):
    overrides: dict[str, CapabilityOverride] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = str(user_state_path(APP_NAME) / "app.log")

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    service: ServiceConfig = ServiceConfig()
    chat: ChatConfig = ChatConfig()
    capabilities: CapabilitiesConfig = CapabilitiesConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, Any] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate_config(raw: dict[str, Any]) -> Config:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        return Config.model_validate(raw)
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return Config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML, merge with defaults, and validate.

    The optional arguments are intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    env = os.environ if environ is None else environ

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    env_url = env.get(BACKEND_URL_ENV, "").strip()
    if env_url:
        merged["service"]["base_url"] = env_url
    return _validate_config(merged)


SettingsListener = Callable[[Config, Config], None]


class SettingsChannel:
    """Hold the active Config and notify subscribers when it changes.

    Components receive the channel at construction and subscribe instead of
    listening to a process-wide event bus.
    """

    def __init__(self, config: Config | None = None) -> None:
        self._config = config or Config()
        self._listeners: list[SettingsListener] = []

    @property
    def current(self) -> Config:
        return self._config

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register ``listener(old, new)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update(self, section: str, **values: Any) -> Config:
        """Validate and apply new values for one section, then notify.

        Raises ConfigValidationError if the result would be invalid; the active
        config is left untouched in that case.
        """
        data = self._config.model_dump()
        if section not in data or not isinstance(data[section], dict):
            raise ConfigValidationError(f"Unknown config section {section!r}.")
        data[section] = _deep_merge(data[section], values)
        try:
            new_config = Config.model_validate(data)
        except ValidationError as exc:
            raise ConfigValidationError(str(exc)) from exc

        old_config, self._config = self._config, new_config
        LOGGER.info(
            "config.updated",
            extra={"event": "config.updated", "section": section, "keys": sorted(values)},
        )
        for listener in list(self._listeners):
            try:
                listener(old_config, new_config)
            except Exception as exc:  # noqa: BLE001 - one bad listener must not block others.
                LOGGER.error(f"Settings listener failed: {exc}")
        return new_config
