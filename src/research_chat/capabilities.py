"""Model capability records and user overrides."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
import logging
from typing import Any

from .config import CapabilityOverride
from .models import MimeClass

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    """What one backend model accepts.

    Backends report capabilities either as flat ``supportsImage`` style flags or
    as a nested ``capabilities`` table; both shapes are accepted.
    """

    id: str
    name: str = ""
    text: bool = True
    image: bool = False
    pdf: bool = False
    tools: bool = False
    is_default: bool = False
    disabled: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ModelCapabilities:
        nested = payload.get("capabilities")
        nested = nested if isinstance(nested, Mapping) else {}

        def _flag(flat_key: str, nested_key: str, default: bool) -> bool:
            for value in (payload.get(flat_key), nested.get(nested_key)):
                if isinstance(value, bool):
                    return value
            return default

        model_id = str(payload.get("id") or payload.get("llmId") or "").strip()
        return cls(
            id=model_id,
            name=str(payload.get("name") or model_id),
            text=_flag("supportsText", "text", True),
            image=_flag("supportsImage", "image", False),
            pdf=_flag("supportsPdf", "pdf", False),
            tools=_flag("supportsTools", "tools", False),
            is_default=bool(payload.get("isDefault", False)),
            disabled=bool(payload.get("disabled", False)),
        )

    def supports(self, mime_class: MimeClass) -> bool:
        """Return True if an attachment of ``mime_class`` can be sent to this model."""
        if mime_class is MimeClass.IMAGE:
            return self.image
        if mime_class is MimeClass.PDF:
            return self.pdf
        if mime_class is MimeClass.TEXT:
            return self.text
        return False


def apply_capability_overrides(
    models: Iterable[ModelCapabilities],
    overrides: Mapping[str, CapabilityOverride],
) -> list[ModelCapabilities]:
    """Apply per-model overrides and drop models marked disabled."""
    result: list[ModelCapabilities] = []
    for model in models:
        override = overrides.get(model.id)
        if override is not None:
            changes = {
                key: value
                for key, value in override.model_dump().items()
                if value is not None
            }
            if changes:
                model = replace(model, **changes)
                LOGGER.debug(
                    "capabilities.override",
                    extra={"event": "capabilities.override", "model": model.id},
                )
        if not model.disabled:
            result.append(model)
    return result


def pick_default_model(models: list[ModelCapabilities]) -> ModelCapabilities | None:
    """Return the model flagged as default, else the first one."""
    for model in models:
        if model.is_default:
            return model
    return models[0] if models else None
