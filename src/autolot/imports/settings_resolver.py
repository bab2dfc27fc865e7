"""
Two-tier settings resolution.

Settings rows are stored one per (dealer_id, section, name); an empty dealer_id
marks a global default. At run start every section is resolved field by field:
model default < global row < dealer row < value set explicitly on the config.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from autolot.exceptions import ConfigError
from autolot.imports.models import (
    ConnectionSettings,
    FileFormatSettings,
    ImportConfig,
    ProcessingPolicy,
    ScheduleSettings,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SECTION_MODELS: dict[str, Type[BaseModel]] = {
    "connection": ConnectionSettings,
    "file_format": FileFormatSettings,
    "processing": ProcessingPolicy,
    "schedule": ScheduleSettings,
}

SettingsRows = Mapping[str, Mapping[str, Any]]


def _layer_values(layer: Any) -> dict[str, Any]:
    if layer is None:
        return {}
    if isinstance(layer, BaseModel):
        return layer.model_dump(exclude_unset=True)
    return dict(layer)


def resolve_section(model_cls: Type[M], *layers: Any) -> M:
    """Merges layers (dicts or partially-set models) lowest priority first."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for name, value in _layer_values(layer).items():
            if name not in model_cls.model_fields:
                logger.warning("ignoring unknown setting", extra={"setting": name, "model": model_cls.__name__})
                continue
            merged[name] = value
    try:
        return model_cls.model_validate(merged)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid {model_cls.__name__}: {exc}") from exc


def resolve_config(
    config: ImportConfig,
    global_rows: Optional[SettingsRows] = None,
    dealer_rows: Optional[SettingsRows] = None,
) -> ImportConfig:
    """Returns a copy of the config with every section resolved against the settings rows."""
    global_rows = global_rows or {}
    dealer_rows = dealer_rows or {}
    resolved: dict[str, Any] = {}
    for section, model_cls in SECTION_MODELS.items():
        own = getattr(config, section)
        if section == "connection" and own is None:
            continue
        resolved[section] = resolve_section(
            model_cls,
            global_rows.get(section),
            dealer_rows.get(section),
            own,
        )
    return config.model_copy(update=resolved)
