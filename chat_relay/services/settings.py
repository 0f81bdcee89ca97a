"""User-editable runtime settings stored as flat ``settings.<section>.<field>`` rows."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import ConfigurationError
from ..persistence import ChatStore

logger = logging.getLogger(__name__)

SETTINGS_PREFIX = "settings."
_CACHE_TTL_SECONDS = 60.0

DEFAULT_TITLE_PROMPT = (
    "Based on this conversation, generate a concise 3-5 word title that captures the main topic. "
    "Only respond with the title, nothing else.\n\n"
    "Conversation:\n{conversation}\n\n"
    "Title:"
)


class TitleGenerationSettings(BaseModel):
    enabled: bool = True
    prompt: str = DEFAULT_TITLE_PROMPT
    trigger_after_messages: int = Field(2, ge=1)
    regenerate_after_messages: int = Field(0, ge=0)
    max_length: int = Field(60, ge=1)
    use_current_chat_model: bool = True
    specific_model: Optional[str] = None


class ModelSettings(BaseModel):
    temperature: Optional[float] = 0.7
    top_p: Optional[float] = 0.9
    context_window: Union[int, str] = "auto"


class AdvancedSettings(BaseModel):
    stream_timeout_ms: int = Field(120000, ge=1000)
    chunk_timeout_ms: int = Field(30000, ge=1000)


class ChatSettings(BaseModel):
    title_generation: TitleGenerationSettings = Field(default_factory=TitleGenerationSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    advanced: AdvancedSettings = Field(default_factory=AdvancedSettings)

    def fixed_context_window(self) -> Optional[int]:
        value = self.model.context_window
        if isinstance(value, int) and value > 0:
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return None


SECTION_MODELS: Dict[str, Type[BaseModel]] = {
    "title_generation": TitleGenerationSettings,
    "model": ModelSettings,
    "advanced": AdvancedSettings,
}


def format_setting_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_settings_rows(rows: List[Tuple[str, str]]) -> Dict[str, Any]:
    """Nest ``settings.<section>.<field>`` rows. Values stay strings; the section models coerce them."""
    nested: Dict[str, Any] = {}
    for key, raw in rows:
        clean = key[len(SETTINGS_PREFIX):] if key.startswith(SETTINGS_PREFIX) else key
        parts = clean.split(".")
        current = nested
        for part in parts[:-1]:
            current = current.setdefault(part, {})
            if not isinstance(current, dict):
                break
        else:
            current[parts[-1]] = None if raw == "null" else raw
    return nested


def flatten_settings(values: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    flat: List[Tuple[str, str]] = []
    for key, value in values.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            flat.extend(flatten_settings(value, full_key))
        else:
            flat.append((SETTINGS_PREFIX + full_key, format_setting_value(value)))
    return flat


def _validate_section(name: str, model: Type[BaseModel], values: Dict[str, Any]) -> BaseModel:
    try:
        return model.model_validate(values)
    except ValidationError as exc:
        invalid = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
        logger.warning("Ignoring invalid stored settings in %s: %s", name, ", ".join(sorted(invalid)))
        return model.model_validate({key: value for key, value in values.items() if key not in invalid})


def merge_with_defaults(partial: Dict[str, Any]) -> ChatSettings:
    sections = {}
    for name, model in SECTION_MODELS.items():
        values = partial.get(name)
        sections[name] = _validate_section(name, model, values) if isinstance(values, dict) else model()
    return ChatSettings(**sections)


class SettingsService:
    def __init__(self, store: ChatStore) -> None:
        self._store = store
        self._cache: Optional[ChatSettings] = None
        self._cached_at = 0.0

    async def get_settings(self) -> ChatSettings:
        if self._cache is not None and time.monotonic() - self._cached_at < _CACHE_TTL_SECONDS:
            return self._cache
        rows = await self._store.get_settings_rows(SETTINGS_PREFIX)
        merged = merge_with_defaults(parse_settings_rows(rows))
        self._cache = merged
        self._cached_at = time.monotonic()
        return merged

    async def update_settings(self, updates: Dict[str, Any]) -> ChatSettings:
        current = (await self.get_settings()).model_dump()
        known = {
            section: values
            for section, values in updates.items()
            if section in current and isinstance(values, dict)
        }
        for section, values in known.items():
            current[section].update(values)
        validated = ChatSettings.model_validate(current)
        await self._store.upsert_settings_rows(flatten_settings(known))
        self.invalidate()
        logger.info("Updated settings sections: %s", ", ".join(sorted(known)))
        return validated

    async def reset_settings(self, section: Optional[str] = None) -> ChatSettings:
        if section is not None and section not in SECTION_MODELS:
            raise ConfigurationError(f"Unknown settings section '{section}'")
        prefix = f"{SETTINGS_PREFIX}{section}." if section else SETTINGS_PREFIX
        removed = await self._store.delete_settings_rows(prefix)
        self.invalidate()
        logger.info("Reset %s to defaults (%d stored value(s) removed)", section or "all settings", removed)
        return await self.get_settings()

    def invalidate(self) -> None:
        self._cache = None
        self._cached_at = 0.0
