"""Deskmate configuration management.

Loads and merges settings from user-level and data-directory settings.json
files, with environment overrides for secrets.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from deskmate.core.errors import ConfigurationError
from deskmate.utils.paths import (
    get_data_settings_path,
    get_user_settings_path,
)


DEFAULT_SETTINGS: dict[str, Any] = {
    "provider": "openai",
    "api_key": "",
    "base_url": None,
    "chat_model": "gpt-4o-mini",
    "embedding_model": None,
    "image_model": "dall-e-3",
    "agent_name": "AI Assistant",
    "max_tokens": 4096,
    "temperature": 0.7,
    "history_window": 20,
    "context_window": 10,
    "search_limit": 5,
    "max_iterations": 15,
    "code_timeout": 10.0,
    "auto_promote_conversations": False,
    "watch_paths": [],
}

PROVIDERS = ("openai", "anthropic")


class RetrievalCapability(Enum):
    """Which retrieval paths are available for a session."""

    LEXICAL_ONLY = "lexical"
    HYBRID = "hybrid"


@dataclass
class DeskmateSettings:
    """Merged Deskmate settings."""

    provider: str = "openai"
    api_key: str = ""
    base_url: str | None = None
    chat_model: str = "gpt-4o-mini"
    embedding_model: str | None = None
    image_model: str = "dall-e-3"
    agent_name: str = "AI Assistant"
    max_tokens: int = 4096
    temperature: float = 0.7
    history_window: int = 20
    context_window: int = 10
    search_limit: int = 5
    max_iterations: int = 15
    code_timeout: float = 10.0
    auto_promote_conversations: bool = False
    watch_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "api_key": self.api_key,
            "base_url": self.base_url,
            "chat_model": self.chat_model,
            "embedding_model": self.embedding_model,
            "image_model": self.image_model,
            "agent_name": self.agent_name,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "history_window": self.history_window,
            "context_window": self.context_window,
            "search_limit": self.search_limit,
            "max_iterations": self.max_iterations,
            "code_timeout": self.code_timeout,
            "auto_promote_conversations": self.auto_promote_conversations,
            "watch_paths": list(self.watch_paths),
        }

    @property
    def has_embedding_model(self) -> bool:
        return bool(self.embedding_model and self.embedding_model.strip())


def load_json_file(path: Path) -> dict[str, Any]:
    """Load a JSON file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base, returning new dict.

    - Dicts are recursively merged
    - Lists are replaced (not appended)
    - Scalars are replaced
    """
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(data_dir: Path | None = None) -> DeskmateSettings:
    """Load and merge settings from user + data-directory levels.

    Precedence: environment > data-dir settings > user settings > defaults.
    """
    merged = dict(DEFAULT_SETTINGS)

    user_settings = load_json_file(get_user_settings_path())
    if user_settings:
        merged = deep_merge(merged, user_settings)

    if data_dir is not None:
        data_settings = load_json_file(get_data_settings_path(data_dir))
        if data_settings:
            merged = deep_merge(merged, data_settings)

    if os.environ.get("DESKMATE_API_KEY"):
        merged["api_key"] = os.environ["DESKMATE_API_KEY"]
    if os.environ.get("DESKMATE_BASE_URL"):
        merged["base_url"] = os.environ["DESKMATE_BASE_URL"]

    return DeskmateSettings(
        provider=merged.get("provider", "openai"),
        api_key=merged.get("api_key") or "",
        base_url=merged.get("base_url") or None,
        chat_model=merged.get("chat_model", "gpt-4o-mini"),
        embedding_model=merged.get("embedding_model") or None,
        image_model=merged.get("image_model") or "dall-e-3",
        agent_name=merged.get("agent_name", "AI Assistant"),
        max_tokens=merged.get("max_tokens", 4096),
        temperature=merged.get("temperature", 0.7),
        history_window=merged.get("history_window", 20),
        context_window=merged.get("context_window", 10),
        search_limit=merged.get("search_limit", 5),
        max_iterations=merged.get("max_iterations", 15),
        code_timeout=merged.get("code_timeout", 10.0),
        auto_promote_conversations=merged.get("auto_promote_conversations", False),
        watch_paths=list(merged.get("watch_paths", [])),
    )


def save_settings(settings: DeskmateSettings, path: Path) -> None:
    """Save settings to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings.to_dict(), indent=2) + "\n",
        encoding="utf-8",
    )


def validate_settings(settings: DeskmateSettings) -> list[str]:
    """Validate settings, returning list of error messages (empty if valid)."""
    errors = []

    if settings.provider not in PROVIDERS:
        errors.append(f"provider must be one of: {', '.join(PROVIDERS)}")

    if not isinstance(settings.max_tokens, int) or settings.max_tokens < 1:
        errors.append("max_tokens must be a positive integer")

    if not isinstance(settings.temperature, (int, float)) or not (0.0 <= settings.temperature <= 2.0):
        errors.append("temperature must be a float between 0.0 and 2.0")

    for key in ("history_window", "context_window", "search_limit", "max_iterations"):
        value = getattr(settings, key)
        if not isinstance(value, int) or value < 1:
            errors.append(f"{key} must be a positive integer")

    if not isinstance(settings.code_timeout, (int, float)) or settings.code_timeout <= 0:
        errors.append("code_timeout must be a positive number")

    if not isinstance(settings.watch_paths, list):
        errors.append("watch_paths must be a list")

    return errors


def require_model_config(settings: DeskmateSettings) -> None:
    """Raise ConfigurationError unless a chat model can be called."""
    if not settings.api_key:
        raise ConfigurationError("API Key not set. Please configure it in settings.")
    if not settings.chat_model:
        raise ConfigurationError("Chat model not set. Please configure it in settings.")


def resolve_retrieval_capability(settings: DeskmateSettings) -> RetrievalCapability:
    """Resolve the retrieval capability once per session from settings."""
    if settings.has_embedding_model:
        return RetrievalCapability.HYBRID
    return RetrievalCapability.LEXICAL_ONLY
