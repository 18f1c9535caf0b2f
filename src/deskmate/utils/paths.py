"""Data directory helpers for Deskmate."""

from __future__ import annotations

import os
from pathlib import Path


def get_data_dir(override: Path | None = None) -> Path:
    """Get the data directory, creating if needed.

    Precedence: explicit override, then DESKMATE_HOME, then ~/.deskmate.
    """
    if override is not None:
        d = Path(override)
    elif os.environ.get("DESKMATE_HOME"):
        d = Path(os.environ["DESKMATE_HOME"])
    else:
        d = Path.home() / ".deskmate"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_knowledge_dir(data_dir: Path) -> Path:
    """Get knowledge/ directory, creating if needed."""
    d = data_dir / "knowledge"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_layer_dir(data_dir: Path, layer: str) -> Path:
    """Get the directory holding one knowledge layer's index file."""
    d = get_knowledge_dir(data_dir) / layer
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_lance_dir(data_dir: Path) -> Path:
    """Get .lance/ directory for the vector table, creating if needed."""
    d = get_knowledge_dir(data_dir) / ".lance"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_conversations_dir(data_dir: Path) -> Path:
    """Get conversations/ directory, creating if needed."""
    d = data_dir / "conversations"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_summaries_dir(data_dir: Path) -> Path:
    """Get summaries/ directory, creating if needed."""
    d = data_dir / "summaries"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_sync_manifest_path(data_dir: Path) -> Path:
    """Path to the folder-sync file hash manifest."""
    return get_knowledge_dir(data_dir) / "sync-manifest.json"


def get_user_settings_path() -> Path:
    """Get user-level settings.json path."""
    return Path.home() / ".deskmate" / "settings.json"


def get_data_settings_path(data_dir: Path) -> Path:
    """Get settings.json path inside the data directory."""
    return data_dir / "settings.json"
