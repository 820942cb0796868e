"""Persistent preferences for readaloud.

Stores small values that survive restarts, most importantly the
buffered-playback configuration. Written to
~/.config/readaloud/state.json (small, fast, no merging needed).
"""

from __future__ import annotations

import json
import os
from typing import Any

from .buffer import BufferedPlaybackConfig
from .config import DEFAULT_CONFIG_DIR
from .errors import ConfigurationError
from .logging import get_logger

_log = get_logger("readaloud.state")

STATE_FILE = os.path.join(DEFAULT_CONFIG_DIR, "state.json")

BUFFER_CONFIG_KEY = "bufferConfig"


def _load() -> dict[str, Any]:
    """Load state from disk. Returns empty dict if missing/corrupt."""
    try:
        with open(STATE_FILE) as f:
            data = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError, PermissionError):
        return {}
    return data if isinstance(data, dict) else {}


def _save(state: dict[str, Any]) -> None:
    """Save state to disk. Best effort — logs and carries on."""
    try:
        os.makedirs(os.path.dirname(STATE_FILE), exist_ok=True)
        with open(STATE_FILE, "w") as f:
            json.dump(state, f, indent=2)
    except OSError as e:
        _log.warning("Failed to save state to %s: %s", STATE_FILE, e)


def get(key: str, default: Any = None) -> Any:
    """Get a state value."""
    return _load().get(key, default)


def set(key: str, value: Any) -> None:
    """Set a state value and persist."""
    state = _load()
    state[key] = value
    _save(state)


def load_buffer_config(default: BufferedPlaybackConfig | None = None) -> BufferedPlaybackConfig:
    """Return the stored buffer preference, or *default* if absent or invalid."""
    default = default or BufferedPlaybackConfig()
    stored = get(BUFFER_CONFIG_KEY)
    if not isinstance(stored, dict):
        return default
    merged = {**default.to_dict(), **stored}
    try:
        return BufferedPlaybackConfig.from_dict(merged).validate()
    except (ConfigurationError, TypeError, ValueError) as e:
        _log.warning("Ignoring stored buffer config: %s", e)
        return default


def save_buffer_config(config: BufferedPlaybackConfig) -> None:
    set(BUFFER_CONFIG_KEY, config.to_dict())
