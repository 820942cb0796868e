"""Configuration system for readaloud.

Reads/writes config from $XDG_CONFIG_HOME/readaloud/config.yml (or
--config-file). Also merges a local .readaloud.yml found in the current
directory (local takes precedence over the global config).

Config strings can include shell variables like ${ALLTALK_HOST} which are
expanded at load time.

The config defines:
  - server: where the generation server lives and its request limits
  - tts: generation settings sent with every paragraph
  - playback: player binary, playback speed and pitch preservation
  - buffer: default look-ahead sizes (the last value chosen in the UI
    is remembered separately in state.json)
  - tui: colour scheme
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from .backend import GenerationParams
from .buffer import BufferedPlaybackConfig
from .errors import ConfigurationError
from .logging import get_logger

_log = get_logger("readaloud.config")


DEFAULT_CONFIG_DIR = os.path.join(
    os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config")),
    "readaloud",
)
DEFAULT_CONFIG_FILE = os.path.join(DEFAULT_CONFIG_DIR, "config.yml")
LOCAL_CONFIG_FILE = ".readaloud.yml"

# Full default config — written on first run, used as fallback for missing keys
DEFAULT_CONFIG: dict[str, Any] = {
    "server": {
        "protocol": "${ALLTALK_PROTOCOL:-http://}",
        "host": "${ALLTALK_HOST:-localhost}",
        "port": "${ALLTALK_PORT:-7851}",
        "connectionTimeout": 5,     # seconds for the readiness probe
        "requestTimeout": 60,       # seconds for one paragraph generation
        "maxCharacters": 4096,      # longer paragraphs are split / truncated
    },
    "tts": {
        "voice": "female_01.wav",
        "language": "en",
        "speed": None,
        "pitch": None,
        "temperature": None,
        "repetitionPenalty": None,
        "textFiltering": "standard",
    },
    "playback": {
        "player": "auto",           # "auto", "mpv", "ffplay" or "paplay"
        "platform": "auto",         # "auto", "default" or "pulseaudio"
        "speed": 1.0,
        "preservesPitch": True,
    },
    "buffer": {
        "targetBufferSize": 5,
        "minBufferSize": 2,
    },
    "tui": {
        "colorScheme": "nord",      # "nord", "tokyo-night" or "dracula"
    },
}

COLOR_SCHEMES = ("nord", "tokyo-night", "dracula")

_KNOWN_KEYS: dict[str, set[str]] = {
    section: set(values) for section, values in DEFAULT_CONFIG.items()
}


def _expand_env(value: str) -> str:
    """Expand shell-style ${VAR} and ${VAR:-default} in a string."""
    def _replacer(m: re.Match) -> str:
        var_expr = m.group(1)
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.environ.get(var_name, default)
        return os.environ.get(var_expr, "")
    return re.sub(r"\$\{([^}]+)\}", _replacer, value)


def _expand_config(obj: Any) -> Any:
    """Recursively expand env vars in all string values."""
    if isinstance(obj, str):
        return _expand_env(obj)
    elif isinstance(obj, dict):
        return {k: _expand_config(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_config(v) for v in obj]
    return obj


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep-merge override into base. Override values win."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _closest_match(key: str, valid_keys: set[str], max_distance: int = 3) -> str | None:
    """Find the closest match for a key in a set of valid keys.

    Returns None if no match is close enough (within max_distance edits).
    """
    best_match = None
    best_dist = max_distance + 1
    key_lower = key.lower()
    for candidate in valid_keys:
        cand_lower = candidate.lower()
        if key_lower == cand_lower:
            return candidate
        if abs(len(key_lower) - len(cand_lower)) > max_distance:
            continue
        dist = _edit_distance(key_lower, cand_lower)
        if dist < best_dist:
            best_dist = dist
            best_match = candidate
    return best_match if best_dist <= max_distance else None


def _edit_distance(a: str, b: str) -> int:
    """Compute Levenshtein edit distance between two strings."""
    if len(a) > len(b):
        a, b = b, a
    prev = list(range(len(a) + 1))
    for j in range(1, len(b) + 1):
        curr = [j] + [0] * len(a)
        for i in range(1, len(a) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr[i] = min(curr[i - 1] + 1, prev[i] + 1, prev[i - 1] + cost)
        prev = curr
    return prev[len(a)]


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass
class ReadaloudConfig:
    """Parsed and expanded readaloud configuration."""

    raw: dict[str, Any] = field(default_factory=dict)
    """The raw config as loaded from YAML (with env vars unexpanded)."""

    expanded: dict[str, Any] = field(default_factory=dict)
    """The config with all env vars expanded."""

    config_path: str = DEFAULT_CONFIG_FILE
    """Path to the config file."""

    validation_warnings: list[str] = field(default_factory=list)
    """Warnings from the last validation run."""

    @classmethod
    def reset(cls, config_path: Optional[str] = None) -> "ReadaloudConfig":
        """Delete the config file and regenerate it with all current defaults."""
        path = config_path or DEFAULT_CONFIG_FILE
        if os.path.isfile(path):
            os.unlink(path)
            print(f"  Config: deleted {path}", flush=True)
        return cls.load(path)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "ReadaloudConfig":
        """Load config from file, creating it with defaults if not found.

        Merge order (later takes precedence):
        1. DEFAULT_CONFIG (built-in defaults)
        2. ~/.config/readaloud/config.yml (user config)
        3. .readaloud.yml in cwd (project-local)

        CLI flags override all of the above at runtime.
        """
        path = config_path or DEFAULT_CONFIG_FILE
        raw = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.isfile(path):
            try:
                with open(path, "r") as f:
                    user_config = yaml.safe_load(f)
                if user_config and isinstance(user_config, dict):
                    raw = _deep_merge(raw, user_config)
            except (OSError, yaml.YAMLError) as e:
                print(f"WARNING: Failed to load config from {path}: {e}", flush=True)
        else:
            try:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
                with open(path, "w") as f:
                    yaml.dump(raw, f, default_flow_style=False, sort_keys=False)
                print(f"  Config: created {path}", flush=True)
            except OSError as e:
                print(f"WARNING: Failed to write default config to {path}: {e}", flush=True)

        local_path = os.path.join(os.getcwd(), LOCAL_CONFIG_FILE)
        if os.path.isfile(local_path) and os.path.abspath(local_path) != os.path.abspath(path):
            try:
                with open(local_path, "r") as f:
                    local_config = yaml.safe_load(f)
                if local_config and isinstance(local_config, dict):
                    raw = _deep_merge(raw, local_config)
                    print(f"  Config: merged local {local_path}", flush=True)
            except (OSError, yaml.YAMLError) as e:
                print(f"WARNING: Failed to load local config from {local_path}: {e}", flush=True)

        cfg = cls(raw=raw, expanded=_expand_config(raw), config_path=path)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        """Validate config structure and report warnings for issues."""
        warnings: list[str] = []

        for key in self.raw:
            if key not in _KNOWN_KEYS:
                _suggest = _closest_match(key, set(_KNOWN_KEYS))
                hint = f" (did you mean '{_suggest}'?)" if _suggest else ""
                warnings.append(
                    f"Unknown top-level key '{key}'{hint} — "
                    f"expected one of: {', '.join(sorted(_KNOWN_KEYS))}"
                )

        for section, known in _KNOWN_KEYS.items():
            values = self.raw.get(section)
            if not isinstance(values, dict):
                continue
            for key in values:
                if key not in known:
                    _suggest = _closest_match(key, known)
                    hint = f" (did you mean '{_suggest}'?)" if _suggest else ""
                    warnings.append(
                        f"Unknown key '{section}.{key}'{hint} — "
                        f"expected one of: {', '.join(sorted(known))}"
                    )

        try:
            self.buffer_config.validate()
        except (ConfigurationError, TypeError, ValueError) as e:
            warnings.append(f"Invalid buffer settings: {e} — using defaults")

        speed = self._section("playback").get("speed", 1.0)
        try:
            bad_speed = float(speed) <= 0
        except (TypeError, ValueError):
            bad_speed = True
        if bad_speed:
            warnings.append(f"playback.speed must be a positive number (got {speed!r}) — using 1.0")

        scheme = self._section("tui").get("colorScheme", "nord")
        if scheme not in COLOR_SCHEMES:
            warnings.append(
                f"tui.colorScheme '{scheme}' is not valid — "
                f"expected one of: {', '.join(COLOR_SCHEMES)}"
            )

        self.validation_warnings = warnings
        for w in warnings:
            _log.warning("Config: %s", w)
            print(f"  Config WARNING: {w}", flush=True)

    def save(self) -> None:
        """Write the raw config back to disk."""
        os.makedirs(os.path.dirname(self.config_path) or ".", exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.dump(self.raw, f, default_flow_style=False, sort_keys=False)
        self.expanded = _expand_config(self.raw)

    def reload(self) -> None:
        """Reload from disk."""
        fresh = ReadaloudConfig.load(self.config_path)
        self.raw = fresh.raw
        self.expanded = fresh.expanded
        self.validation_warnings = fresh.validation_warnings

    def _section(self, name: str) -> dict[str, Any]:
        value = self.expanded.get(name, {})
        return value if isinstance(value, dict) else {}

    def _set(self, section: str, key: str, value: Any) -> None:
        self.raw.setdefault(section, {})[key] = value
        self.expanded = _expand_config(self.raw)

    # ─── Server ─────────────────────────────────────────────────────

    @property
    def base_url(self) -> str:
        """Generation server address, e.g. ``http://localhost:7851``."""
        server = self._section("server")
        protocol = str(server.get("protocol") or "http://")
        if not protocol.endswith("://"):
            protocol = protocol.rstrip(":/") + "://"
        host = str(server.get("host") or "localhost")
        port = str(server.get("port") or "")
        return f"{protocol}{host}:{port}" if port else f"{protocol}{host}"

    @property
    def connection_timeout(self) -> float:
        return float(self._section("server").get("connectionTimeout", 5))

    @property
    def request_timeout(self) -> float:
        return float(self._section("server").get("requestTimeout", 60))

    @property
    def max_characters(self) -> int:
        return max(1, int(self._section("server").get("maxCharacters", 4096)))

    # ─── Generation ─────────────────────────────────────────────────

    @property
    def tts_voice(self) -> str:
        return str(self._section("tts").get("voice") or "female_01.wav")

    def set_tts_voice(self, voice: str) -> None:
        self._set("tts", "voice", voice)

    @property
    def tts_language(self) -> str:
        return str(self._section("tts").get("language") or "en")

    def generation_params(self) -> GenerationParams:
        tts = self._section("tts")
        return GenerationParams(
            voice=self.tts_voice,
            language=self.tts_language,
            speed=_optional_float(tts.get("speed")),
            pitch=_optional_float(tts.get("pitch")),
            temperature=_optional_float(tts.get("temperature")),
            repetition_penalty=_optional_float(tts.get("repetitionPenalty")),
            text_filtering=str(tts.get("textFiltering") or "standard"),
        )

    # ─── Playback ───────────────────────────────────────────────────

    @property
    def player(self) -> str:
        return str(self._section("playback").get("player") or "auto")

    @property
    def platform(self) -> str:
        value = str(self._section("playback").get("platform") or "auto")
        return value if value in ("auto", "default", "pulseaudio") else "auto"

    @property
    def playback_speed(self) -> float:
        try:
            speed = float(self._section("playback").get("speed", 1.0))
        except (TypeError, ValueError):
            return 1.0
        return speed if speed > 0 else 1.0

    def set_playback_speed(self, speed: float) -> None:
        self._set("playback", "speed", round(speed, 2))

    @property
    def preserves_pitch(self) -> bool:
        return bool(self._section("playback").get("preservesPitch", True))

    def set_preserves_pitch(self, value: bool) -> None:
        self._set("playback", "preservesPitch", bool(value))

    # ─── Buffer ─────────────────────────────────────────────────────

    @property
    def buffer_config(self) -> BufferedPlaybackConfig:
        return BufferedPlaybackConfig.from_dict(self._section("buffer"))

    def default_buffer_config(self) -> BufferedPlaybackConfig:
        """The configured buffer sizes, or built-in defaults when invalid."""
        try:
            return self.buffer_config.validate()
        except (ConfigurationError, TypeError, ValueError):
            return BufferedPlaybackConfig()

    # ─── TUI ────────────────────────────────────────────────────────

    @property
    def color_scheme(self) -> str:
        scheme = str(self._section("tui").get("colorScheme") or "nord")
        return scheme if scheme in COLOR_SCHEMES else "nord"
