"""Runtime playback settings for the readaloud TUI.

Backed by ReadaloudConfig — reads/writes config.yml on changes.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .config import ReadaloudConfig

MIN_SPEED = 0.5
MAX_SPEED = 3.0
SPEED_STEP = 0.1
FAST_SPEED = 1.8


class Settings:
    """Playback speed, pitch preservation and voice, adjustable while listening.

    Speed and pitch apply from the next paragraph on; a voice change
    alters the generation settings and so starts a new session.
    """

    def __init__(self, config: Optional["ReadaloudConfig"] = None):
        self._config = config
        self._speed = float(os.environ.get("READALOUD_SPEED", "1.0"))
        self._preserves_pitch = True
        self._voice = "female_01.wav"
        self._pre_fast_speed: float | None = None  # for fast toggle

    @property
    def speed(self) -> float:
        if self._config:
            return self._config.playback_speed
        return self._speed

    @speed.setter
    def speed(self, value: float) -> None:
        value = round(min(MAX_SPEED, max(MIN_SPEED, value)), 2)
        if self._config:
            self._config.set_playback_speed(value)
            self._config.save()
        else:
            self._speed = value

    @property
    def preserves_pitch(self) -> bool:
        if self._config:
            return self._config.preserves_pitch
        return self._preserves_pitch

    @preserves_pitch.setter
    def preserves_pitch(self, value: bool) -> None:
        if self._config:
            self._config.set_preserves_pitch(value)
            self._config.save()
        else:
            self._preserves_pitch = value

    @property
    def voice(self) -> str:
        if self._config:
            return self._config.tts_voice
        return self._voice

    @voice.setter
    def voice(self, value: str) -> None:
        if self._config:
            self._config.set_tts_voice(value)
            self._config.save()
        else:
            self._voice = value

    def adjust_speed(self, delta: float) -> str:
        self._pre_fast_speed = None
        self.speed = self.speed + delta
        return f"Speed {self.speed:.1f}x"

    def toggle_fast(self) -> str:
        if self._pre_fast_speed is not None:
            self.speed = self._pre_fast_speed
            self._pre_fast_speed = None
            msg = f"Speed reset to {self.speed}"
        else:
            self._pre_fast_speed = self.speed
            self.speed = FAST_SPEED
            msg = f"Speed set to {FAST_SPEED}"
        return msg

    def toggle_pitch(self) -> str:
        self.preserves_pitch = not self.preserves_pitch
        return "Pitch preserved" if self.preserves_pitch else "Pitch follows speed"
