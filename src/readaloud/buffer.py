"""Buffer policy and immutable playback state types.

Everything here is pure: no I/O, no event loop. The coordinator folds
controller and engine events into new ``BufferedPlaybackState`` values
built from these helpers, and consumers only ever see frozen snapshots.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import AbstractSet, Any, Optional

from .errors import ConfigurationError


DEFAULT_TARGET_BUFFER_SIZE = 5
DEFAULT_MIN_BUFFER_SIZE = 2

# The generation server handles one request at a time.
MAX_CONCURRENT = 1


class PlaybackStatus(str, enum.Enum):
    IDLE = "idle"
    INITIAL_BUFFERING = "initial-buffering"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


# Resting or terminal states; anything else counts as an active session.
INACTIVE_STATUSES = frozenset({
    PlaybackStatus.IDLE, PlaybackStatus.COMPLETED, PlaybackStatus.ERROR,
})


@dataclass(frozen=True)
class BufferedPlaybackConfig:
    """User preference for how far ahead to generate."""

    target_buffer_size: int = DEFAULT_TARGET_BUFFER_SIZE
    min_buffer_size: int = DEFAULT_MIN_BUFFER_SIZE
    max_concurrent: int = MAX_CONCURRENT

    def validate(self) -> "BufferedPlaybackConfig":
        if self.min_buffer_size < 1:
            raise ConfigurationError(
                f"minBufferSize must be at least 1 (got {self.min_buffer_size})")
        if self.target_buffer_size < self.min_buffer_size:
            raise ConfigurationError(
                f"targetBufferSize ({self.target_buffer_size}) must be >= "
                f"minBufferSize ({self.min_buffer_size})")
        if self.max_concurrent != MAX_CONCURRENT:
            raise ConfigurationError(
                f"maxConcurrent is fixed at {MAX_CONCURRENT} by the generation server")
        return self

    def to_dict(self) -> dict[str, int]:
        return {
            "targetBufferSize": self.target_buffer_size,
            "minBufferSize": self.min_buffer_size,
            "maxConcurrent": self.max_concurrent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BufferedPlaybackConfig":
        """Build from a camelCase dict, falling back to defaults per key."""
        return cls(
            target_buffer_size=int(data.get("targetBufferSize", DEFAULT_TARGET_BUFFER_SIZE)),
            min_buffer_size=int(data.get("minBufferSize", DEFAULT_MIN_BUFFER_SIZE)),
            max_concurrent=MAX_CONCURRENT,
        )


@dataclass(frozen=True)
class BufferStatus:
    generated: frozenset[int] = field(default_factory=frozenset)
    buffer_size: int = 0
    target_buffer: int = DEFAULT_TARGET_BUFFER_SIZE
    is_generating: bool = False
    generating_index: int = -1


@dataclass(frozen=True)
class BufferedPlaybackState:
    status: PlaybackStatus = PlaybackStatus.IDLE
    current_paragraph: int = 0
    buffer_status: BufferStatus = field(default_factory=BufferStatus)
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES

    def with_buffer(self, **changes: Any) -> "BufferedPlaybackState":
        """Return a copy with some ``buffer_status`` fields replaced."""
        return replace(self, buffer_status=replace(self.buffer_status, **changes))


def initial_state(target_buffer: int) -> BufferedPlaybackState:
    return BufferedPlaybackState(buffer_status=BufferStatus(target_buffer=target_buffer))


# ─── Policy helpers ──────────────────────────────────────────────────


def buffer_ahead(current: int, generated: AbstractSet[int], total: int) -> int:
    """Count generated paragraphs directly after *current*, stopping at the first gap."""
    count = 0
    for i in range(current + 1, total):
        if i not in generated:
            break
        count += 1
    return count


def all_remaining_generated(start: int, generated: AbstractSet[int], total: int) -> bool:
    """True when every paragraph from *start* to the end has audio."""
    return all(i in generated for i in range(start, total))


def range_end(current: int, target_buffer: int, total: int) -> int:
    """Last index the generator should aim for when the cursor is at *current*."""
    return min(current + target_buffer, total - 1)


def is_buffer_sufficient(
    current: int,
    generated: AbstractSet[int],
    total: int,
    min_buffer: int,
    last_generated: Optional[int] = None,
) -> bool:
    """Whether playback at *current* may start or continue.

    The current paragraph must be generated. Beyond that, either enough
    paragraphs are buffered, the paragraph that just arrived is the last
    one, or nothing is left to generate before the end.
    """
    if current not in generated:
        return False
    if buffer_ahead(current, generated, total) >= min_buffer:
        return True
    if last_generated is not None and last_generated == total - 1:
        return True
    return all_remaining_generated(current, generated, total)


def needs_buffering(next_index: int, generated: AbstractSet[int], total: int, min_buffer: int) -> bool:
    """Decide, when a paragraph ends, whether to pause before *next_index*."""
    if next_index not in generated:
        return True
    if buffer_ahead(next_index, generated, total) >= min_buffer:
        return False
    return not all_remaining_generated(next_index, generated, total)


def resolve_locator(base_url: str, locator: str) -> str:
    """Turn a server-relative resource locator into a fetchable URL."""
    if locator.startswith(("http://", "https://", "file://")):
        return locator
    if not locator.startswith("/"):
        locator = "/" + locator
    return base_url.rstrip("/") + locator
