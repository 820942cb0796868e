"""Exception types for readaloud.

Generation failures are per-paragraph and non-fatal; playback failures
carry a ``recoverable`` flag so the coordinator knows whether a user
retry can succeed; configuration errors are raised synchronously by the
public method that received the bad input.
"""

from __future__ import annotations


class ReadaloudError(Exception):
    """Base class for all readaloud errors."""


class ConfigurationError(ReadaloudError):
    """Invalid input to a public method (bad index, empty text, bad buffer sizes)."""


# ─── Generation backend ──────────────────────────────────────────────


class BackendError(ReadaloudError):
    """The generation backend failed to produce audio."""


class BackendUnavailableError(BackendError):
    """The generation backend could not be reached at all."""


class GenerationError(BackendError):
    """The backend answered but did not report a successful generation."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ─── Playback ────────────────────────────────────────────────────────


class PlaybackError(ReadaloudError):
    """Audio for a paragraph could not be played."""

    recoverable = False


class AutoplayBlockedError(PlaybackError):
    """The audio output refused a programmatic start.

    Raised when the platform needs priming and priming has not
    succeeded. A later user-initiated retry can succeed.
    """

    recoverable = True


class MediaDecodeError(PlaybackError):
    """The player could not decode the downloaded audio."""


class MediaNetworkError(PlaybackError):
    """The audio resource could not be fetched."""
