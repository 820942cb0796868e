"""Per-document reading sessions.

A session file remembers where the listener stopped and which paragraphs
already have generated audio on the server, keyed by a hash of the
paragraph list and the generation settings (so changing the voice starts
a fresh session). Files live under ~/.config/readaloud/sessions/.
"""

from __future__ import annotations

import asyncio
import glob
import json
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .backend import GenerationParams, document_key
from .config import DEFAULT_CONFIG_DIR
from .logging import get_logger, log_context

_log = get_logger("readaloud.session")

SESSIONS_DIR = os.path.join(DEFAULT_CONFIG_DIR, "sessions")

# Minimum seconds between two bookmark writes
BOOKMARK_INTERVAL = 1.0


@dataclass(frozen=True)
class SessionSummary:
    """One saved session as shown by ``readaloud sessions``."""

    key: str
    title: str
    source: str
    position: Optional[int]
    paragraphs: int
    generated: int
    updated_at: float


class JsonSessionStore:
    """Bookmark and generated-locator cache for one document.

    All IO is best effort: a corrupt or unwritable file never raises.
    """

    def __init__(self, key: str, directory: str = SESSIONS_DIR, title: str = "",
                 source: str = "", paragraphs: int = 0) -> None:
        self.key = key
        self.title = title
        self.source = source
        self.paragraphs = paragraphs
        self.path = os.path.join(directory, f"{key}.json")
        self._data = self._read()

    @classmethod
    def for_document(cls, paragraphs: list[str], params: GenerationParams,
                     directory: str = SESSIONS_DIR, title: str = "",
                     source: str = "") -> "JsonSessionStore":
        return cls(document_key(paragraphs, params), directory=directory, title=title,
                   source=source, paragraphs=len(paragraphs))

    @classmethod
    def list_all(cls, directory: str = SESSIONS_DIR) -> list[SessionSummary]:
        """Every readable session in *directory*, most recently used first."""
        summaries = []
        for path in glob.glob(os.path.join(directory, "*.json")):
            key = os.path.splitext(os.path.basename(path))[0]
            data = cls(key, directory=directory)._data
            position = data.get("position")
            summaries.append(SessionSummary(
                key=key,
                title=str(data.get("title") or ""),
                source=str(data.get("source") or ""),
                position=position if isinstance(position, int) else None,
                paragraphs=data.get("paragraphs") if isinstance(data.get("paragraphs"), int) else 0,
                generated=len(data["locators"]),
                updated_at=float(data.get("updatedAt") or 0.0),
            ))
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    @classmethod
    def find(cls, prefix: str, directory: str = SESSIONS_DIR) -> Optional[SessionSummary]:
        """The one session whose key starts with *prefix*, if exactly one does."""
        matches = [s for s in cls.list_all(directory) if s.key.startswith(prefix)]
        return matches[0] if len(matches) == 1 else None

    def _read(self) -> dict[str, Any]:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return {"position": None, "locators": {}}
        if not isinstance(data, dict):
            return {"position": None, "locators": {}}
        data.setdefault("position", None)
        if not isinstance(data.get("locators"), dict):
            data["locators"] = {}
        return data

    def _write(self) -> None:
        self._data["updatedAt"] = time.time()
        if self.title:
            self._data["title"] = self.title
        if self.source:
            self._data["source"] = self.source
        if self.paragraphs:
            self._data["paragraphs"] = self.paragraphs
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self._data, f, indent=2)
        except OSError as e:
            _log.warning("Failed to save session %s: %s", self.path, e)

    def load_bookmark(self) -> Optional[int]:
        pos = self._data.get("position")
        return pos if isinstance(pos, int) and pos >= 0 else None

    def save_bookmark(self, index: int) -> None:
        self._data["position"] = index
        self._write()

    def cached_locator(self, index: int) -> Optional[str]:
        return self._data["locators"].get(str(index))

    def remember_locator(self, index: int, locator: str) -> None:
        self._data["locators"][str(index)] = locator
        self._write()

    def forget_locators(self) -> None:
        self._data["locators"] = {}
        self._write()

    def clear(self) -> None:
        self._data = {"position": None, "locators": {}}
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            _log.warning("Failed to delete session %s: %s", self.path, e)


class BookmarkWriter:
    """Debounces bookmark saves to at most one per ``interval`` seconds.

    The first change after a quiet period is written at once; later
    changes inside the window are coalesced into one trailing write.
    """

    def __init__(self, save: Callable[[int], None], interval: float = BOOKMARK_INTERVAL,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._save = save
        self._interval = interval
        self._clock = clock
        self._last_write: Optional[float] = None
        self._pending: Optional[int] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    def update(self, index: int) -> None:
        now = self._clock()
        if self._last_write is None or now - self._last_write >= self._interval:
            self._cancel_timer()
            self._pending = None
            self._do_write(index, now)
            return
        self._pending = index
        if self._handle is None:
            delay = self._interval - (now - self._last_write)
            self._handle = asyncio.get_running_loop().call_later(delay, self._fire)

    @property
    def pending(self) -> Optional[int]:
        return self._pending

    def _fire(self) -> None:
        self._handle = None
        if self._pending is not None:
            index, self._pending = self._pending, None
            self._do_write(index, self._clock())

    def _do_write(self, index: int, now: float) -> None:
        self._last_write = now
        _log.debug("Saving bookmark", extra={"context": log_context(paragraph=index)})
        self._save(index)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Write any pending bookmark now."""
        self._cancel_timer()
        if self._pending is not None:
            index, self._pending = self._pending, None
            self._do_write(index, self._clock())
