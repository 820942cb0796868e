"""Sequential, range-bounded TTS generation with retry and cancellation.

The generation server handles one request at a time, so the controller
runs a single asyncio task that walks forward through a target range,
generating the first paragraph that has no audio yet. The coordinator
keeps raising the upper bound as the listener moves, so generation
"walks" ahead of playback.

Each loop run captures a run token. ``stop()``, ``reset()`` and
``initialize()`` bump the token and cancel the task; a stale run checks
the token after every suspension point and never touches state or fires
callbacks again.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from .backend import GenerationParams, document_key
from .buffer import buffer_ahead
from .logging import get_logger, log_context

_log = get_logger("readaloud.generation")

MAX_RETRIES = 3


def output_name(key: str, index: int, now: Optional[float] = None) -> str:
    """Server file name for one generation request.

    The server keeps every file it writes under this name, so it has to
    differ per document, paragraph and request.
    """
    stamp = int((time.time() if now is None else now) * 1000)
    return f"buffer_{key}_{index}_{stamp}"


class GenerationBackend(Protocol):
    async def generate(self, text: str, params: GenerationParams,
                       output_name: Optional[str] = None) -> str: ...


class LocatorCache(Protocol):
    def cached_locator(self, index: int) -> Optional[str]: ...


@dataclass
class GenerationCallbacks:
    on_progress: Callable[[int, str], None]
    on_error: Callable[[int, Exception], None]
    on_complete: Callable[[], None]


class GenerationController:
    """Owns the generation queue for one paragraph list."""

    def __init__(self, backend: GenerationBackend, *,
                 cache: Optional[LocatorCache] = None,
                 max_retries: int = MAX_RETRIES,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self._backend = backend
        self._cache = cache
        self.max_retries = max_retries
        self._sleep = sleep

        self._paragraphs: list[str] = []
        self._params = GenerationParams()
        self._key = document_key([], self._params)
        self._urls: dict[int, str] = {}
        self._retry_count: dict[int, int] = {}
        self._skipped: set[int] = set()
        self._callbacks: Optional[GenerationCallbacks] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[int] = None
        self._current = 0
        self._target_end = 0
        self._paused = False
        self._running = False
        # Bumped on stop/reset/initialize; loop runs holding an older value are stale
        self._run = 0

    # ─── Lifecycle ──────────────────────────────────────────────────

    def initialize(self, paragraphs: list[str], params: GenerationParams) -> None:
        """Load a new paragraph list and forget everything generated before."""
        self._halt()
        self._paragraphs = list(paragraphs)
        self._params = params
        self._key = document_key(self._paragraphs, params)
        self._urls.clear()
        self._retry_count.clear()
        self._skipped.clear()
        self._current = 0
        self._target_end = 0

    def set_cache(self, cache: Optional[LocatorCache]) -> None:
        self._cache = cache

    def generate_range(self, start: int, end: int, callbacks: GenerationCallbacks) -> None:
        """Generate paragraphs ``start..end`` in order.

        If a loop is already running and not paused this only raises the
        upper bound. Must be called from within a running event loop.
        """
        if self._running and not self._paused:
            _log.debug("Already running, raising range end to %d", end)
            self._target_end = max(self._target_end, self._clamp(end))
            return

        self._callbacks = callbacks
        self._current = start
        self._target_end = self._clamp(end)
        self._paused = False
        self._running = True
        self._ensure_loop()

    def extend_range(self, new_end: int) -> None:
        """Raise the target end; never lowers it."""
        new_end = self._clamp(new_end)
        if new_end <= self._target_end:
            return
        old_end = self._target_end
        self._target_end = new_end
        _log.debug("Extended range from %d to %d", old_end, new_end)

        if self._paused or self._callbacks is None or self._loop_alive():
            return
        if self._next_ungenerated() is not None:
            _log.debug("Restarting generation for extended range")
            self._running = True
            self._ensure_loop()

    def pause(self) -> None:
        """Let the in-flight paragraph finish but start no new one."""
        if not self._paused:
            _log.info("Pausing generation")
        self._paused = True

    def resume(self) -> None:
        if not self._paused or self._callbacks is None:
            return
        _log.info("Resuming generation", extra={"context": log_context(paragraph=self._current)})
        self._paused = False
        self._running = True
        if not self._loop_alive():
            self._ensure_loop()

    def stop(self) -> None:
        """Cancel any in-flight request and halt; generated audio is kept."""
        _log.info("Stopping generation")
        self._halt()

    def reset(self) -> None:
        """Stop and forget all generated audio, retries and skips."""
        self._halt()
        self._urls.clear()
        self._retry_count.clear()
        self._skipped.clear()
        self._current = 0
        self._target_end = 0

    def update_playback_position(self, index: int) -> None:
        self._current = index

    # ─── Queries ────────────────────────────────────────────────────

    def is_ready(self, index: int) -> bool:
        return index in self._urls

    def get_url(self, index: int) -> Optional[str]:
        return self._urls.get(index)

    def get_all_urls(self) -> dict[int, str]:
        return dict(self._urls)

    def get_generated(self) -> frozenset[int]:
        return frozenset(self._urls)

    def get_generated_count(self) -> int:
        return len(self._urls)

    def get_buffer_ahead(self, current: int) -> int:
        return buffer_ahead(current, self._urls, len(self._paragraphs))

    def is_generating(self) -> bool:
        return self._running and not self._paused and self._pending is not None

    def get_generating_index(self) -> int:
        return -1 if self._pending is None else self._pending

    def is_paused(self) -> bool:
        return self._paused

    def is_skipped(self, index: int) -> bool:
        return index in self._skipped

    def is_drained(self) -> bool:
        """True when the loop has gone idle with nothing left to try in range."""
        return not self._running and self._next_ungenerated() is None

    @property
    def target_end(self) -> int:
        return self._target_end

    @property
    def paragraph_count(self) -> int:
        return len(self._paragraphs)

    @property
    def key(self) -> str:
        return self._key

    # ─── Internals ──────────────────────────────────────────────────

    def _clamp(self, end: int) -> int:
        return min(end, len(self._paragraphs) - 1)

    def _loop_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def _ensure_loop(self) -> None:
        if self._loop_alive():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(self._run))

    def _halt(self) -> None:
        self._run += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._paused = False
        self._running = False
        self._pending = None
        self._callbacks = None

    def _next_ungenerated(self) -> Optional[int]:
        for i in range(max(self._current, 0), self._target_end + 1):
            if i not in self._urls and i not in self._skipped:
                return i
        return None

    async def _loop(self, run: int) -> None:
        try:
            while self._run == run and self._running and not self._paused:
                index = self._next_ungenerated()
                if index is None:
                    self._running = False
                    self._pending = None
                    _log.debug("Range complete up to %d", self._target_end)
                    if self._callbacks:
                        self._callbacks.on_complete()
                    return

                self._pending = index
                locator = self._cache.cached_locator(index) if self._cache else None
                if locator:
                    _log.debug("Cache hit", extra={"context": log_context(paragraph=index)})
                    self._record(index, locator)
                    continue

                text = self._paragraphs[index]
                _log.info("Generating paragraph %d", index + 1,
                          extra={"context": log_context(paragraph=index, text_preview=text)})
                try:
                    locator = await self._backend.generate(
                        text, self._params, output_name=output_name(self._key, index))
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if self._run != run:
                        return
                    await self._handle_failure(index, exc, run)
                    continue

                if self._run != run:
                    return
                self._record(index, locator)
            if self._run == run:
                # Paused: nothing is in flight any more
                self._pending = None
        except asyncio.CancelledError:
            _log.debug("Generation loop cancelled")
        finally:
            if self._run == run and self._task is asyncio.current_task():
                self._task = None

    def _record(self, index: int, locator: str) -> None:
        self._urls[index] = locator
        self._retry_count.pop(index, None)
        self._pending = None
        if self._callbacks:
            self._callbacks.on_progress(index, locator)

    async def _handle_failure(self, index: int, exc: Exception, run: int) -> None:
        attempts = self._retry_count.get(index, 0)
        if attempts < self.max_retries:
            self._retry_count[index] = attempts + 1
            delay = 2 ** attempts
            _log.warning(
                "Retry %d/%d for paragraph %d in %ds: %s",
                attempts + 1, self.max_retries, index + 1, delay, exc,
                extra={"context": log_context(paragraph=index, attempt=attempts + 1)},
            )
            await self._sleep(delay)
            return

        _log.error(
            "Failed after %d retries for paragraph %d: %s", self.max_retries, index + 1, exc,
            extra={"context": log_context(paragraph=index)},
        )
        self._skipped.add(index)
        self._current = max(self._current, index + 1)
        self._pending = None
        if self._run == run and self._callbacks:
            self._callbacks.on_error(index, exc)
