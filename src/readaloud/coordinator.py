"""Buffered playback coordinator.

Owns one reading session: decides when the generation controller should
work ahead, when the audio engine may play the next paragraph, and when
playback has to wait for generation to catch up.

Status flow::

    idle -> initial-buffering -> playing <-> buffering
                                 playing <-> paused
                                 playing -> completed
    any active status -> error (unexpected failure; start() restarts)

Every asynchronous completion (generation progress, engine ended/error)
carries the paragraph index it belongs to and is checked against the
current state. Buffer-ahead is always recomputed from the controller's
generated set, never from values captured earlier.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from . import state as prefs
from .backend import GenerationParams
from .buffer import (
    BufferedPlaybackConfig,
    BufferedPlaybackState,
    PlaybackStatus,
    initial_state,
    is_buffer_sufficient,
    needs_buffering,
    range_end,
    resolve_locator,
)
from .errors import BackendUnavailableError, ConfigurationError, PlaybackError
from .generation import GenerationCallbacks, GenerationController
from .logging import get_logger, log_context, state_context
from .playback import AudioEngine, EngineCallbacks
from .platform import PlatformAdapter
from .session import BOOKMARK_INTERVAL, BookmarkWriter, JsonSessionStore

if TYPE_CHECKING:
    from .config import ReadaloudConfig

_log = get_logger("readaloud.coordinator")

Listener = Callable[[BufferedPlaybackState], None]

# Statuses in which the session is waiting for generation
_WAITING = (PlaybackStatus.INITIAL_BUFFERING, PlaybackStatus.BUFFERING)
_RUNNING = (PlaybackStatus.INITIAL_BUFFERING, PlaybackStatus.BUFFERING, PlaybackStatus.PLAYING)


@dataclass
class PlaybackContext:
    """Everything one session needs to know about its document and settings."""

    paragraphs: list[str] = field(default_factory=list)
    params: GenerationParams = field(default_factory=GenerationParams)
    base_url: str = "http://localhost:7851"
    config: BufferedPlaybackConfig = field(default_factory=BufferedPlaybackConfig)
    connected: bool = True

    @classmethod
    def from_config(cls, cfg: "ReadaloudConfig", paragraphs: list[str],
                    buffer_config: Optional[BufferedPlaybackConfig] = None) -> "PlaybackContext":
        return cls(
            paragraphs=list(paragraphs),
            params=cfg.generation_params(),
            base_url=cfg.base_url,
            config=buffer_config or cfg.default_buffer_config(),
        )

    @property
    def total(self) -> int:
        return len(self.paragraphs)


class BufferedPlaybackCoordinator:
    """State machine tying generation, playback and the listener together."""

    def __init__(self, context: PlaybackContext, *,
                 controller: GenerationController,
                 engine: AudioEngine,
                 adapter: PlatformAdapter,
                 session: Optional[JsonSessionStore] = None,
                 bookmark_interval: float = BOOKMARK_INTERVAL,
                 clock: Callable[[], float] = time.monotonic,
                 persist_config: Optional[Callable[[BufferedPlaybackConfig], None]] = (
                     prefs.save_buffer_config),
                 ) -> None:
        self.context = context
        self._controller = controller
        self._engine = engine
        self._adapter = adapter
        self._bookmark_interval = bookmark_interval
        self._clock = clock
        self._persist_config = persist_config
        self._session: Optional[JsonSessionStore] = None
        self._bookmarks: Optional[BookmarkWriter] = None
        self._set_session(session)

        self._state = initial_state(context.config.target_buffer_size)
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()
        self._paused_from: Optional[PlaybackStatus] = None
        self._hidden = False

        # Play de-duplication: the paragraph with a play() outstanding and
        # the paragraph whose play() the engine accepted
        self._play_in_flight: Optional[int] = None
        self._play_started_for: Optional[int] = None
        # Bumped on every play request and on halt; engine callbacks
        # carrying an older value are stale
        self._play_seq = 0
        # Set when state.error holds a playback failure; a later successful
        # play clears it (generation errors stay visible)
        self._playback_failed = False

    # ─── Snapshots ──────────────────────────────────────────────────

    @property
    def state(self) -> BufferedPlaybackState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def session(self) -> Optional[JsonSessionStore]:
        return self._session

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def is_skipped(self, index: int) -> bool:
        """True when generation for *index* failed permanently in this session."""
        return self._controller.is_skipped(index)

    def get_audio_url(self, index: int) -> Optional[str]:
        locator = self._controller.get_url(index)
        return resolve_locator(self.context.base_url, locator) if locator else None

    def _set_state(self, new: BufferedPlaybackState) -> None:
        old = self._state
        if new == old:
            return
        self._state = new
        if new.status != old.status:
            _log.info(
                "%s -> %s", old.status.value, new.status.value,
                extra={"context": state_context(new)},
            )
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:
                _log.exception("State listener failed")

    def _snapshot(self, **changes: Any) -> BufferedPlaybackState:
        """Current state with the buffer status recomputed from the controller."""
        state = replace(self._state, **changes)
        current = state.current_paragraph
        return state.with_buffer(
            generated=self._controller.get_generated(),
            buffer_size=self._controller.get_buffer_ahead(current),
            target_buffer=self.context.config.target_buffer_size,
            is_generating=self._controller.is_generating(),
            generating_index=self._controller.get_generating_index(),
        )

    # ─── Session lifecycle ──────────────────────────────────────────

    def _set_session(self, session: Optional[JsonSessionStore]) -> None:
        if self._bookmarks is not None:
            self._bookmarks.flush()
        self._session = session
        self._bookmarks = (
            BookmarkWriter(session.save_bookmark, interval=self._bookmark_interval,
                           clock=self._clock)
            if session is not None else None
        )
        self._controller.set_cache(session)

    def set_connected(self, connected: bool) -> None:
        self.context.connected = connected

    def load(self, paragraphs: list[str], params: Optional[GenerationParams] = None, *,
             session: Optional[JsonSessionStore] = None) -> Optional[int]:
        """Switch to a document. Returns the stored bookmark, if any.

        Changing the paragraphs or generation settings discards the
        running session and every generated paragraph.
        """
        params = params or self.context.params
        if list(paragraphs) != self.context.paragraphs or params != self.context.params:
            _log.info("Loading %d paragraphs", len(paragraphs))
            self.stop()
            self._controller.reset()
            self.context.paragraphs = list(paragraphs)
            self.context.params = params
        if session is not None and session is not self._session:
            self._set_session(session)
        return self._session.load_bookmark() if self._session else None

    def start(self, from_index: int = 0) -> None:
        """Begin a session at *from_index*. Raises ConfigurationError on bad input."""
        total = self.context.total
        if total == 0:
            raise ConfigurationError("nothing to read: the paragraph list is empty")
        if not 0 <= from_index < total:
            raise ConfigurationError(f"paragraph index {from_index} is out of range 0..{total - 1}")
        if not self.context.connected:
            raise ConfigurationError("not connected to the generation server")

        self._halt()
        self._adapter.prime()
        self._controller.initialize(self.context.paragraphs, self.context.params)
        self._controller.update_playback_position(from_index)
        self._set_state(replace(
            initial_state(self.context.config.target_buffer_size),
            status=PlaybackStatus.INITIAL_BUFFERING,
            current_paragraph=from_index,
        ))
        self._record_position(from_index)
        self._controller.generate_range(
            from_index,
            range_end(from_index, self.context.config.target_buffer_size, total),
            self._generation_callbacks(),
        )
        if self._hidden:
            # initialize() cleared the pause set while hidden
            self._controller.pause()

    def stop(self) -> None:
        """Stop everything and return to idle. Generated audio is kept by the controller."""
        self._halt()
        if self._bookmarks is not None:
            self._bookmarks.flush()
        self._set_state(initial_state(self.context.config.target_buffer_size))

    async def close(self) -> None:
        self.stop()
        self._listeners.clear()
        await self._engine.close()

    def _halt(self) -> None:
        self._engine.stop()
        self._controller.stop()
        self._play_seq += 1
        self._play_in_flight = None
        self._play_started_for = None
        self._paused_from = None
        self._playback_failed = False
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    def _fail(self, exc: BaseException) -> None:
        _log.error("Playback session failed: %s", exc,
                   extra={"context": state_context(self._state)})
        self._halt()
        self._set_state(self._snapshot(status=PlaybackStatus.ERROR, error=f"Unexpected error: {exc}"))

    # ─── Transport ──────────────────────────────────────────────────

    def pause(self) -> None:
        status = self._state.status
        if status not in _RUNNING:
            return
        self._paused_from = status
        # A play still buffering is paused by _play() once the player starts
        if self._engine.is_playing():
            self._engine.pause()
        self._controller.pause()
        self._set_state(self._snapshot(status=PlaybackStatus.PAUSED))

    def resume(self) -> None:
        if self._state.status != PlaybackStatus.PAUSED:
            return
        previous, self._paused_from = self._paused_from or PlaybackStatus.PLAYING, None
        if not self._hidden:
            self._controller.resume()
        self._set_state(self._snapshot(status=previous))
        if previous == PlaybackStatus.PLAYING:
            if self._engine.has_started():
                self._engine.resume()
            else:
                self._request_play(self._state.current_paragraph)
        else:
            self._check_sufficient()

    def toggle_pause(self) -> None:
        if self._state.status == PlaybackStatus.PAUSED:
            self.resume()
        else:
            self.pause()

    def skip_to(self, index: int) -> None:
        """Jump to *index*: instantly when generated, otherwise via a fresh start."""
        total = self.context.total
        if not 0 <= index < total:
            raise ConfigurationError(f"paragraph index {index} is out of range 0..{max(total - 1, 0)}")
        if not self.is_active:
            self.start(index)
            return

        _log.info("Skipping to paragraph %d", index + 1,
                  extra={"context": log_context(paragraph=index)})
        self._engine.stop()
        self._play_seq += 1
        self._play_in_flight = None
        self._play_started_for = None
        self._paused_from = None

        if self._controller.is_ready(index):
            if self._controller.is_paused() and not self._hidden:
                self._controller.resume()
            self._enter_playing(index)
        else:
            self._controller.reset()
            self.start(index)

    def next(self) -> None:
        if self._state.current_paragraph + 1 < self.context.total:
            self.skip_to(self._state.current_paragraph + 1)

    def previous(self) -> None:
        if self._state.current_paragraph > 0:
            self.skip_to(self._state.current_paragraph - 1)

    def retry(self) -> None:
        """Try again after a playback failure (a user action, so re-prime first)."""
        state = self._state
        if state.status == PlaybackStatus.ERROR:
            self.start(state.current_paragraph)
            return
        if state.status not in _RUNNING:
            return
        if not self._adapter.is_primed():
            self._adapter.prime()
        self._playback_failed = False
        self._set_state(replace(state, error=None))
        if state.status == PlaybackStatus.PLAYING:
            self._play_started_for = None
            self._request_play(state.current_paragraph)
        else:
            self._check_sufficient()

    def set_visibility(self, hidden: bool) -> None:
        """Hidden pauses generation only; becoming visible resumes it while running."""
        if hidden == self._hidden:
            return
        self._hidden = hidden
        if hidden:
            if self.is_active:
                _log.debug("Hidden: pausing generation")
                self._controller.pause()
        elif self._state.status in _RUNNING:
            _log.debug("Visible: resuming generation")
            self._controller.resume()

    # ─── Settings ───────────────────────────────────────────────────

    def update_config(self, target_buffer_size: Optional[int] = None,
                      min_buffer_size: Optional[int] = None) -> BufferedPlaybackConfig:
        if self.is_active:
            raise ConfigurationError("buffer settings cannot change during playback; stop first")
        changes = {}
        if target_buffer_size is not None:
            changes["target_buffer_size"] = target_buffer_size
        if min_buffer_size is not None:
            changes["min_buffer_size"] = min_buffer_size
        config = replace(self.context.config, **changes).validate()
        self.context.config = config
        if self._persist_config is not None:
            self._persist_config(config)
        self._set_state(self._state.with_buffer(target_buffer=config.target_buffer_size))
        return config

    def update_playback_settings(self, speed: Optional[float] = None,
                                 preserves_pitch: Optional[bool] = None) -> None:
        self._engine.update_settings(speed=speed, preserves_pitch=preserves_pitch)

    # ─── Transitions ────────────────────────────────────────────────

    def _enter_playing(self, index: int) -> None:
        total = self.context.total
        self._controller.update_playback_position(index)
        self._controller.extend_range(range_end(index, self.context.config.target_buffer_size, total))
        self._set_state(self._snapshot(status=PlaybackStatus.PLAYING, current_paragraph=index))
        self._record_position(index)
        self._request_play(index)

    def _enter_buffering(self, index: int) -> None:
        total = self.context.total
        self._controller.update_playback_position(index)
        self._controller.extend_range(range_end(index, self.context.config.target_buffer_size, total))
        self._set_state(self._snapshot(status=PlaybackStatus.BUFFERING, current_paragraph=index))
        self._record_position(index)
        # The range may already be exhausted with this paragraph ready
        self._check_sufficient()

    def _check_sufficient(self, last_generated: Optional[int] = None) -> None:
        state = self._state
        if state.status not in _WAITING:
            return
        current = state.current_paragraph
        generated = self._controller.get_generated()
        ready = is_buffer_sufficient(
            current, generated, self.context.total,
            self.context.config.min_buffer_size, last_generated=last_generated,
        )
        if not ready and current in generated and self._controller.is_drained():
            # Nothing else can arrive before the next extension; play what we have
            _log.debug("Generation drained, starting with a short buffer")
            ready = True
        if ready:
            self._enter_playing(current)

    def _record_position(self, index: int) -> None:
        if self._bookmarks is not None:
            self._bookmarks.update(index)

    # ─── Generation events ──────────────────────────────────────────

    def _generation_callbacks(self) -> GenerationCallbacks:
        return GenerationCallbacks(
            on_progress=self._guard(self._on_progress),
            on_error=self._guard(self._on_generation_error),
            on_complete=self._guard(self._on_generation_complete),
        )

    def _on_progress(self, index: int, locator: str) -> None:
        if self._session is not None and self._session.cached_locator(index) != locator:
            self._session.remember_locator(index, locator)
        self._set_state(self._snapshot())
        status = self._state.status
        if status in _WAITING:
            self._check_sufficient(last_generated=index)
        elif status == PlaybackStatus.PLAYING and index == self._state.current_paragraph + 1:
            self._engine.preload(self._resolve(index))

    def _on_generation_error(self, index: int, exc: Exception) -> None:
        if isinstance(exc, BackendUnavailableError):
            message = f"Cannot reach the generation server; skipped paragraph {index + 1}: {exc}"
        else:
            message = f"Failed to generate paragraph {index + 1}: {exc}"
        self._set_state(self._snapshot(error=message))

    def _on_generation_complete(self) -> None:
        self._set_state(self._snapshot())
        self._check_sufficient()

    # ─── Playback ───────────────────────────────────────────────────

    def _resolve(self, index: int) -> str:
        return resolve_locator(self.context.base_url, self._controller.get_url(index) or "")

    def _request_play(self, index: int) -> None:
        if self._play_in_flight == index or self._play_started_for == index:
            _log.debug("Play already issued", extra={"context": log_context(paragraph=index)})
            return
        if not self._controller.is_ready(index):
            return
        self._play_seq += 1
        self._play_in_flight = index
        self._play_started_for = None
        self._spawn(self._play(index, self._play_seq, self._resolve(index)))

    async def _play(self, index: int, seq: int, url: str) -> None:
        callbacks = EngineCallbacks(
            on_can_play=self._guard(lambda: self._on_can_play(index, seq)),
            on_ended=self._guard(lambda: self._on_ended(index, seq)),
            on_error=self._guard(lambda exc: self._on_play_error(index, seq, exc)),
        )
        accepted = await self._engine.play(url, callbacks)
        if seq != self._play_seq:
            return
        self._play_in_flight = None
        if not accepted:
            return
        self._play_started_for = index
        if self._state.status == PlaybackStatus.PAUSED:
            self._engine.pause()
        if self._playback_failed:
            self._playback_failed = False
            self._set_state(replace(self._state, error=None))
        following = index + 1
        if following < self.context.total and self._controller.is_ready(following):
            self._engine.preload(self._resolve(following))

    def _on_can_play(self, index: int, seq: int) -> None:
        if seq == self._play_seq:
            _log.debug("Audio ready", extra={"context": log_context(paragraph=index)})

    def _on_ended(self, index: int, seq: int) -> None:
        state = self._state
        if seq != self._play_seq or state.status != PlaybackStatus.PLAYING \
                or index != state.current_paragraph:
            _log.debug("Ignoring stale ended event", extra={"context": log_context(paragraph=index)})
            return
        self._play_started_for = None
        total = self.context.total
        following = index + 1
        if following >= total:
            self._controller.stop()
            if self._bookmarks is not None:
                self._bookmarks.flush()
            self._set_state(self._snapshot(status=PlaybackStatus.COMPLETED))
            return

        generated = self._controller.get_generated()
        if needs_buffering(following, generated, total, self.context.config.min_buffer_size):
            self._enter_buffering(following)
        else:
            self._enter_playing(following)

    def _on_play_error(self, index: int, seq: int, exc: PlaybackError) -> None:
        if seq != self._play_seq:
            return
        self._play_in_flight = None
        self._play_started_for = None
        if exc.recoverable:
            message = f"Audio output not ready ({exc}); press retry to start playback"
        else:
            message = f"Could not play paragraph {index + 1}: {exc}"
        self._playback_failed = True
        self._set_state(replace(self._state, error=message))

    # ─── Tasks ──────────────────────────────────────────────────────

    def _guard(self, fn: Callable[..., None]) -> Callable[..., None]:
        """Wrap an event handler so a crash moves the machine to ``error``."""
        def handler(*args: Any) -> None:
            try:
                fn(*args)
            except Exception as exc:
                _log.exception("Event handler failed")
                self._fail(exc)
        return handler

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error("Coordinator task crashed", exc_info=exc)
            self._fail(exc)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
