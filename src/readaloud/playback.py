"""Audio playback engine.

Audio for a paragraph is fetched from the generation server into a
local cache file ("buffering") and handed to an external player process
(mpv, ffplay or paplay). The engine keeps at most one current element and
one preloaded element for the paragraph after it, and reports three
events to its caller: can-play, ended and error.

Platform quirks (priming the audio output, reusing a single element)
live in ``readaloud.platform``; the engine only consults the adapter.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
import tempfile
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import urlparse

import httpx

from .errors import MediaDecodeError, MediaNetworkError, PlaybackError
from .logging import get_logger, log_context
from .subprocess_manager import PlayerProcessManager, TrackedProcess

if TYPE_CHECKING:
    from .platform import PlatformAdapter

_log = get_logger("readaloud.playback")

# Players in order of preference
PLAYERS = ("mpv", "ffplay", "paplay")

AUDIO_CACHE_DIR = os.path.join(tempfile.gettempdir(), "readaloud-audio")

# Anything shorter cannot hold a playable WAV (header alone is 44 bytes)
MIN_AUDIO_BYTES = 44

PLAYBACK_TAG = "playback"


def find_player(preferred: Optional[str] = None) -> Optional[str]:
    """Locate a player binary, honouring *preferred* when it is installed."""
    names = [preferred] if preferred and preferred != "auto" else list(PLAYERS)
    for name in names:
        found = shutil.which(name)
        if found:
            return found
    return None


@dataclass(frozen=True)
class PlaybackSettings:
    speed: float = 1.0
    preserves_pitch: bool = True


def player_command(player: str, path: str, settings: PlaybackSettings) -> list[str]:
    """Build the argv that plays *path* with *settings* applied."""
    name = os.path.basename(player)
    if name == "mpv":
        return [
            player, "--no-video", "--really-quiet",
            f"--speed={settings.speed}",
            f"--audio-pitch-correction={'yes' if settings.preserves_pitch else 'no'}",
            path,
        ]
    if name == "ffplay":
        cmd = [player, "-nodisp", "-autoexit", "-loglevel", "error"]
        if settings.speed != 1.0:
            # atempo always keeps pitch; ffplay has no cheap pitch-shifting path
            cmd += ["-af", f"atempo={settings.speed}"]
        return cmd + [path]
    # paplay and unknown players get no speed control
    return [player, path]


@dataclass
class EngineCallbacks:
    on_can_play: Optional[Callable[[], None]] = None
    on_ended: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[PlaybackError], None]] = None


class AudioElement:
    """One playable audio resource: a cached file plus a player process."""

    def __init__(self, manager: PlayerProcessManager, http: httpx.AsyncClient,
                 player: Optional[str], cache_dir: str = AUDIO_CACHE_DIR,
                 env: Optional[dict] = None) -> None:
        self._mgr = manager
        self._http = http
        self._player = player
        self._cache_dir = cache_dir
        self._env = env
        self.src: Optional[str] = None
        self.path: Optional[str] = None
        self.ready = False
        self.load_task: Optional[asyncio.Task] = None
        self._proc: Optional[TrackedProcess] = None

    def set_source(self, url: str) -> None:
        if url != self.src:
            self.src = url
            self.path = None
            self.ready = False

    def adopt(self, other: "AudioElement") -> None:
        """Take over another element's buffered source (used when reusing one element)."""
        self.src, self.path, self.ready = other.src, other.path, other.ready

    def _cache_path(self, url: str) -> str:
        suffix = os.path.splitext(urlparse(url).path)[1] or ".wav"
        return os.path.join(self._cache_dir, hashlib.md5(url.encode()).hexdigest() + suffix)

    async def load(self, url: str) -> None:
        """Fetch *url* into the audio cache. Sets ``ready`` when fully buffered."""
        self.set_source(url)
        path = self._cache_path(url)
        if os.path.isfile(path) and os.path.getsize(path) >= MIN_AUDIO_BYTES:
            _log.debug("Audio cache hit %s", url)
            self.path, self.ready = path, True
            return
        try:
            resp = await self._http.get(url)
        except httpx.HTTPError as e:
            raise MediaNetworkError(f"cannot fetch {url}: {e}") from e
        if resp.status_code != 200:
            raise MediaNetworkError(f"HTTP error {resp.status_code} fetching {url}")
        if len(resp.content) < MIN_AUDIO_BYTES:
            raise MediaDecodeError(f"audio at {url} is too short ({len(resp.content)} bytes)")
        os.makedirs(self._cache_dir, exist_ok=True)
        with open(path, "wb") as f:
            f.write(resp.content)
        if self.src == url:
            self.path, self.ready = path, True

    async def start(self, settings: PlaybackSettings) -> None:
        if not self.ready or not self.path:
            raise MediaDecodeError(f"audio not buffered: {self.src}")
        if not self._player:
            raise MediaDecodeError("no audio player found (install mpv, ffplay or paplay)")
        try:
            self._proc = await self._mgr.start(
                player_command(self._player, self.path, settings),
                tag=PLAYBACK_TAG, env=self._env,
            )
        except OSError as e:
            raise MediaDecodeError(f"failed to start {self._player}: {e}") from e

    async def wait(self) -> tuple[int, str]:
        """Wait for the player to exit; returns ``(returncode, stderr)``."""
        if self._proc is None:
            return 0, ""
        proc = self._proc.proc
        _, stderr = await proc.communicate()
        return proc.returncode, (stderr or b"").decode("utf-8", errors="replace").strip()

    @property
    def playing(self) -> bool:
        return self._proc is not None and self._proc.alive and not self._proc.paused

    @property
    def paused(self) -> bool:
        return self._proc is not None and self._proc.alive and self._proc.paused

    def pause(self) -> None:
        if self._proc is not None:
            self._proc.pause()

    def resume(self) -> None:
        if self._proc is not None and self._proc.paused:
            self._proc.resume()

    def stop(self) -> None:
        if self._proc is not None:
            self._proc.kill()
            self._proc = None

    def reset(self) -> None:
        """Drop the source and any process so the element can be reused."""
        self.stop()
        if self.load_task is not None and not self.load_task.done():
            self.load_task.cancel()
        self.load_task = None
        self.src = None
        self.path = None
        self.ready = False


class AudioEngine:
    """Plays one paragraph at a time and preloads the next one."""

    def __init__(self, adapter: "PlatformAdapter", *,
                 player: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None,
                 manager: Optional[PlayerProcessManager] = None,
                 cache_dir: str = AUDIO_CACHE_DIR,
                 settings: Optional[PlaybackSettings] = None) -> None:
        self._adapter = adapter
        self._player = player if player and os.path.isabs(player) else find_player(player)
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._mgr = manager or PlayerProcessManager()
        self._cache_dir = cache_dir
        self._settings = settings or PlaybackSettings()
        self._current: Optional[AudioElement] = None
        self._preloaded: Optional[AudioElement] = None
        self._watch_task: Optional[asyncio.Task] = None
        # Bumped on every play/stop; watchers holding an older value stay silent
        self._token = 0

        if not self._player:
            _log.warning("No audio player found; playback will fail")

    def new_element(self) -> AudioElement:
        return AudioElement(self._mgr, self._http, self._player,
                            cache_dir=self._cache_dir, env=self._adapter.player_env())

    # ─── Settings ───────────────────────────────────────────────────

    def update_settings(self, speed: Optional[float] = None,
                        preserves_pitch: Optional[bool] = None) -> None:
        """Update speed / pitch preservation for the next paragraph started."""
        changes = {}
        if speed is not None:
            changes["speed"] = speed
        if preserves_pitch is not None:
            changes["preserves_pitch"] = preserves_pitch
        self._settings = replace(self._settings, **changes)
        _log.debug("Playback settings: %sx, preservesPitch=%s",
                   self._settings.speed, self._settings.preserves_pitch)

    def get_settings(self) -> PlaybackSettings:
        return self._settings

    # ─── Playback ───────────────────────────────────────────────────

    async def play(self, url: str, callbacks: Optional[EngineCallbacks] = None) -> bool:
        """Buffer and start *url*. Returns True once the player is running.

        On failure ``on_error`` is called and False returned. A play that
        is superseded by a later ``play``/``stop`` returns False silently.
        """
        callbacks = callbacks or EngineCallbacks()
        self._halt_current()
        self._token += 1
        token = self._token

        element = self._take_preloaded(url)
        if self._adapter.needs_reuse_of_element():
            reused = self._adapter.create_element(self.new_element)
            reused.reset()
            if element is not None:
                reused.adopt(element)
            element = reused
        elif element is None:
            element = self.new_element()
        if element.src != url:
            element.set_source(url)
        self._current = element
        _log.debug("%s element for %s", "Reusing" if element.ready else "Loading", url)

        try:
            if not element.ready:
                await element.load(url)
            if token != self._token:
                return False
            if callbacks.on_can_play:
                callbacks.on_can_play()
            await self._adapter.wait_primed()
            if token != self._token:
                return False
            self._adapter.ensure_can_play()
            await element.start(self._settings)
        except PlaybackError as exc:
            if token != self._token:
                return False
            _log.warning("Playback failed for %s: %s", url, exc,
                         extra={"context": log_context(recoverable=exc.recoverable)})
            if callbacks.on_error:
                callbacks.on_error(exc)
            return False

        if token != self._token:
            element.stop()
            return False
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch(element, token, callbacks))
        return True

    async def _watch(self, element: AudioElement, token: int, callbacks: EngineCallbacks) -> None:
        returncode, stderr = await element.wait()
        if token != self._token:
            return
        if returncode == 0:
            _log.debug("Audio ended")
            if callbacks.on_ended:
                callbacks.on_ended()
        elif returncode > 0:
            exc = MediaDecodeError(f"player exited with code {returncode}: {stderr or 'no stderr'}")
            _log.warning("%s", exc)
            if callbacks.on_error:
                callbacks.on_error(exc)
        # Negative return code: killed by a signal, i.e. an intentional stop

    def preload(self, url: str) -> None:
        """Start buffering *url* in the background without playing it."""
        if self._preloaded is not None:
            if self._preloaded.src == url:
                return
            _log.debug("Discarding stale preload %s", self._preloaded.src)
            self._preloaded.reset()
        element = self.new_element()
        element.set_source(url)
        element.load_task = asyncio.get_running_loop().create_task(self._preload(element, url))
        self._preloaded = element

    async def _preload(self, element: AudioElement, url: str) -> None:
        try:
            await element.load(url)
            _log.debug("Preloaded %s", url)
        except PlaybackError as exc:
            # The real play() will hit the same error and report it
            _log.debug("Preload failed for %s: %s", url, exc)

    def _take_preloaded(self, url: str) -> Optional[AudioElement]:
        element, self._preloaded = self._preloaded, None
        if element is None:
            return None
        if element.src == url and element.ready:
            _log.debug("Using preloaded audio for %s", url)
            return element
        element.reset()
        return None

    def pause(self) -> None:
        if self._current is not None:
            self._current.pause()
            _log.debug("Paused")

    def resume(self) -> None:
        if self._current is not None and self._current.paused:
            self._current.resume()
            _log.debug("Resumed")

    def is_playing(self) -> bool:
        return self._current is not None and self._current.playing

    def has_started(self) -> bool:
        """True when a player process exists for the current element (playing or paused)."""
        return self._current is not None and (self._current.playing or self._current.paused)

    def _halt_current(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        self._watch_task = None
        if self._current is not None:
            self._current.stop()
            if not self._adapter.needs_reuse_of_element():
                self._current = None
        # Players started for elements that are no longer current
        self._mgr.cancel_tagged(PLAYBACK_TAG)

    def stop(self) -> None:
        """Stop playback and drop any preload."""
        self._token += 1
        self._halt_current()
        if self._preloaded is not None:
            self._preloaded.reset()
            self._preloaded = None
        _log.debug("Stopped")

    async def close(self) -> None:
        self.stop()
        self._mgr.cancel_all()
        self._adapter.release()
        await self._http.aclose()
