"""Platform adapters for audio start-up quirks.

Some audio outputs refuse programmatic playback until they have been
woken by an explicit, user-initiated action. PulseAudio over the network
(e.g. Termux talking to a desktop sink) is the case here: the first
stream after an idle period is frequently dropped, so the adapter plays
a short silent clip when a session starts and keeps one element for the
whole session.

The coordinator calls ``prime()`` once per ``start()`` without waiting for
it; the engine awaits ``wait_primed()`` and then calls ``ensure_can_play()``
before every player start.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import tempfile
import wave
from typing import TYPE_CHECKING, Callable, Optional

from .errors import AutoplayBlockedError
from .logging import get_logger, log_context

if TYPE_CHECKING:
    from .playback import AudioElement

_log = get_logger("readaloud.platform")

SILENCE_PATH = os.path.join(tempfile.gettempdir(), "readaloud-silence.wav")


def _write_silence(path: str, duration_ms: int = 50, rate: int = 24000) -> str:
    if not os.path.isfile(path):
        with wave.open(path, "wb") as w:
            w.setnchannels(1)
            w.setsampwidth(2)
            w.setframerate(rate)
            w.writeframes(b"\x00\x00" * (rate * duration_ms // 1000))
    return path


class PlatformAdapter:
    """Default behaviour: nothing to prime, a fresh element per paragraph."""

    name = "default"

    def __init__(self) -> None:
        self._primed = False

    def prime(self) -> None:
        self._primed = True

    async def wait_primed(self) -> None:
        """Return once any priming started by ``prime()`` has finished."""

    def is_primed(self) -> bool:
        return self._primed

    def needs_reuse_of_element(self) -> bool:
        return False

    def ensure_can_play(self) -> None:
        """Raise AutoplayBlockedError when the output would reject a start."""

    def create_element(self, factory: Callable[[], "AudioElement"]) -> "AudioElement":
        return factory()

    def player_env(self) -> Optional[dict]:
        return None

    def release(self) -> None:
        self._primed = False


DefaultAdapter = PlatformAdapter


class PulseAudioAdapter(PlatformAdapter):
    """Primes a (possibly remote) PulseAudio sink and reuses one element."""

    name = "pulseaudio"

    def __init__(self, paplay: Optional[str] = None, timeout: float = 3.0) -> None:
        super().__init__()
        self._paplay = paplay or shutil.which("paplay")
        self._timeout = timeout
        self._element: Optional["AudioElement"] = None
        self._priming: Optional[asyncio.Task] = None
        self._env = os.environ.copy()
        self._env["PULSE_SERVER"] = os.environ.get("PULSE_SERVER", "127.0.0.1")

    def prime(self) -> None:
        """Start playing a short silent clip to wake the sink.

        Returns at once; the clip plays in a background task that
        ``wait_primed()`` joins. Failure leaves the adapter unprimed, so
        the next play raises AutoplayBlockedError and a user retry primes
        again. Must be called from within a running event loop.
        """
        if self._priming is not None and not self._priming.done():
            return
        self._primed = False
        if not self._paplay:
            _log.warning("paplay not found, cannot prime PulseAudio")
            return
        self._priming = asyncio.get_running_loop().create_task(self._prime(self._paplay))

    async def _prime(self, paplay: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                paplay, _write_silence(SILENCE_PATH),
                stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
                env=self._env,
            )
        except OSError as e:
            _log.warning("PulseAudio priming failed: %s", e)
            return
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            _log.warning("PulseAudio priming timed out after %.1fs", self._timeout)
            return
        except asyncio.CancelledError:
            proc.kill()
            raise
        self._primed = proc.returncode == 0
        if not self._primed:
            _log.warning(
                "PulseAudio priming failed (code %d): %s", proc.returncode,
                (stderr or b"").decode("utf-8", errors="replace").strip(),
                extra={"context": log_context(pulse_server=self._env["PULSE_SERVER"])},
            )

    async def wait_primed(self) -> None:
        task = self._priming
        if task is not None and not task.done():
            # Cancelling the waiter must not cancel priming
            await asyncio.wait({task})

    def needs_reuse_of_element(self) -> bool:
        return True

    def ensure_can_play(self) -> None:
        if not self._primed:
            raise AutoplayBlockedError(
                f"audio output at {self._env['PULSE_SERVER']} is not ready; retry to re-prime")

    def create_element(self, factory: Callable[[], "AudioElement"]) -> "AudioElement":
        if self._element is None:
            self._element = factory()
        return self._element

    def player_env(self) -> Optional[dict]:
        return self._env

    def release(self) -> None:
        super().release()
        if self._priming is not None and not self._priming.done():
            self._priming.cancel()
        self._priming = None
        if self._element is not None:
            self._element.reset()
            self._element = None


def detect_adapter(name: str = "auto", player: Optional[str] = None) -> PlatformAdapter:
    """Pick an adapter by name; ``auto`` chooses PulseAudio for paplay or a remote sink."""
    if name == "pulseaudio":
        return PulseAudioAdapter()
    if name == "default":
        return PlatformAdapter()
    player_name = os.path.basename(player or "")
    if player_name == "paplay" or (os.environ.get("PULSE_SERVER") and shutil.which("paplay")):
        return PulseAudioAdapter()
    return PlatformAdapter()
