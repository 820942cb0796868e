"""Process manager for audio player subprocesses.

Centralises player process creation, tracking and cleanup so the audio
engine never holds raw process handles:

- Processes are started with ``start_new_session=True`` so the player and
  anything it spawns can be signalled as one process group.
- Pause and resume are SIGSTOP / SIGCONT to the process group; players
  need no special IPC for that.
- Everything runs on the asyncio event loop, so no locks are needed.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from typing import Optional


class TrackedProcess:
    """A player subprocess tracked by the manager with metadata for cleanup."""

    __slots__ = ("proc", "tag", "use_pgid", "paused")

    def __init__(self, proc: asyncio.subprocess.Process, tag: str = "",
                 use_pgid: bool = True):
        self.proc = proc
        self.tag = tag
        self.use_pgid = use_pgid
        self.paused = False

    @property
    def alive(self) -> bool:
        return self.proc.returncode is None

    def _signal(self, sig: int) -> None:
        if not self.alive:
            return
        if self.use_pgid:
            try:
                os.killpg(os.getpgid(self.proc.pid), sig)
                return
            except (OSError, ProcessLookupError):
                pass
        try:
            self.proc.send_signal(sig)
        except (OSError, ProcessLookupError):
            pass

    def pause(self) -> None:
        self._signal(signal.SIGSTOP)
        self.paused = True

    def resume(self) -> None:
        self._signal(signal.SIGCONT)
        self.paused = False

    def kill(self) -> None:
        """Kill this process (and its process group if use_pgid is set)."""
        if self.paused:
            # A stopped process group only dies once continued
            self.resume()
        self._signal(signal.SIGKILL)


class PlayerProcessManager:
    """Tracks active player processes by tag.

    Usage:
        mgr = PlayerProcessManager()
        tracked = await mgr.start(["mpv", "--no-video", path], tag="playback")
        mgr.cancel_tagged("playback")
        mgr.cancel_all()
    """

    def __init__(self) -> None:
        self._active: list[TrackedProcess] = []

    async def start(self, cmd: list[str], *, tag: str = "",
                    env: Optional[dict] = None,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    use_pgid: bool = True) -> TrackedProcess:
        """Start a subprocess and track it.

        Raises:
            OSError: If the player binary cannot be started.
        """
        self._prune_dead()
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            env=env,
            start_new_session=use_pgid,
        )
        tracked = TrackedProcess(proc, tag=tag, use_pgid=use_pgid)
        self._active.append(tracked)
        return tracked

    def cancel_all(self) -> None:
        """Kill all tracked processes immediately."""
        to_kill, self._active = self._active, []
        for tracked in to_kill:
            tracked.kill()

    def cancel_tagged(self, tag: str) -> None:
        """Kill all tracked processes with a specific tag."""
        to_kill = [t for t in self._active if t.tag == tag]
        self._active = [t for t in self._active if t.tag != tag]
        for tracked in to_kill:
            tracked.kill()

    def _prune_dead(self) -> None:
        self._active = [t for t in self._active if t.alive]
