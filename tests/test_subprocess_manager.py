"""Tests for PlayerProcessManager and TrackedProcess.

Covers:
- Process creation and tracking
- Tag-based cancellation
- Pause / resume via SIGSTOP / SIGCONT
- Killing a paused process group
- Dead process pruning
"""

from __future__ import annotations

import asyncio
import shutil

import pytest

from readaloud.subprocess_manager import PlayerProcessManager

pytestmark = pytest.mark.skipif(shutil.which("sleep") is None, reason="needs coreutils")


async def _reap(tracked) -> int:
    return await asyncio.wait_for(tracked.proc.wait(), timeout=5)


class TestStart:

    @pytest.mark.asyncio
    async def test_start_tracks_process(self):
        mgr = PlayerProcessManager()
        tracked = await mgr.start(["sleep", "10"], tag="playback")
        try:
            assert tracked.alive
            assert tracked.tag == "playback"
            assert mgr._active == [tracked]
        finally:
            mgr.cancel_all()
            await _reap(tracked)

    @pytest.mark.asyncio
    async def test_missing_binary_raises_oserror(self):
        mgr = PlayerProcessManager()
        with pytest.raises(OSError):
            await mgr.start(["/nonexistent/readaloud-player"])
        assert mgr._active == []

    @pytest.mark.asyncio
    async def test_dead_processes_are_pruned(self):
        mgr = PlayerProcessManager()
        done = await mgr.start(["true"], tag="a")
        await _reap(done)
        assert len(mgr._active) == 1  # still listed until the next start

        live = await mgr.start(["sleep", "10"], tag="b")
        try:
            assert mgr._active == [live]
        finally:
            mgr.cancel_all()
            await _reap(live)


class TestSignals:

    @pytest.mark.asyncio
    async def test_cancel_all_kills_everything(self):
        mgr = PlayerProcessManager()
        first = await mgr.start(["sleep", "10"], tag="a")
        second = await mgr.start(["sleep", "10"], tag="b")
        mgr.cancel_all()
        assert await _reap(first) < 0
        assert await _reap(second) < 0
        assert mgr._active == []

    @pytest.mark.asyncio
    async def test_cancel_tagged_only_kills_matching(self):
        mgr = PlayerProcessManager()
        keep = await mgr.start(["sleep", "10"], tag="keep")
        drop = await mgr.start(["sleep", "10"], tag="drop")
        try:
            mgr.cancel_tagged("drop")
            assert await _reap(drop) < 0
            assert keep.alive
            assert mgr._active == [keep]
        finally:
            mgr.cancel_all()
            await _reap(keep)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        mgr = PlayerProcessManager()
        tracked = await mgr.start(["sleep", "10"], tag="playback")
        try:
            tracked.pause()
            assert tracked.paused
            assert tracked.alive
            tracked.resume()
            assert not tracked.paused
        finally:
            mgr.cancel_all()
            await _reap(tracked)

    @pytest.mark.asyncio
    async def test_kill_paused_process(self):
        mgr = PlayerProcessManager()
        tracked = await mgr.start(["sleep", "10"], tag="playback")
        tracked.pause()
        tracked.kill()
        assert await _reap(tracked) < 0
        assert not tracked.paused

    @pytest.mark.asyncio
    async def test_signals_to_dead_process_are_ignored(self):
        mgr = PlayerProcessManager()
        tracked = await mgr.start(["true"])
        await _reap(tracked)
        tracked.pause()
        tracked.resume()
        tracked.kill()
        assert not tracked.alive

    @pytest.mark.asyncio
    async def test_without_process_group(self):
        mgr = PlayerProcessManager()
        tracked = await mgr.start(["sleep", "10"], use_pgid=False)
        tracked.kill()
        assert await _reap(tracked) < 0
