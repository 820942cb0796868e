"""Tests for GenerationController: ordering, retries, cancellation and range handling."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from fakes import FakeBackend, RecordingSleep, settle
from readaloud.backend import GenerationParams, TtsClient
from readaloud.buffer import resolve_locator
from readaloud.generation import GenerationCallbacks, GenerationController, output_name
from readaloud.playback import AudioElement
from readaloud.subprocess_manager import PlayerProcessManager


class Recorder:
    """Collects generation callbacks."""

    def __init__(self) -> None:
        self.progress: list[int] = []
        self.errors: list[tuple[int, Exception]] = []
        self.completed = 0

    def callbacks(self) -> GenerationCallbacks:
        return GenerationCallbacks(
            on_progress=lambda i, _url: self.progress.append(i),
            on_error=lambda i, exc: self.errors.append((i, exc)),
            on_complete=self._complete,
        )

    def _complete(self) -> None:
        self.completed += 1


def make_controller(n: int = 5, backend: FakeBackend | None = None, cache=None):
    backend = backend or FakeBackend()
    sleep = RecordingSleep()
    controller = GenerationController(backend, cache=cache, sleep=sleep)
    controller.initialize([f"Paragraph {i}." for i in range(n)], GenerationParams())
    return controller, backend, sleep


# ─── Ordering ────────────────────────────────────────────────────────


class TestOrdering:

    @pytest.mark.asyncio
    async def test_generates_in_order_one_at_a_time(self):
        controller, backend, _ = make_controller(5)
        rec = Recorder()
        controller.generate_range(0, 4, rec.callbacks())
        await settle(100)

        assert backend.calls == [0, 1, 2, 3, 4]
        assert backend.max_in_flight == 1
        assert rec.progress == [0, 1, 2, 3, 4]
        assert rec.completed == 1
        assert controller.is_drained()
        assert controller.get_url(3) == "/audio/buffer_3.wav"

    @pytest.mark.asyncio
    async def test_range_is_clamped_to_paragraph_count(self):
        controller, backend, _ = make_controller(3)
        controller.generate_range(0, 10, Recorder().callbacks())
        assert controller.target_end == 2
        await settle()
        assert backend.calls == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_generate_range_while_running_only_raises_end(self):
        backend = FakeBackend()
        gate = backend.gate(0)
        controller, _, _ = make_controller(5, backend)
        first, second = Recorder(), Recorder()

        controller.generate_range(0, 1, first.callbacks())
        await settle()
        assert controller.get_generating_index() == 0

        controller.generate_range(3, 4, second.callbacks())
        assert controller.target_end == 4

        gate.set()
        await settle(100)
        assert backend.calls == [0, 1, 2, 3, 4]
        assert first.progress == [0, 1, 2, 3, 4]
        assert second.progress == []

    @pytest.mark.asyncio
    async def test_cache_hit_skips_backend(self):
        class Cache:
            def cached_locator(self, index):
                return "/audio/cached_1.wav" if index == 1 else None

        controller, backend, _ = make_controller(3, cache=Cache())
        rec = Recorder()
        controller.generate_range(0, 2, rec.callbacks())
        await settle()

        assert backend.calls == [0, 2]
        assert controller.get_url(1) == "/audio/cached_1.wav"
        assert rec.progress == [0, 1, 2]


# ─── Output names ────────────────────────────────────────────────────


class AllTalkServer:
    """MockTransport handler that stores each generated text under its output
    file name and serves it back, the way the real server overwrites files."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.names: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tts-generate":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            name = form["output_file_name"]
            self.names.append(name)
            path = f"/audio/{name}.wav"
            self.files[path] = b"RIFF" + form["text_input"].encode().ljust(60, b" ")
            return httpx.Response(200, json={"status": "generate-success", "output_file_url": path})
        if request.url.path in self.files:
            return httpx.Response(200, content=self.files[request.url.path])
        return httpx.Response(404)


async def until(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class TestOutputNames:

    def test_name_carries_key_index_and_time(self):
        assert output_name("0123abcd", 3, now=12.5) == "buffer_0123abcd_3_12500"

    @pytest.mark.asyncio
    async def test_names_differ_per_document_and_voice(self):
        backend = FakeBackend()
        for paragraphs, voice in ((["One."], "female_01.wav"),
                                  (["Two."], "female_01.wav"),
                                  (["One."], "male_01.wav")):
            controller = GenerationController(backend, sleep=RecordingSleep())
            controller.initialize(paragraphs, GenerationParams(voice=voice))
            controller.generate_range(0, 0, Recorder().callbacks())
            await settle()

        keys = [name.split("_")[1] for name in backend.names]
        assert backend.calls == [0, 0, 0]
        assert len(set(keys)) == 3

    @pytest.mark.asyncio
    async def test_second_document_does_not_play_first_documents_audio(self, tmp_path):
        base_url = "http://tts.test:7851"
        server = AllTalkServer()
        transport = httpx.MockTransport(server)
        client = TtsClient(base_url, transport=transport)
        http = httpx.AsyncClient(transport=transport)

        heard = []
        for text in ("Chapter one begins.", "Chapter two begins."):
            controller = GenerationController(client, sleep=RecordingSleep())
            controller.initialize([text], GenerationParams())
            controller.generate_range(0, 0, Recorder().callbacks())
            await until(lambda: controller.is_ready(0))

            element = AudioElement(PlayerProcessManager(), http, None, cache_dir=str(tmp_path))
            await element.load(resolve_locator(base_url, controller.get_url(0)))
            with open(element.path, "rb") as f:
                heard.append(f.read())

        await client.aclose()
        await http.aclose()
        assert server.names[0] != server.names[1]
        assert b"Chapter one" in heard[0]
        assert b"Chapter two" in heard[1]


# ─── Retries ─────────────────────────────────────────────────────────


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_skips(self):
        controller, backend, sleep = make_controller(3, FakeBackend(fail=(1,)))
        rec = Recorder()
        controller.generate_range(0, 2, rec.callbacks())
        await settle(200)

        assert backend.calls == [0, 1, 1, 1, 1, 2]
        assert sleep.delays == [1, 2, 4]
        assert [i for i, _ in rec.errors] == [1]
        assert "paragraph 1" in str(rec.errors[0][1])
        assert controller.is_skipped(1)
        assert rec.progress == [0, 2]
        assert rec.completed == 1

    @pytest.mark.asyncio
    async def test_skipped_paragraph_is_a_gap_in_the_buffer(self):
        controller, _, _ = make_controller(4, FakeBackend(fail=(1,)))
        controller.generate_range(0, 3, Recorder().callbacks())
        await settle(200)

        assert controller.get_buffer_ahead(0) == 0
        assert controller.get_buffer_ahead(1) == 2
        assert controller.get_generated_count() == 3

    @pytest.mark.asyncio
    async def test_skipped_paragraph_is_not_retried_on_extend(self):
        controller, backend, _ = make_controller(5, FakeBackend(fail=(1,)))
        controller.generate_range(0, 2, Recorder().callbacks())
        await settle(200)
        controller.extend_range(4)
        await settle(100)

        assert backend.calls.count(1) == 4
        assert backend.calls[-2:] == [3, 4]


# ─── Stop / pause / resume ───────────────────────────────────────────


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_silently(self):
        backend = FakeBackend()
        backend.gate(1)
        controller, _, _ = make_controller(4, backend)
        rec = Recorder()
        controller.generate_range(0, 3, rec.callbacks())
        await settle()
        assert controller.get_generating_index() == 1

        controller.stop()
        await settle()

        assert backend.cancelled == [1]
        assert rec.progress == [0]
        assert rec.errors == []
        assert rec.completed == 0
        assert not controller.is_generating()
        assert controller.get_url(0) is not None

    @pytest.mark.asyncio
    async def test_initialize_discards_stale_run(self):
        backend = FakeBackend()
        gate = backend.gate(0)
        controller, _, _ = make_controller(3, backend)
        rec = Recorder()
        controller.generate_range(0, 2, rec.callbacks())
        await settle()

        controller.initialize(["New text."], GenerationParams())
        gate.set()
        await settle()

        assert rec.progress == []
        assert controller.get_generated_count() == 0
        assert controller.paragraph_count == 1

    @pytest.mark.asyncio
    async def test_pause_lets_in_flight_finish(self):
        backend = FakeBackend()
        gate = backend.gate(0)
        controller, _, _ = make_controller(4, backend)
        rec = Recorder()
        controller.generate_range(0, 3, rec.callbacks())
        await settle()

        controller.pause()
        gate.set()
        await settle()

        assert rec.progress == [0]
        assert backend.calls == [0]
        assert controller.is_paused()
        assert not controller.is_generating()

    @pytest.mark.asyncio
    async def test_resume_continues_from_playback_position(self):
        backend = FakeBackend()
        gate = backend.gate(0)
        controller, _, _ = make_controller(4, backend)
        controller.generate_range(0, 3, Recorder().callbacks())
        await settle()
        controller.pause()
        gate.set()
        await settle()

        controller.update_playback_position(2)
        controller.resume()
        await settle()

        assert backend.calls == [0, 2, 3]
        assert not controller.is_paused()

    @pytest.mark.asyncio
    async def test_reset_forgets_everything(self):
        controller, _, _ = make_controller(3, FakeBackend(fail=(2,)))
        controller.generate_range(0, 2, Recorder().callbacks())
        await settle(200)
        assert controller.is_skipped(2)

        controller.reset()
        assert controller.get_generated_count() == 0
        assert not controller.is_skipped(2)
        assert controller.target_end == 0


# ─── Range extension ─────────────────────────────────────────────────


class TestExtendRange:

    @pytest.mark.asyncio
    async def test_lower_end_is_ignored(self):
        controller, _, _ = make_controller(6)
        controller.generate_range(0, 4, Recorder().callbacks())
        controller.extend_range(2)
        assert controller.target_end == 4
        controller.stop()

    @pytest.mark.asyncio
    async def test_extend_restarts_drained_loop(self):
        controller, backend, _ = make_controller(5)
        rec = Recorder()
        controller.generate_range(0, 1, rec.callbacks())
        await settle()
        assert controller.is_drained()
        assert rec.completed == 1

        controller.extend_range(3)
        assert not controller.is_drained()
        await settle()

        assert backend.calls == [0, 1, 2, 3]
        assert rec.completed == 2

    @pytest.mark.asyncio
    async def test_extend_while_paused_waits_for_resume(self):
        backend = FakeBackend()
        gate = backend.gate(0)
        controller, _, _ = make_controller(5, backend)
        controller.generate_range(0, 1, Recorder().callbacks())
        await settle()
        controller.pause()
        gate.set()
        await settle()

        controller.extend_range(3)
        await settle()
        assert backend.calls == [0]

        controller.resume()
        await settle()
        assert backend.calls == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_extend_before_any_run_does_nothing(self):
        controller, backend, _ = make_controller(5)
        controller.extend_range(3)
        await settle()
        assert backend.calls == []
        assert controller.target_end == 3
