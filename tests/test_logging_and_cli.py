"""Tests for the readaloud logging module and the command-line entry point.

Logging tests cover:
- get_logger() — JSON and plain formatting, idempotent handler registration
- log_context() and state_context() — truncation, rounding, coordinator snapshots
- parse_log_line() / read_log_tail() / format_entry()

CLI tests cover:
- Argument parsing
- Start paragraph selection (--from, bookmark, default)
- Reading paragraphs from a file or stdin
- ready / play / config / log commands and their exit codes
- generate / voices / sessions commands
"""

from __future__ import annotations

import functools
import io
import json
import logging
import os
import unittest.mock as mock

import pytest

from fakes import AutoEndEngine, RecordingSleep, make_rig
from readaloud import cli
from readaloud.backend import FALLBACK_VOICES, GenerationParams
from readaloud.buffer import BufferedPlaybackState, BufferStatus, PlaybackStatus
from readaloud.errors import BackendUnavailableError, ConfigurationError, GenerationError
from readaloud.generation import GenerationController
from readaloud.logging import (
    format_entry,
    get_logger,
    log_context,
    parse_log_line,
    read_log_tail,
    state_context,
)
from readaloud.session import JsonSessionStore


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


# ─── Logging ─────────────────────────────────────────────────────────


class TestGetLogger:

    def test_json_lines_with_context(self, tmp_path):
        path = str(tmp_path / "player.log")
        logger = get_logger("readaloud.test.json", path)
        logger.info("Generating paragraph %d", 3,
                    extra={"context": log_context(paragraph=2, attempt=1)})
        _flush(logger)

        entry = parse_log_line(read_log_tail(path)[-1])
        assert entry["level"] == "INFO"
        assert entry["logger"] == "readaloud.test.json"
        assert entry["message"] == "Generating paragraph 3"
        assert entry["context"] == {"paragraph": 2, "attempt": 1}

    def test_exception_is_recorded(self, tmp_path):
        path = str(tmp_path / "player.log")
        logger = get_logger("readaloud.test.exc", path)
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("Coordinator crashed")
        _flush(logger)

        entry = json.loads(read_log_tail(path)[-1])
        assert "RuntimeError: boom" in entry["exception"]

    def test_plain_format(self, tmp_path):
        path = str(tmp_path / "cli.log")
        logger = get_logger("readaloud.test.plain", path, json_format=False)
        logger.warning("server not ready")
        _flush(logger)
        assert read_log_tail(path)[-1].endswith("WARNING: server not ready")

    def test_handler_added_once(self, tmp_path):
        path = str(tmp_path / "player.log")
        first = get_logger("readaloud.test.once", path)
        count = len(first.handlers)
        second = get_logger("readaloud.test.once", path)
        assert second is first
        assert len(second.handlers) == count


class TestLogHelpers:

    def test_log_context(self):
        ctx = log_context(paragraph=0, status="playing", text_preview="x" * 200,
                          duration_ms=12.345, attempt=2)
        assert ctx == {
            "paragraph": 0,
            "status": "playing",
            "text_preview": "x" * 80,
            "duration_ms": 12.3,
            "attempt": 2,
        }

    def test_log_context_empty(self):
        assert log_context() == {}

    def test_parse_log_line(self):
        assert parse_log_line('{"level": "INFO"}') == {"level": "INFO"}
        assert parse_log_line("[2026-01-01] plain text") is None
        assert parse_log_line("   ") is None

    def test_read_log_tail(self, tmp_path):
        path = tmp_path / "x.log"
        path.write_text("\n".join(f"line {i}" for i in range(10)) + "\n")
        assert read_log_tail(str(path), 3) == ["line 7", "line 8", "line 9"]
        assert read_log_tail(str(tmp_path / "missing.log")) == []

    def test_read_log_tail_level_filter(self, tmp_path):
        path = tmp_path / "x.log"
        path.write_text("\n".join([
            json.dumps({"level": "DEBUG", "message": "cache hit"}),
            json.dumps({"level": "WARNING", "message": "retry"}),
            "plain line",
            json.dumps({"level": "ERROR", "message": "skipped"}),
        ]) + "\n")
        lines = read_log_tail(str(path), 10, min_level="warning")
        assert [parse_log_line(l)["message"] if parse_log_line(l) else l for l in lines] == [
            "retry", "plain line", "skipped"]

    def test_state_context(self):
        state = BufferedPlaybackState(
            status=PlaybackStatus.BUFFERING, current_paragraph=4,
            buffer_status=BufferStatus(buffer_size=1, target_buffer=5, generating_index=6),
            error="Generation failed for paragraph 5",
        )
        assert state_context(state) == {
            "paragraph": 4,
            "status": "buffering",
            "buffer": "1/5",
            "generating": 6,
            "error": "Generation failed for paragraph 5",
        }

    def test_state_context_idle(self):
        assert state_context(BufferedPlaybackState(), reason="close") == {
            "paragraph": 0, "status": "idle", "buffer": "0/5", "reason": "close"}

    def test_format_entry(self):
        line = json.dumps({
            "timestamp": "2026-01-01T00:00:00.000", "level": "WARNING",
            "logger": "readaloud.generation", "message": "Retry 1/3",
            "context": {"paragraph": 2, "attempt": 1},
        })
        assert format_entry(line) == (
            "2026-01-01T00:00:00.000 WARNING readaloud.generation: Retry 1/3"
            "  paragraph=2 attempt=1")
        assert format_entry("[2026-01-01] plain") == "[2026-01-01] plain"


# ─── CLI ─────────────────────────────────────────────────────────────


@pytest.fixture
def config_file(tmp_path, monkeypatch) -> str:
    monkeypatch.chdir(tmp_path)
    for var in ("ALLTALK_PROTOCOL", "ALLTALK_HOST", "ALLTALK_PORT"):
        monkeypatch.delenv(var, raising=False)
    return str(tmp_path / "config.yml")


@pytest.fixture
def chapter(tmp_path) -> str:
    path = tmp_path / "chapter.txt"
    path.write_text("It was a dark night.\n\n***\n\nThe end.\n")
    return str(path)


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as info:
        cli.main(argv)
    return info.value.code


class TestParser:

    def test_play_options(self):
        args = cli.build_parser().parse_args(
            ["play", "chapter.txt", "--from", "3", "--no-tui", "--target-buffer", "4"])
        assert args.command == "play"
        assert args.file == "chapter.txt"
        assert args.from_paragraph == 3
        assert args.no_tui
        assert args.target_buffer == 4
        assert args.min_buffer is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestStartIndex:

    def test_default(self):
        assert cli._start_index(None, None, 5) == 0

    def test_from_is_one_based_and_beats_bookmark(self):
        assert cli._start_index(3, 1, 5) == 2

    def test_bookmark(self):
        assert cli._start_index(None, 2, 5) == 2

    def test_bookmark_past_end(self):
        assert cli._start_index(None, 9, 5) == 0

    @pytest.mark.parametrize("requested", [0, 6, -1])
    def test_out_of_range(self, requested):
        with pytest.raises(ConfigurationError):
            cli._start_index(requested, None, 5)


class TestReadParagraphs:

    def test_file(self, chapter):
        assert cli.read_paragraphs(chapter, 4096) == ["It was a dark night.", "The end."]

    def test_stdin(self, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("One.\n\nTwo."))
        assert cli.read_paragraphs("-", 4096) == ["One.", "Two."]


class TestCommands:

    def test_ready(self, config_file, capsys):
        with mock.patch("readaloud.cli.probe_ready", return_value=True):
            assert _run(["--config-file", config_file, "ready"]) == 0
        assert "http://localhost:7851: ready" in capsys.readouterr().out

    def test_not_ready(self, config_file):
        with mock.patch("readaloud.cli.probe_ready", return_value=False):
            assert _run(["--config-file", config_file, "ready"]) == 1

    def test_play_missing_file(self, config_file, tmp_path, capsys):
        assert _run(["--config-file", config_file, "play", str(tmp_path / "nope.txt")]) == 2
        assert "cannot read" in capsys.readouterr().err

    def test_play_empty_file(self, config_file, tmp_path):
        empty = tmp_path / "empty.txt"
        empty.write_text("\n\n")
        assert _run(["--config-file", config_file, "play", str(empty)]) == 2

    def test_play_server_not_ready(self, config_file, chapter, capsys):
        with mock.patch("readaloud.cli.probe_ready", return_value=False):
            assert _run(["--config-file", config_file, "play", chapter, "--no-tui"]) == 1
        assert "not ready" in capsys.readouterr().err

    def test_play_headless_to_completion(self, config_file, chapter, capsys):
        rig = make_rig(n=2, target=1, min_buffer=1, engine=AutoEndEngine())
        client = mock.Mock(aclose=mock.AsyncMock())
        with mock.patch("readaloud.cli.probe_ready", return_value=True), \
             mock.patch("readaloud.cli.build_coordinator", return_value=(rig.coordinator, client)):
            assert _run(["--config-file", config_file, "play", chapter, "--no-tui"]) == 0

        out = capsys.readouterr().out
        assert "Reading 2 paragraphs from paragraph 1" in out
        assert "[completed] paragraph 2/2" in out
        assert rig.engine.closed
        client.aclose.assert_awaited_once()

    def test_play_from_out_of_range(self, config_file, chapter, capsys):
        rig = make_rig(n=2)
        with mock.patch("readaloud.cli.probe_ready", return_value=True), \
             mock.patch("readaloud.cli.build_coordinator", return_value=(rig.coordinator, mock.Mock())):
            assert _run(["--config-file", config_file, "play", chapter, "--from", "5"]) == 2
        assert "--from must be between 1 and 2" in capsys.readouterr().err

    def test_play_invalid_buffer_override(self, config_file, chapter):
        rig = make_rig(n=2)
        with mock.patch("readaloud.cli.probe_ready", return_value=True), \
             mock.patch("readaloud.cli.build_coordinator", return_value=(rig.coordinator, mock.Mock())):
            code = _run(["--config-file", config_file, "play", chapter,
                         "--target-buffer", "1", "--min-buffer", "3"])
        assert code == 2
        assert rig.saved_configs == []

    def test_config_shows_effective_values(self, config_file, capsys):
        with mock.patch("readaloud.cli.prefs.get", return_value=None):
            assert _run(["--config-file", config_file, "config"]) == 0
        out = capsys.readouterr().out
        assert f"# {config_file}" in out
        assert "host: localhost" in out
        assert "# remembered buffer: target=5 min=2" in out

    def test_log_formats_entries(self, config_file, tmp_path, capsys):
        log = tmp_path / "player.log"
        log.write_text(json.dumps({
            "timestamp": "2026-01-01T00:00:00.000", "level": "INFO",
            "logger": "readaloud.coordinator", "message": "playing",
            "context": {"paragraph": 1},
        }) + "\nplain line\n")
        with mock.patch("readaloud.cli.PLAYER_LOG", str(log)):
            assert _run(["--config-file", config_file, "log", "-n", "5"]) == 0
        out = capsys.readouterr().out
        assert "readaloud.coordinator: playing" in out
        assert "plain line" in out

    def test_log_level_filter(self, config_file, tmp_path, capsys):
        log = tmp_path / "player.log"
        log.write_text("\n".join(json.dumps({"level": level, "logger": "readaloud.generation",
                                             "message": message})
                                 for level, message in [("DEBUG", "cache hit"),
                                                        ("ERROR", "paragraph skipped")]) + "\n")
        with mock.patch("readaloud.cli.PLAYER_LOG", str(log)):
            assert _run(["--config-file", config_file, "log", "--level", "WARNING"]) == 0
        out = capsys.readouterr().out
        assert "paragraph skipped" in out
        assert "cache hit" not in out


class FakeTtsClient:
    """Stands in for TtsClient in the generate and voices commands."""

    instances: list["FakeTtsClient"] = []
    fail_text = ""
    voice_list: object = ("female_01.wav", "male_01.wav")

    def __init__(self, base_url: str, **kwargs) -> None:
        self.base_url = base_url
        self.names: list[str] = []
        self.closed = False
        FakeTtsClient.instances.append(self)

    async def generate(self, text, params, output_name=None):
        if self.fail_text and self.fail_text in text:
            raise GenerationError("server rejected the text")
        self.names.append(output_name)
        return f"/audio/{output_name}.wav"

    async def voices(self):
        if isinstance(self.voice_list, Exception):
            raise self.voice_list
        return list(self.voice_list)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client(tmp_path, monkeypatch):
    monkeypatch.setattr(FakeTtsClient, "instances", [])
    monkeypatch.setattr("readaloud.cli.TtsClient", FakeTtsClient)
    monkeypatch.setattr("readaloud.cli.SESSIONS_DIR", str(tmp_path / "sessions"))
    monkeypatch.setattr("readaloud.cli.GenerationController",
                        functools.partial(GenerationController, sleep=RecordingSleep()))
    return FakeTtsClient


class TestGenerateCommand:

    def test_generates_every_paragraph_into_the_session(self, config_file, chapter, tmp_path,
                                                         fake_client, capsys):
        with mock.patch("readaloud.cli.probe_ready", return_value=True):
            assert _run(["--config-file", config_file, "generate", chapter]) == 0

        out = capsys.readouterr().out
        assert "[2/2] paragraph 2" in out
        assert "Done: 2/2 generated" in out
        client = fake_client.instances[0]
        assert len(client.names) == 2
        assert client.closed

        (summary,) = JsonSessionStore.list_all(str(tmp_path / "sessions"))
        assert summary.generated == 2
        assert summary.title == "chapter.txt"
        assert summary.source == os.path.abspath(chapter)
        assert summary.key in out

    def test_second_run_uses_remembered_audio(self, config_file, chapter, fake_client):
        with mock.patch("readaloud.cli.probe_ready", return_value=True):
            assert _run(["--config-file", config_file, "generate", chapter]) == 0
            assert _run(["--config-file", config_file, "generate", chapter]) == 0
        assert fake_client.instances[1].names == []

    def test_skipped_paragraph_fails_the_run(self, config_file, chapter, fake_client,
                                             monkeypatch, capsys):
        monkeypatch.setattr(FakeTtsClient, "fail_text", "The end")
        with mock.patch("readaloud.cli.probe_ready", return_value=True):
            assert _run(["--config-file", config_file, "generate", chapter]) == 1
        captured = capsys.readouterr()
        assert "paragraph 2 skipped" in captured.err
        assert "Done: 1/2 generated, 1 skipped" in captured.out

    def test_server_not_ready(self, config_file, chapter, fake_client):
        with mock.patch("readaloud.cli.probe_ready", return_value=False):
            assert _run(["--config-file", config_file, "generate", chapter]) == 1
        assert fake_client.instances == []


class TestVoicesCommand:

    def test_lists_server_voices_and_marks_configured(self, config_file, fake_client, capsys):
        assert _run(["--config-file", config_file, "voices"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("* female_01.wav")
        assert lines[0].endswith("female 01")
        assert lines[1].startswith("  male_01.wav")
        assert fake_client.instances[0].closed

    def test_unreachable_server_falls_back(self, config_file, fake_client, monkeypatch, capsys):
        monkeypatch.setattr(FakeTtsClient, "voice_list", BackendUnavailableError("refused"))
        assert _run(["--config-file", config_file, "voices"]) == 0
        captured = capsys.readouterr()
        assert "refused" in captured.err
        assert len(captured.out.splitlines()) == len(FALLBACK_VOICES)

    def test_empty_voice_list(self, config_file, fake_client, monkeypatch):
        monkeypatch.setattr(FakeTtsClient, "voice_list", ())
        assert _run(["--config-file", config_file, "voices"]) == 1


class TestSessionsCommand:

    @pytest.fixture
    def saved(self, tmp_path, chapter, monkeypatch):
        directory = str(tmp_path / "sessions")
        monkeypatch.setattr("readaloud.cli.SESSIONS_DIR", directory)
        store = JsonSessionStore.for_document(["It was a dark night.", "The end."],
                                              GenerationParams(), directory=directory,
                                              title="chapter.txt", source=chapter)
        store.save_bookmark(1)
        return store

    def test_list(self, config_file, saved, capsys):
        assert _run(["--config-file", config_file, "sessions"]) == 0
        out = capsys.readouterr().out
        assert saved.key in out
        assert "paragraph 2/2" in out
        assert "chapter.txt" in out

    def test_list_empty(self, config_file, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr("readaloud.cli.SESSIONS_DIR", str(tmp_path / "none"))
        assert _run(["--config-file", config_file, "sessions"]) == 0
        assert "No saved sessions" in capsys.readouterr().out

    def test_delete_by_prefix(self, config_file, saved):
        assert _run(["--config-file", config_file, "sessions", "--delete", saved.key[:6]]) == 0
        assert not os.path.exists(saved.path)

    def test_unknown_key(self, config_file, saved, capsys):
        assert _run(["--config-file", config_file, "sessions", "--delete", "zz"]) == 2
        assert "no single session" in capsys.readouterr().err
        assert os.path.exists(saved.path)

    def test_resume_plays_the_source(self, config_file, saved, chapter):
        with mock.patch("readaloud.cli.cmd_play", return_value=0) as play:
            assert _run(["--config-file", config_file, "sessions", "--resume", saved.key]) == 0
        args = play.call_args.args[0]
        assert args.file == chapter
        assert args.from_paragraph is None

    def test_resume_without_source(self, config_file, saved, tmp_path, capsys):
        os.unlink(saved.source)
        assert _run(["--config-file", config_file, "sessions", "--resume", saved.key]) == 2
        assert "not available" in capsys.readouterr().err
