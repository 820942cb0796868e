"""Command-line entry point for readaloud.

Usage:
    readaloud play chapter.txt                 # TUI, resumes at the bookmark
    readaloud play chapter.txt --from 12       # start at paragraph 12
    readaloud play - --no-tui < chapter.txt    # headless, text from stdin
    readaloud ready                            # is the TTS server up?
    readaloud config [--reset]                 # show or reset config.yml
    readaloud generate chapter.txt             # pre-generate every paragraph
    readaloud voices                           # voices the TTS server offers
    readaloud sessions [--delete KEY]          # saved bookmarks
    readaloud sessions --resume KEY            # play a saved session again
    readaloud log [-n 50] [--level WARNING]    # tail the player log
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from typing import Optional

import yaml

from . import state as prefs
from .backend import FALLBACK_VOICES, TtsClient, probe_ready, voice_label
from .buffer import BufferedPlaybackState, PlaybackStatus
from .config import ReadaloudConfig
from .coordinator import BufferedPlaybackCoordinator, PlaybackContext
from .errors import BackendError, ConfigurationError
from .generation import GenerationCallbacks, GenerationController
from .logging import CLI_LOG, PLAYER_LOG, format_entry, get_logger, read_log_tail
from .playback import AudioEngine, PlaybackSettings, find_player
from .platform import detect_adapter
from .session import SESSIONS_DIR, JsonSessionStore
from .text import split_into_paragraphs

_log = get_logger("readaloud.cli", CLI_LOG, json_format=False)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="readaloud",
        description="Listen to long text through a TTS server, generated a few paragraphs ahead",
    )
    parser.add_argument("--config-file", default=None, metavar="PATH",
                        help="Config file (default: ~/.config/readaloud/config.yml)")
    sub = parser.add_subparsers(dest="command", required=True)

    play = sub.add_parser("play", help="Read a text file aloud")
    play.add_argument("file", help="Text file to read, or - for stdin")
    play.add_argument("--from", dest="from_paragraph", type=int, default=None, metavar="N",
                      help="Start at paragraph N (1-based); default resumes the bookmark")
    play.add_argument("--no-tui", action="store_true",
                      help="Print state changes instead of showing the TUI")
    play.add_argument("--player", default=None,
                      help="Audio player binary (mpv, ffplay, paplay)")
    play.add_argument("--target-buffer", type=int, default=None, metavar="N",
                      help="Paragraphs to generate ahead of the listener")
    play.add_argument("--min-buffer", type=int, default=None, metavar="N",
                      help="Paragraphs needed ahead before playback continues")

    sub.add_parser("ready", help="Check that the TTS server is ready")

    config = sub.add_parser("config", help="Show the effective configuration")
    config.add_argument("--reset", action="store_true",
                        help="Delete config.yml and regenerate it with defaults")

    generate = sub.add_parser("generate", help="Generate audio for every paragraph without playing")
    generate.add_argument("file", help="Text file to generate, or - for stdin")

    sub.add_parser("voices", help="List the voices the TTS server offers")

    sessions = sub.add_parser("sessions", help="List saved sessions")
    action = sessions.add_mutually_exclusive_group()
    action.add_argument("--delete", metavar="KEY", default=None,
                        help="Delete the session whose key starts with KEY")
    action.add_argument("--resume", metavar="KEY", default=None,
                        help="Play the session whose key starts with KEY from its bookmark")

    log = sub.add_parser("log", help="Show recent player log entries")
    log.add_argument("-n", "--lines", type=int, default=50)
    log.add_argument("--level", default=None, metavar="LEVEL",
                     help="Only show entries at or above LEVEL (DEBUG, INFO, WARNING, ERROR)")
    return parser


# ─── Session assembly ─────────────────────────────────────────────────────

def read_paragraphs(path: str, max_characters: int) -> list[str]:
    if path == "-":
        text = sys.stdin.read()
    else:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    return split_into_paragraphs(text, max_characters)


def _describe(path: str) -> tuple[str, str]:
    """Title and absolute source path for *path*; both empty for stdin."""
    if path == "-":
        return "", ""
    return os.path.basename(path), os.path.abspath(path)


def build_coordinator(cfg: ReadaloudConfig, paragraphs: list[str], *,
                      player: Optional[str] = None,
                      title: str = "",
                      source: str = "") -> tuple[BufferedPlaybackCoordinator, TtsClient]:
    """Wire client, controller, engine, adapter and session store for *paragraphs*."""
    client = TtsClient(cfg.base_url, max_characters=cfg.max_characters,
                       timeout=cfg.request_timeout)
    context = PlaybackContext.from_config(
        cfg, paragraphs, prefs.load_buffer_config(default=cfg.default_buffer_config()))
    session = JsonSessionStore.for_document(paragraphs, context.params, directory=SESSIONS_DIR,
                                            title=title, source=source)

    player_path = find_player(player or cfg.player)
    adapter = detect_adapter(cfg.platform, player_path)
    engine = AudioEngine(
        adapter, player=player_path,
        settings=PlaybackSettings(speed=cfg.playback_speed, preserves_pitch=cfg.preserves_pitch),
    )
    controller = GenerationController(client, cache=session)
    coordinator = BufferedPlaybackCoordinator(
        context, controller=controller, engine=engine, adapter=adapter, session=session)
    _log.info("Session for %s: %d paragraphs, player=%s, adapter=%s",
              title or "stdin", len(paragraphs), player_path, adapter.name)
    return coordinator, client


def _start_index(requested: Optional[int], bookmark: Optional[int], total: int) -> int:
    if requested is not None:
        if not 1 <= requested <= total:
            raise ConfigurationError(f"--from must be between 1 and {total}")
        return requested - 1
    if bookmark is not None and bookmark < total:
        return bookmark
    return 0


async def _play_headless(coordinator: BufferedPlaybackCoordinator, client: TtsClient,
                         start_index: int) -> int:
    total = len(coordinator.context.paragraphs)
    done = asyncio.Event()
    last: dict[str, object] = {"position": None, "error": None, "status": None}

    def on_state(state: BufferedPlaybackState) -> None:
        if done.is_set():
            # close() reports a final idle state
            return
        position = (state.status, state.current_paragraph)
        if position != last["position"]:
            print(f"  [{state.status.value}] paragraph {state.current_paragraph + 1}/{total}"
                  f"  buffer {state.buffer_status.buffer_size}/{state.buffer_status.target_buffer}",
                  flush=True)
        if state.error and state.error != last["error"]:
            print(f"  ! {state.error}", file=sys.stderr, flush=True)
        last.update(position=position, error=state.error, status=state.status)
        if state.status in (PlaybackStatus.COMPLETED, PlaybackStatus.ERROR):
            done.set()

    coordinator.subscribe(on_state)
    try:
        coordinator.start(start_index)
        await done.wait()
    finally:
        await coordinator.close()
        await client.aclose()
    return 0 if last["status"] == PlaybackStatus.COMPLETED else 1


async def _generate_all(cfg: ReadaloudConfig, paragraphs: list[str], *,
                        title: str = "", source: str = "") -> int:
    client = TtsClient(cfg.base_url, max_characters=cfg.max_characters,
                       timeout=cfg.request_timeout)
    params = cfg.generation_params()
    session = JsonSessionStore.for_document(paragraphs, params, directory=SESSIONS_DIR,
                                            title=title, source=source)
    controller = GenerationController(client, cache=session)
    controller.initialize(paragraphs, params)
    total = len(paragraphs)
    done = asyncio.Event()
    skipped: list[int] = []

    def on_progress(index: int, locator: str) -> None:
        session.remember_locator(index, locator)
        print(f"  [{controller.get_generated_count()}/{total}] paragraph {index + 1}", flush=True)

    def on_error(index: int, exc: Exception) -> None:
        skipped.append(index)
        print(f"  ! paragraph {index + 1} skipped: {exc}", file=sys.stderr, flush=True)

    print(f"  Generating {total} paragraphs (session {controller.key})", flush=True)
    started = time.monotonic()
    try:
        controller.generate_range(0, total - 1, GenerationCallbacks(
            on_progress=on_progress, on_error=on_error, on_complete=done.set))
        await done.wait()
    finally:
        controller.stop()
        await client.aclose()

    _log.info("Generated %d/%d paragraphs of %s in %.1fs", controller.get_generated_count(),
              total, title or "stdin", time.monotonic() - started)
    print(f"  Done: {controller.get_generated_count()}/{total} generated"
          + (f", {len(skipped)} skipped" if skipped else ""), flush=True)
    return 1 if skipped else 0


# ─── Commands ─────────────────────────────────────────────────────────────

def cmd_play(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    try:
        paragraphs = read_paragraphs(args.file, cfg.max_characters)
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 2
    if not paragraphs:
        print("Error: no text to read", file=sys.stderr)
        return 2

    if not probe_ready(cfg.base_url, cfg.connection_timeout):
        print(f"Error: TTS server at {cfg.base_url} is not ready", file=sys.stderr)
        return 1

    title, source = _describe(args.file)
    coordinator, client = build_coordinator(cfg, paragraphs, player=args.player,
                                            title=title, source=source)
    try:
        if args.target_buffer is not None or args.min_buffer is not None:
            coordinator.update_config(target_buffer_size=args.target_buffer,
                                      min_buffer_size=args.min_buffer)
        bookmark = coordinator.session.load_bookmark() if coordinator.session else None
        start_index = _start_index(args.from_paragraph, bookmark, len(paragraphs))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(f"  Reading {len(paragraphs)} paragraphs from paragraph {start_index + 1} "
          f"(buffer {coordinator.context.config.min_buffer_size}"
          f"/{coordinator.context.config.target_buffer_size})", flush=True)

    if args.no_tui:
        try:
            return asyncio.run(_play_headless(coordinator, client, start_index))
        except KeyboardInterrupt:
            return 130

    from .settings import Settings
    from .tui import ReadaloudApp

    app = ReadaloudApp(coordinator, settings=Settings(cfg), start_index=start_index,
                       title=title, on_exit=client.aclose,
                       color_scheme=cfg.color_scheme)
    app.run()
    return 0


def cmd_ready(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    ok = probe_ready(cfg.base_url, cfg.connection_timeout)
    print(f"{cfg.base_url}: {'ready' if ok else 'not ready'}")
    return 0 if ok else 1


def cmd_config(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    print(f"# {cfg.config_path}")
    print(yaml.dump(cfg.expanded, default_flow_style=False, sort_keys=False), end="")
    buffer = prefs.load_buffer_config(default=cfg.default_buffer_config())
    print(f"# remembered buffer: target={buffer.target_buffer_size} min={buffer.min_buffer_size}")
    return 0


def cmd_generate(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    try:
        paragraphs = read_paragraphs(args.file, cfg.max_characters)
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 2
    if not paragraphs:
        print("Error: no text to generate", file=sys.stderr)
        return 2
    if not probe_ready(cfg.base_url, cfg.connection_timeout):
        print(f"Error: TTS server at {cfg.base_url} is not ready", file=sys.stderr)
        return 1

    title, source = _describe(args.file)
    try:
        return asyncio.run(_generate_all(cfg, paragraphs, title=title, source=source))
    except KeyboardInterrupt:
        return 130


async def _fetch_voices(cfg: ReadaloudConfig) -> list[str]:
    client = TtsClient(cfg.base_url, timeout=cfg.connection_timeout)
    try:
        return await client.voices()
    finally:
        await client.aclose()


def cmd_voices(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    try:
        voices = asyncio.run(_fetch_voices(cfg))
    except BackendError as e:
        _log.warning("Voice list unavailable: %s", e)
        print(f"Warning: {e}; showing the built-in voices", file=sys.stderr)
        voices = list(FALLBACK_VOICES)
    if not voices:
        print(f"{cfg.base_url} reports no voices")
        return 1
    for voice in voices:
        marker = "*" if voice == cfg.tts_voice else " "
        print(f"{marker} {voice:24} {voice_label(voice)}")
    return 0


def _format_session(summary) -> str:
    position = "-" if summary.position is None else str(summary.position + 1)
    if summary.paragraphs:
        position += f"/{summary.paragraphs}"
    updated = time.strftime("%Y-%m-%d %H:%M", time.localtime(summary.updated_at))
    name = summary.title or summary.source or "(stdin)"
    return (f"{summary.key}  {updated}  paragraph {position:9} "
            f"{summary.generated:4} generated  {name}")


def cmd_sessions(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    key = args.delete or args.resume
    if key is None:
        summaries = JsonSessionStore.list_all(SESSIONS_DIR)
        if not summaries:
            print("No saved sessions")
        for summary in summaries:
            print(_format_session(summary))
        return 0

    summary = JsonSessionStore.find(key, SESSIONS_DIR)
    if summary is None:
        print(f"Error: no single session matches {key!r}", file=sys.stderr)
        return 2

    if args.delete:
        JsonSessionStore(summary.key, directory=SESSIONS_DIR).clear()
        _log.info("Deleted session %s", summary.key)
        print(f"Deleted {summary.key} ({summary.title or summary.source or 'stdin'})")
        return 0

    if not summary.source or not os.path.exists(summary.source):
        print(f"Error: source of session {summary.key} is not available: "
              f"{summary.source or 'read from stdin'}", file=sys.stderr)
        return 2
    play_args = build_parser().parse_args(["play", summary.source])
    return cmd_play(play_args, cfg)


def cmd_log(args: argparse.Namespace, cfg: ReadaloudConfig) -> int:
    for line in read_log_tail(PLAYER_LOG, args.lines, min_level=args.level):
        print(format_entry(line))
    return 0


COMMANDS = {
    "play": cmd_play,
    "ready": cmd_ready,
    "config": cmd_config,
    "generate": cmd_generate,
    "voices": cmd_voices,
    "sessions": cmd_sessions,
    "log": cmd_log,
}


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "config" and args.reset:
        cfg = ReadaloudConfig.reset(args.config_file)
        print("  Config: reset to defaults (--reset)", flush=True)
    else:
        cfg = ReadaloudConfig.load(args.config_file)

    try:
        code = COMMANDS[args.command](args, cfg)
    except Exception:
        _log.exception("Command %s failed", args.command)
        raise
    sys.exit(code)
