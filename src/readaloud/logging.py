"""Structured logging for readaloud.

Generation, playback and the coordinator write JSON lines to the player
log; the CLI writes plain lines to its own log. ``readaloud log`` reads
the player log back through ``read_log_tail`` and ``format_entry``.

A player log line looks like::

    {"timestamp": "2026-05-01T21:04:11.204", "level": "INFO",
     "logger": "readaloud.coordinator", "message": "buffering -> playing",
     "context": {"paragraph": 12, "status": "playing", "buffer": "3/5"}}

``READALOUD_LOG_DIR`` moves both files; ``READALOUD_LOG_LEVEL`` raises the
threshold (DEBUG by default, since cache hits and range scans are what
a stuck session usually needs).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .buffer import BufferedPlaybackState


LOG_DIR = os.environ.get("READALOUD_LOG_DIR") or tempfile.gettempdir()
PLAYER_LOG = os.path.join(LOG_DIR, "readaloud-player.log")
CLI_LOG = os.path.join(LOG_DIR, "readaloud-cli.log")

MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

PREVIEW_CHARS = 80


def _default_level() -> int:
    name = os.environ.get("READALOUD_LOG_LEVEL", "DEBUG").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.DEBUG


# ─── Formatters ──────────────────────────────────────────────────────

class _JsonFormatter(logging.Formatter):
    """One JSON object per record; ``context`` comes from ``extra={"context": ...}``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _PlainFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, datefmt="%Y-%m-%d %H:%M:%S")
        line = f"[{ts}] {record.levelname}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ─── Loggers ─────────────────────────────────────────────────────────

def get_logger(name: str, log_file: str = PLAYER_LOG, level: Optional[int] = None, *,
               json_format: bool = True) -> logging.Logger:
    """Logger *name* writing to a rotating *log_file*.

    Safe to call at import time from every module: a file gets one
    handler per logger no matter how often it is requested.
    """
    logger = logging.getLogger(name)
    level = _default_level() if level is None else level
    target = os.path.abspath(log_file)
    if not any(getattr(h, "baseFilename", None) == target for h in logger.handlers):
        os.makedirs(os.path.dirname(target), exist_ok=True)
        handler = RotatingFileHandler(target, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT,
                                      encoding="utf-8")
        handler.setFormatter(_JsonFormatter() if json_format else _PlainFormatter())
        handler.setLevel(level)
        logger.addHandler(handler)
    logger.setLevel(min(level, logger.level or level))
    return logger


def log_context(*, paragraph: Optional[int] = None, status: str = "",
                text_preview: str = "", duration_ms: Optional[float] = None,
                **extra: Any) -> dict[str, Any]:
    """Context dict for ``extra={"context": ...}``; unset fields are left out.

    ``paragraph`` is the 0-based index, matching the state snapshots.
    """
    ctx: dict[str, Any] = {}
    if paragraph is not None:
        ctx["paragraph"] = paragraph
    if status:
        ctx["status"] = status
    if text_preview:
        ctx["text_preview"] = text_preview[:PREVIEW_CHARS]
    if duration_ms is not None:
        ctx["duration_ms"] = round(duration_ms, 1)
    ctx.update(extra)
    return ctx


def state_context(state: "BufferedPlaybackState", **extra: Any) -> dict[str, Any]:
    """Context for a coordinator snapshot: position, status and buffer fill."""
    buf = state.buffer_status
    ctx = log_context(
        paragraph=state.current_paragraph,
        status=state.status.value,
        buffer=f"{buf.buffer_size}/{buf.target_buffer}",
        **extra,
    )
    if buf.generating_index >= 0:
        ctx["generating"] = buf.generating_index
    if state.error:
        ctx["error"] = state.error
    return ctx


# ─── Reading the log back ────────────────────────────────────────────

def parse_log_line(line: str) -> Optional[dict[str, Any]]:
    """The JSON entry on *line*, or None for plain-text and blank lines."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    return entry if isinstance(entry, dict) else None


def read_log_tail(path: str, lines: int = 50, min_level: Optional[str] = None) -> list[str]:
    """Last *lines* non-blank lines of *path*; missing or unreadable files give [].

    With *min_level*, JSON entries below that level are skipped (plain
    lines are always kept).
    """
    threshold = logging.getLevelName(min_level.upper()) if min_level else None
    if not isinstance(threshold, int):
        threshold = None
    tail: deque[str] = deque(maxlen=max(lines, 0))
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for raw in f:
                line = raw.rstrip("\n")
                if not line.strip():
                    continue
                if threshold is not None:
                    entry = parse_log_line(line)
                    level = logging.getLevelName(entry.get("level", "")) if entry else None
                    if isinstance(level, int) and level < threshold:
                        continue
                tail.append(line)
    except OSError:
        return []
    return list(tail)


def format_entry(line: str) -> str:
    """Render one log line for the terminal."""
    entry = parse_log_line(line)
    if entry is None:
        return line
    ctx = entry.get("context")
    suffix = "  " + " ".join(f"{k}={v}" for k, v in ctx.items()) if isinstance(ctx, dict) and ctx else ""
    text = (f"{entry.get('timestamp', '')} {entry.get('level', ''):7} "
            f"{entry.get('logger', '')}: {entry.get('message', '')}{suffix}")
    if entry.get("exception"):
        text += "\n" + str(entry["exception"])
    return text
