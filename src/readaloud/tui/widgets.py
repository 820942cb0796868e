"""Reusable widgets for the readaloud TUI.

Contains the ParagraphItem list item, the BufferIndicator bar and the
_safe_action decorator.
"""

from __future__ import annotations

import functools

from rich.markup import escape
from textual.app import ComposeResult
from textual.reactive import reactive
from textual.widgets import Label, ListItem, Static

from ..errors import ConfigurationError
from ..logging import get_logger, log_context

_log = get_logger("readaloud.tui.widgets")

PREVIEW_CHARS = 160


# ─── Safe action decorator ────────────────────────────────────────────────

def _safe_action(fn):
    """Decorator that catches exceptions in TUI action methods.

    Rejected input (ConfigurationError) becomes a warning toast; anything
    else is logged and shown as an error instead of crashing the app.
    """

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except ConfigurationError as exc:
            self.notify(str(exc), severity="warning")
        except Exception as exc:
            err = f"{type(exc).__name__}: {str(exc)[:100]}"
            _log.error(
                "Error in %s: %s", fn.__name__, err,
                exc_info=True,
                extra={"context": log_context(action=fn.__name__)},
            )
            self.notify(f"Error in {fn.__name__}: {err}", severity="error")
    return wrapper


# ─── Paragraph Item Widget ────────────────────────────────────────────────

class ParagraphItem(ListItem):
    """One paragraph in the reading list.

    CSS classes mirror the buffer state: ``current``, ``generated``,
    ``skipped``; the marker column shows the same at a glance.
    """

    def __init__(self, text: str, index: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.paragraph_text = text
        self.paragraph_index = index
        self.marker = " "

    def _format(self) -> str:
        preview = " ".join(self.paragraph_text.split())
        if len(preview) > PREVIEW_CHARS:
            preview = preview[:PREVIEW_CHARS - 1] + "…"
        return f"{self.marker} [dim]{self.paragraph_index + 1:>4}[/dim]  {escape(preview)}"

    def compose(self) -> ComposeResult:
        yield Label(self._format(), classes="paragraph-label")

    def set_marks(self, *, current: bool, generated: bool, generating: bool,
                  skipped: bool) -> None:
        """Update classes and marker; only touches the label when the marker changes."""
        self.set_class(current, "current")
        self.set_class(generated, "generated")
        self.set_class(skipped, "skipped")
        if current:
            marker = "▶"
        elif generating:
            marker = "◌"
        elif skipped:
            marker = "✗"
        elif generated:
            marker = "●"
        else:
            marker = " "
        if marker != self.marker:
            self.marker = marker
            if self.is_mounted:
                self.query_one(".paragraph-label", Label).update(self._format())


# ─── Buffer indicator ─────────────────────────────────────────────────────

class BufferIndicator(Static):
    """Shows how many paragraphs are buffered ahead of the listener."""

    buffer_size = reactive(0)
    target = reactive(0)
    generating = reactive(False)

    def render(self) -> str:
        if self.target <= 0:
            return ""
        filled = min(self.buffer_size, self.target)
        bar = "█" * filled + "░" * (self.target - filled)
        spinner = " ◌" if self.generating else ""
        return f"buffer [{bar}] {self.buffer_size}/{self.target}{spinner}"
