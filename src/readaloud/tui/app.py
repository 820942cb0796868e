"""Main TUI application for readaloud.

Shows the paragraph list with the listening cursor and buffer marks, a
status bar fed by coordinator snapshots, and key bindings for the
transport. Terminal focus loss pauses generation (not audio).
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.widgets import Header, Label, ListView, Static

from ..buffer import BufferedPlaybackState, PlaybackStatus
from ..coordinator import BufferedPlaybackCoordinator
from ..logging import get_logger
from ..settings import SPEED_STEP, Settings
from .themes import COLOR_SCHEMES, DEFAULT_SCHEME, build_css
from .widgets import BufferIndicator, ParagraphItem, _safe_action

_log = get_logger("readaloud.tui")

STATUS_LABELS = {
    PlaybackStatus.IDLE: "Stopped",
    PlaybackStatus.INITIAL_BUFFERING: "Buffering…",
    PlaybackStatus.BUFFERING: "Waiting for audio…",
    PlaybackStatus.PLAYING: "Playing",
    PlaybackStatus.PAUSED: "Paused",
    PlaybackStatus.COMPLETED: "Finished",
    PlaybackStatus.ERROR: "Error",
}

FOOTER_HELP = "space play/pause · n/p next/prev · enter jump · s stop · r retry · +/- speed · q quit"


# ─── Main TUI App ───────────────────────────────────────────────────────────

class ReadaloudApp(App):
    """Textual front end for one buffered reading session."""

    CSS = build_css(DEFAULT_SCHEME)

    BINDINGS = [
        Binding("space", "toggle_pause", "Play/Pause", show=True),
        Binding("n", "next_paragraph", "Next", show=True),
        Binding("p", "previous_paragraph", "Previous", show=True),
        Binding("s", "stop", "Stop", show=True),
        Binding("r", "retry", "Retry", show=True),
        Binding("plus,equals_sign", "speed_up", "Faster", show=False),
        Binding("minus", "slow_down", "Slower", show=False),
        Binding("f", "toggle_fast", "Fast", show=False),
        Binding("q", "quit_app", "Quit", show=True),
    ]

    def __init__(self, coordinator: BufferedPlaybackCoordinator, *,
                 settings: Optional[Settings] = None,
                 start_index: Optional[int] = None,
                 title: str = "readaloud",
                 on_exit: Optional[Callable[[], Awaitable[Any]]] = None,
                 color_scheme: str = DEFAULT_SCHEME,
                 **kwargs) -> None:
        if color_scheme not in COLOR_SCHEMES:
            color_scheme = DEFAULT_SCHEME
        self.__class__.CSS = build_css(color_scheme)
        self._color_scheme = color_scheme
        super().__init__(**kwargs)
        self._coordinator = coordinator
        self._settings = settings or Settings()
        self._start_index = start_index
        self._doc_title = title
        self._on_exit = on_exit
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_current: Optional[int] = None

    # ─── Widget composition ────────────────────────────────────────

    def compose(self) -> ComposeResult:
        yield Header(show_clock=False)
        with Horizontal(id="status-bar"):
            yield Label("", id="status")
            yield BufferIndicator(id="buffer")
        yield Label("", id="error")
        yield ListView(
            *(ParagraphItem(text, i) for i, text in enumerate(self._coordinator.context.paragraphs)),
            id="paragraphs",
        )
        yield Static(FOOTER_HELP, id="footer-status")

    def on_mount(self) -> None:
        self.title = "readaloud"
        self.sub_title = self._doc_title
        self._unsubscribe = self._coordinator.subscribe(self._on_state)
        self._on_state(self._coordinator.state)
        self.query_one("#paragraphs", ListView).focus()
        if self._start_index is not None:
            self._start(self._start_index)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    # ─── State rendering ───────────────────────────────────────────

    def _on_state(self, state: BufferedPlaybackState) -> None:
        total = len(self._coordinator.context.paragraphs)
        status = STATUS_LABELS.get(state.status, state.status.value)
        position = f"{state.current_paragraph + 1}/{total}" if total else "0/0"
        self.query_one("#status", Label).update(
            f"{status}  ·  paragraph {position}  ·  {self._settings.speed:.1f}x")

        buf = self.query_one("#buffer", BufferIndicator)
        buf.buffer_size = state.buffer_status.buffer_size
        buf.target = state.buffer_status.target_buffer
        buf.generating = state.buffer_status.is_generating

        error = self.query_one("#error", Label)
        error.update(state.error or "")
        error.set_class(bool(state.error), "visible")

        self._update_marks(state)

    def _update_marks(self, state: BufferedPlaybackState) -> None:
        generated = state.buffer_status.generated
        generating = state.buffer_status.generating_index
        active = state.status != PlaybackStatus.IDLE
        list_view = self.query_one("#paragraphs", ListView)
        for item in list_view.query(ParagraphItem):
            i = item.paragraph_index
            item.set_marks(
                current=active and i == state.current_paragraph,
                generated=i in generated,
                generating=i == generating,
                skipped=self._coordinator.is_skipped(i),
            )
        if active and state.current_paragraph != self._last_current:
            self._last_current = state.current_paragraph
            list_view.index = state.current_paragraph

    # ─── Actions ───────────────────────────────────────────────────

    @_safe_action
    def _start(self, index: int) -> None:
        self._coordinator.start(index)

    @_safe_action
    def action_toggle_pause(self) -> None:
        state = self._coordinator.state
        if state.status in (PlaybackStatus.IDLE, PlaybackStatus.COMPLETED, PlaybackStatus.ERROR):
            index = self.query_one("#paragraphs", ListView).index or 0
            self._coordinator.start(index)
        else:
            self._coordinator.toggle_pause()

    @_safe_action
    def action_next_paragraph(self) -> None:
        self._coordinator.next()

    @_safe_action
    def action_previous_paragraph(self) -> None:
        self._coordinator.previous()

    @_safe_action
    def action_stop(self) -> None:
        self._coordinator.stop()

    @_safe_action
    def action_retry(self) -> None:
        self._coordinator.retry()

    @_safe_action
    def _skip_to(self, index: int) -> None:
        self._coordinator.skip_to(index)

    def on_list_view_selected(self, event: ListView.Selected) -> None:
        if isinstance(event.item, ParagraphItem):
            self._skip_to(event.item.paragraph_index)

    def _apply_speed(self, message: str) -> None:
        self._coordinator.update_playback_settings(
            speed=self._settings.speed, preserves_pitch=self._settings.preserves_pitch)
        self.notify(f"{message} (from the next paragraph)")
        self._on_state(self._coordinator.state)

    @_safe_action
    def action_speed_up(self) -> None:
        self._apply_speed(self._settings.adjust_speed(SPEED_STEP))

    @_safe_action
    def action_slow_down(self) -> None:
        self._apply_speed(self._settings.adjust_speed(-SPEED_STEP))

    @_safe_action
    def action_toggle_fast(self) -> None:
        self._apply_speed(self._settings.toggle_fast())

    async def action_quit_app(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        await self._coordinator.close()
        if self._on_exit is not None:
            await self._on_exit()
        self.exit()

    async def action_quit(self) -> None:
        await self.action_quit_app()

    # ─── Focus-driven backpressure ─────────────────────────────────

    def on_app_blur(self, event: events.AppBlur) -> None:
        self._coordinator.set_visibility(hidden=True)

    def on_app_focus(self, event: events.AppFocus) -> None:
        self._coordinator.set_visibility(hidden=False)
