"""readaloud TUI package.

Modules:
    themes  — Color schemes (Nord, Tokyo Night, Dracula) and CSS generation
    widgets — ParagraphItem, BufferIndicator, _safe_action decorator
    app     — ReadaloudApp (main Textual App)
"""

from .themes import COLOR_SCHEMES, DEFAULT_SCHEME, get_scheme, build_css
from .widgets import BufferIndicator, ParagraphItem, _safe_action
from .app import ReadaloudApp

__all__ = [
    "COLOR_SCHEMES",
    "DEFAULT_SCHEME",
    "get_scheme",
    "build_css",
    "BufferIndicator",
    "ParagraphItem",
    "_safe_action",
    "ReadaloudApp",
]
