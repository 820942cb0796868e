"""Color schemes and CSS generation for the readaloud TUI.

Supports Nord (default), Tokyo Night and Dracula.
"""

from __future__ import annotations


# ─── Color Schemes ────────────────────────────────────────────────────────

COLOR_SCHEMES: dict[str, dict[str, str]] = {
    "nord": {
        "bg": "#2e3440",
        "bg_alt": "#3b4252",
        "fg": "#eceff4",
        "fg_dim": "#616e88",
        "accent": "#88c0d0",
        "success": "#a3be8c",
        "warning": "#ebcb8b",
        "error": "#bf616a",
        "highlight_bg": "#434c5e",
        "border": "#4c566a",
    },
    "tokyo-night": {
        "bg": "#1a1b26",
        "bg_alt": "#24283b",
        "fg": "#a9b1d6",
        "fg_dim": "#565f89",
        "accent": "#7aa2f7",
        "success": "#9ece6a",
        "warning": "#e0af68",
        "error": "#f7768e",
        "highlight_bg": "#292e42",
        "border": "#414868",
    },
    "dracula": {
        "bg": "#282a36",
        "bg_alt": "#44475a",
        "fg": "#f8f8f2",
        "fg_dim": "#6272a4",
        "accent": "#8be9fd",
        "success": "#50fa7b",
        "warning": "#f1fa8c",
        "error": "#ff5555",
        "highlight_bg": "#44475a",
        "border": "#6272a4",
    },
}

DEFAULT_SCHEME = "nord"


def get_scheme(name: str = DEFAULT_SCHEME) -> dict[str, str]:
    """Get a color scheme by name, with fallback to default."""
    return COLOR_SCHEMES.get(name, COLOR_SCHEMES[DEFAULT_SCHEME])


def build_css(scheme_name: str = DEFAULT_SCHEME) -> str:
    """Build the Textual CSS using a named color scheme."""
    s = get_scheme(scheme_name)
    return f"""
    Screen {{
        background: {s['bg']};
        scrollbar-background: {s['bg_alt']};
        scrollbar-color: {s['border']};
        scrollbar-color-active: {s['accent']};
    }}

    /* ─── Status bar ───────────────────────────────────────── */

    #status-bar {{
        dock: top;
        height: auto;
        background: {s['bg_alt']};
        layout: horizontal;
    }}

    #status {{
        width: 1fr;
        padding: 0 1;
        color: {s['accent']};
    }}

    #buffer {{
        width: auto;
        padding: 0 1;
        color: {s['fg_dim']};
    }}

    #error {{
        dock: top;
        height: auto;
        padding: 0 1;
        color: {s['error']};
        display: none;
    }}

    #error.visible {{
        display: block;
    }}

    /* ─── Paragraph list ───────────────────────────────────── */

    #paragraphs {{
        background: {s['bg']};
        height: 1fr;
    }}

    ParagraphItem {{
        color: {s['fg_dim']};
        padding: 0 1;
    }}

    ParagraphItem.generated {{
        color: {s['fg']};
    }}

    ParagraphItem.skipped {{
        color: {s['warning']};
    }}

    ParagraphItem.current {{
        color: {s['success']};
        text-style: bold;
        border-left: thick {s['success']};
    }}

    ParagraphItem.-highlight {{
        background: {s['highlight_bg']};
    }}

    #footer-status {{
        dock: bottom;
        height: 1;
        padding: 0 1;
        color: {s['fg_dim']};
    }}
    """
