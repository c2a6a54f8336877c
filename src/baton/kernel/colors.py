from __future__ import annotations

ORCHESTRATOR_COLOR = "yellow"

AGENT_PALETTE = ("blue", "green", "magenta", "cyan", "red", "white")

_TMUX_COLOR_MAP = {
    "orange": "colour208",
    "teal": "colour6",
    "purple": "colour93",
}


def palette_color(index: int) -> str:
    return AGENT_PALETTE[index % len(AGENT_PALETTE)]


def normalize_tmux_color(color: str) -> str:
    c = str(color or "").strip().lower()
    return _TMUX_COLOR_MAP.get(c, c)
