"""Resource API reference material for the model.

Loads API_REFERENCE.md once at import.  The full text goes into the system
prompt; ``find_sections`` does keyword matching over the ``###`` sections so
the loop can attach the relevant part of the reference when a call misses
(e.g. a 404 on a path the model guessed).
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_REFERENCE_PATH = Path(__file__).resolve().parent / "API_REFERENCE.md"


def _load_reference(path: Path = _REFERENCE_PATH) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.error("API_REFERENCE.md not found at %s", path)
        return ""


def _split_into_sections(content: str) -> list[dict[str, str]]:
    """Split the reference into ``{"heading": ..., "body": ...}`` sections."""
    sections: list[dict[str, str]] = []
    parts = re.split(r"###\s+(.+?)(?=\n)", content)

    # parts[0] is the preamble, then alternating heading/body pairs
    for i in range(1, len(parts), 2):
        heading = parts[i].strip()
        body = parts[i + 1] if i + 1 < len(parts) else ""
        # Stop at the next ## heading or --- rule
        body = re.split(r"\n(?:---|##\s)", body, maxsplit=1)[0].strip()
        sections.append({"heading": heading, "body": body})

    return sections


_FULL_REFERENCE: str = _load_reference()
_SECTIONS: list[dict[str, str]] = _split_into_sections(_FULL_REFERENCE)


def get_api_reference() -> str:
    """Return the complete reference (used for system prompt injection)."""
    return _FULL_REFERENCE


def find_sections(query: str, limit: int = 2) -> list[dict[str, str]]:
    """Return up to *limit* sections ranked by keyword overlap with *query*."""
    words = {w for w in re.split(r"[^a-z0-9_]+", query.lower()) if len(w) > 2}
    if not words:
        return []

    scored: list[tuple[int, int, dict[str, str]]] = []
    for index, section in enumerate(_SECTIONS):
        heading = section["heading"].lower()
        text = f"{heading} {section['body'].lower()}"
        score = sum(1 for w in words if w in text)
        score += sum(2 for w in words if w in heading)
        if score:
            scored.append((score, -index, section))

    scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [section for _, _, section in scored[:limit]]


def format_sections(sections: list[dict[str, str]]) -> str:
    return "\n\n".join(f"**{s['heading']}**\n{s['body']}" for s in sections)
