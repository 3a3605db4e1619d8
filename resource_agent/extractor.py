"""Turn free-form model output into a CallPlan.

The call grammar is a single rule applied to the first non-blank line of a
fenced block::

    <METHOD> <path>[?<query>]
    [Body: <json ...>]

where METHOD is one of GET/POST/PUT/PATCH/DELETE (any case) and path starts
with ``/``.  Blocks are tried in source order and the first match wins.  If
no block matches, the same rule is searched for anywhere in the raw text as a
last resort (without body support), which tolerates models that forget the
fences.

``signals_call_intent`` is deliberately separate from the parser: it is a
small keyword score used by the loop to spot replies that *announce* a call
without producing one.
"""

from __future__ import annotations

import json
import logging
import re
from urllib.parse import parse_qsl

from resource_agent.models import CallPlan

logger = logging.getLogger(__name__)

_FENCED_BLOCK_RE = re.compile(r"```(.*?)```", re.DOTALL)
_CALL_RULE = r"(GET|POST|PUT|PATCH|DELETE)\s+(/\S+)"
_CALL_LINE_RE = re.compile(rf"^{_CALL_RULE}", re.IGNORECASE)
_CALL_ANYWHERE_RE = re.compile(rf"\b{_CALL_RULE}", re.IGNORECASE)
_INFO_STRING_RE = re.compile(r"^[A-Za-z0-9_+.-]+$")
_BODY_PREFIX_RE = re.compile(r"^body:\s*", re.IGNORECASE)


def _fenced_blocks(text: str) -> list[str]:
    return _FENCED_BLOCK_RE.findall(text)


def _block_lines(block: str) -> list[str]:
    """Non-blank, trimmed lines of a block with any language tag removed."""
    lines = [line.strip() for line in block.splitlines()]
    lines = [line for line in lines if line]
    # ```http / ```bash style info strings
    if lines and _INFO_STRING_RE.match(lines[0]) and not _CALL_LINE_RE.match(lines[0]):
        lines = lines[1:]
    return lines


def _split_endpoint(raw_path: str) -> tuple[str, dict[str, str] | None]:
    path = raw_path.rstrip("` \t")
    if "?" not in path:
        return path, None
    endpoint, query = path.split("?", 1)
    # dict() keeps the last occurrence of a repeated key
    return endpoint, dict(parse_qsl(query, keep_blank_values=True))


def _parse_body(lines: list[str]) -> object | None:
    for index, line in enumerate(lines):
        if not line.lower().startswith("body:"):
            continue
        raw = _BODY_PREFIX_RE.sub("", "\n".join(lines[index:]), count=1).strip()
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring malformed request body (%s): %.200s", exc, raw)
            return None
    return None


def _plan_from_block(block: str) -> CallPlan | None:
    lines = _block_lines(block)
    if not lines:
        return None
    match = _CALL_LINE_RE.match(lines[0])
    if not match:
        return None
    endpoint, params = _split_endpoint(match.group(2))
    body = _parse_body(lines[1:])
    return CallPlan(method=match.group(1).upper(), endpoint=endpoint, params=params, body=body)


def extract_call_plan(text: str | None) -> CallPlan | None:
    """Return the first CallPlan found in *text*, or ``None``.

    Never raises on malformed input.
    """
    if not text:
        return None

    for block in _fenced_blocks(text):
        plan = _plan_from_block(block)
        if plan is not None:
            logger.debug("Extracted call from fenced block: %s", plan.describe())
            return plan

    match = _CALL_ANYWHERE_RE.search(text)
    if match:
        # Prose around the call may end the sentence right after the path
        endpoint, params = _split_endpoint(match.group(2).rstrip("`.,;:) \t"))
        plan = CallPlan(method=match.group(1).upper(), endpoint=endpoint, params=params)
        logger.debug("Extracted call from raw text: %s", plan.describe())
        return plan

    logger.debug("No call plan found in model reply")
    return None


def strip_code_blocks(text: str) -> str:
    """Collapse *text* to its prose, for user-facing transcript entries."""
    prose = _FENCED_BLOCK_RE.sub("", text)
    return re.sub(r"\s*\n+\s*", " ", prose).strip()


# ── Intent-without-plan heuristic ────────────────────────────────────

_INTENT_PHRASE_RE = re.compile(
    r"\b(?:i['’]?ll|i\s+will|let\s+me|i['’]?m\s+going\s+to|i\s+am\s+going\s+to)\s+"
    r"(?:\w+\s+){0,2}?"
    r"(?:make|call|fetch|get|retrieve|query|look\s+up|create|update|delete|post|"
    r"execute|check|search|send|restore)\b",
    re.IGNORECASE,
)
_API_VOCABULARY_RE = re.compile(r"\b(?:api\s+call|endpoint|request)\b", re.IGNORECASE)

INTENT_THRESHOLD = 2


def score_call_intent(text: str) -> int:
    """Score how strongly *text* announces an API call.

    +2 for a first-person intent phrase followed by an action verb,
    +2 for a fenced block (it failed to parse, or there would be a plan),
    +1 for API vocabulary.
    """
    if not text:
        return 0
    score = 0
    if _INTENT_PHRASE_RE.search(text):
        score += 2
    if _fenced_blocks(text):
        score += 2
    if _API_VOCABULARY_RE.search(text):
        score += 1
    return score


def signals_call_intent(text: str, threshold: int = INTENT_THRESHOLD) -> bool:
    """True when a reply with no extractable plan still announces a call."""
    return score_call_intent(text) >= threshold
