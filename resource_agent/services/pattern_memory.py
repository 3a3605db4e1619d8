"""Persisted, cross-session memory of which call shapes succeed or fail.

One ``CallPattern`` is kept per ``METHOD:endpoint`` key.  Successes overwrite
the last-known-good params/body and bump a counter; failures bump a
per-message error counter and may carry the remediation hint that was
suggested for that attempt.  The loop reads it back in three ways:

* ``get_memory_insights`` / ``get_global_learnings`` — text for the system
  prompt,
* ``validate_api_call`` — a confidence score and suggestions for a plan
  before it runs,
* ``learned_remediation`` — a previously suggested fix for an error the
  endpoint has produced before.

The whole document lives under one key of a ``KeyValueStore`` and is
written back synchronously after every mutation.  Mutations hold a
``threading.Lock`` and contain no await points, so concurrent conversations
serialize their read-modify-write cycles and a cancelled task can never
leave a half-applied update behind.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time

from pydantic import ValidationError

from resource_agent.models import (
    MEMORY_DOCUMENT_VERSION,
    CallPattern,
    CallPlan,
    ErrorEntry,
    ExecutionResult,
    GlobalLearning,
    MemoryDocument,
    ValidationResult,
)
from resource_agent.services.store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "api-agent-memory"

BASE_CONFIDENCE = 0.5
CONFIDENCE_PER_SUCCESS = 0.1
MAX_CONFIDENCE = 0.9
VALID_CONFIDENCE_THRESHOLD = 0.6

_VERSION_SEGMENT_RE = re.compile(r"^v\d+$", re.IGNORECASE)


def resource_segment(endpoint: str) -> str | None:
    """Return the resource name of *endpoint*.

    That is the path segment right after the version prefix
    (``/api/v2/users/5`` -> ``users``), or the first non-``api`` segment
    when the path carries no version.
    """
    segments = [s for s in endpoint.split("?", 1)[0].split("/") if s]
    for index, segment in enumerate(segments):
        if _VERSION_SEGMENT_RE.match(segment):
            return segments[index + 1] if index + 1 < len(segments) else None
    for segment in segments:
        if segment.lower() != "api":
            return segment
    return None


def _error_key(result: ExecutionResult) -> str:
    return result.error or f"HTTP {result.http_status}"


def _compact(value: object) -> str:
    return json.dumps(value, separators=(", ", ": "), default=str)


class PatternMemory:
    """Per-endpoint success/failure history backed by a ``KeyValueStore``."""

    def __init__(self, store: KeyValueStore, storage_key: str = DEFAULT_STORAGE_KEY) -> None:
        self._store = store
        self._storage_key = storage_key
        self._doc = MemoryDocument()
        self._lock = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────

    def load(self) -> PatternMemory:
        """Load the persisted document, degrading to an empty memory on any problem."""
        try:
            raw = self._store.get(self._storage_key)
        except (OSError, ValueError):
            logger.warning("Pattern memory could not be read; starting empty", exc_info=True)
            raw = None

        doc = MemoryDocument()
        if raw:
            try:
                doc = MemoryDocument.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning(
                    "Pattern memory under %r is corrupt (%d errors); starting empty",
                    self._storage_key, exc.error_count(),
                )
        if doc.version > MEMORY_DOCUMENT_VERSION:
            logger.warning(
                "Pattern memory document version %d is newer than supported version %d",
                doc.version, MEMORY_DOCUMENT_VERSION,
            )
        with self._lock:
            self._doc = doc
        logger.info(
            "Pattern memory loaded: %d patterns, %d global learnings",
            len(doc.patterns), len(doc.global_learnings),
        )
        return self

    def flush(self) -> None:
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        try:
            self._store.set(self._storage_key, self._doc.model_dump_json())
        except OSError:
            logger.exception("Failed to persist pattern memory")

    def _pattern_locked(self, plan: CallPlan) -> CallPattern:
        pattern = self._doc.patterns.get(plan.key)
        if pattern is None:
            pattern = CallPattern(method=plan.method, endpoint=plan.endpoint)
            self._doc.patterns[plan.key] = pattern
        return pattern

    # ── Recording ────────────────────────────────────────────────────

    def record_success(self, plan: CallPlan, result: ExecutionResult) -> None:
        with self._lock:
            pattern = self._pattern_locked(plan)
            pattern.last_successful_params = plan.params
            pattern.last_successful_body = plan.body
            pattern.success_count += 1
            pattern.last_updated = time.time()
            self._save_locked()
        logger.debug("Memory: %s success #%d", plan.key, pattern.success_count)

    def record_failure(
        self,
        plan: CallPlan,
        result: ExecutionResult,
        remediation: str | None = None,
    ) -> None:
        message = _error_key(result)
        with self._lock:
            pattern = self._pattern_locked(plan)
            entry = next((e for e in pattern.common_errors if e.message == message), None)
            if entry is None:
                entry = ErrorEntry(message=message)
                pattern.common_errors.append(entry)
            entry.frequency += 1
            if remediation:
                entry.remediation = remediation
            pattern.last_updated = time.time()
            self._save_locked()
        logger.debug("Memory: %s failure %r x%d", plan.key, message, entry.frequency)

    def add_global_learning(self, insight: str, examples: list[str] | None = None) -> None:
        with self._lock:
            self._doc.global_learnings.append(
                GlobalLearning(insight=insight, examples=list(examples or []))
            )
            self._save_locked()

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def pattern_count(self) -> int:
        return len(self._doc.patterns)

    def get_pattern(self, method: str, endpoint: str) -> CallPattern | None:
        with self._lock:
            pattern = self._doc.patterns.get(f"{method.upper()}:{endpoint}")
            return pattern.model_copy(deep=True) if pattern else None

    def get_relevant_patterns(self, plan: CallPlan) -> list[CallPattern]:
        """Exact match first, then patterns on the same resource by success count."""
        resource = resource_segment(plan.endpoint)
        with self._lock:
            exact = self._doc.patterns.get(plan.key)
            related = [
                pattern
                for key, pattern in self._doc.patterns.items()
                if key != plan.key
                and resource is not None
                and resource_segment(pattern.endpoint) == resource
            ]
            related.sort(key=lambda p: p.success_count, reverse=True)
            ordered = ([exact] if exact else []) + related
            return [p.model_copy(deep=True) for p in ordered]

    def validate_api_call(self, plan: CallPlan) -> ValidationResult:
        relevant = self.get_relevant_patterns(plan)
        suggestions: list[str] = []
        confidence = BASE_CONFIDENCE

        if relevant:
            top = relevant[0]
            confidence = min(MAX_CONFIDENCE, BASE_CONFIDENCE + top.success_count * CONFIDENCE_PER_SUCCESS)

            frequent = sorted(
                (e for e in top.common_errors if e.frequency > 1),
                key=lambda e: e.frequency,
                reverse=True,
            )
            if frequent:
                suggestions.append(
                    "Common issues with this endpoint: " + ", ".join(e.message for e in frequent)
                )
                suggestions.extend(
                    f'For "{e.message}": {e.remediation}' for e in frequent if e.remediation
                )
            if top.last_successful_params and not plan.params:
                suggestions.append(f"Consider adding params like: {_compact(top.last_successful_params)}")
            if top.last_successful_body is not None and plan.body is None:
                suggestions.append(f"Consider body format like: {_compact(top.last_successful_body)}")

        return ValidationResult(
            is_valid=confidence > VALID_CONFIDENCE_THRESHOLD,
            confidence=confidence,
            suggestions=suggestions,
            similar_successful_calls=relevant[:3],
        )

    def learned_remediation(self, plan: CallPlan, error: str | None) -> str | None:
        """Return a remediation previously suggested for a matching error, if any."""
        if not error:
            return None
        needle = error.lower()
        for pattern in self.get_relevant_patterns(plan):
            for entry in pattern.common_errors:
                if entry.remediation and needle in entry.message.lower():
                    return entry.remediation
        return None

    # ── Prompt rendering ─────────────────────────────────────────────

    def get_memory_insights(self) -> str:
        with self._lock:
            patterns = [p.model_copy(deep=True) for p in self._doc.patterns.values()]

        total = sum(p.success_count for p in patterns)
        lines = [f"**API MEMORY INSIGHTS** ({total} successful calls learned):"]

        top_errors = sorted(
            (e for p in patterns for e in p.common_errors),
            key=lambda e: e.frequency,
            reverse=True,
        )[:5]
        if top_errors:
            lines.append("")
            lines.append("Most common errors and solutions:")
            for i, error in enumerate(top_errors, 1):
                solution = error.remediation or "No solution learned yet"
                lines.append(f'{i}. "{error.message}" ({error.frequency}x) - {solution}')

        reliable = sorted(
            (p for p in patterns if p.success_count > 0),
            key=lambda p: p.success_count,
            reverse=True,
        )[:3]
        if reliable:
            lines.append("")
            lines.append("Most reliable API patterns:")
            for i, pattern in enumerate(reliable, 1):
                lines.append(f"{i}. {pattern.method} {pattern.endpoint} ({pattern.success_count} successes)")
                if pattern.last_successful_params:
                    lines.append(f"   Last successful params: {_compact(pattern.last_successful_params)}")
                if pattern.last_successful_body is not None:
                    lines.append(f"   Last successful body: {_compact(pattern.last_successful_body)}")

        return "\n".join(lines)

    def get_global_learnings(self) -> str:
        with self._lock:
            learnings = sorted(self._doc.global_learnings, key=lambda g: g.confidence, reverse=True)
            if not learnings:
                return ""
            lines = ["**LEARNED INSIGHTS**:"]
            lines.extend(f"{i}. {g.insight}" for i, g in enumerate(learnings, 1))
        return "\n".join(lines)
