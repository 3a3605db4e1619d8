"""Data contracts shared by the extractor, executor, classifier, memory and loop.

No business logic lives here beyond small derived properties — pure schema
and validation.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

HTTP_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "PATCH", "DELETE")


# ── Call plan / execution ────────────────────────────────────────────


class CallPlan(BaseModel):
    """One intended invocation of the resource API, extracted from model text."""

    model_config = ConfigDict(frozen=True)

    method: HttpMethod
    endpoint: str = Field(..., description="Path without the query string, e.g. /api/v2/users")
    params: dict[str, Any] | None = Field(default=None, description="Query parameters.")
    body: Any = Field(default=None, description="JSON request payload.")

    @property
    def key(self) -> str:
        """Pattern-memory / retry-counter key: ``METHOD:endpoint``."""
        return f"{self.method}:{self.endpoint}"

    def describe(self) -> str:
        return f"{self.method} {self.endpoint}"


class ExecutionResult(BaseModel):
    """Normalized outcome of executing exactly one CallPlan."""

    model_config = ConfigDict(frozen=True)

    success: bool
    data: Any = None
    error: str | None = None
    http_status: int = 0
    http_status_text: str = ""
    execution_time_ms: float = Field(default=0.0, ge=0)
    request_url: str = ""
    network_error: bool = False
    plan_executed: CallPlan


# ── Error classification ─────────────────────────────────────────────


class ErrorCategory(StrEnum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    SERVER = "server"


class ErrorStrategy(BaseModel):
    """Classification of a failure plus its remediation policy."""

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    adaptations: tuple[str, ...]
    max_retries: int
    progressive_simplification: bool = False

    def adaptation_for(self, attempt: int) -> str:
        """Return the hint for a 1-based *attempt*, clamped to the last hint."""
        index = min(max(attempt, 1) - 1, len(self.adaptations) - 1)
        return self.adaptations[index]


class FailureTracker(BaseModel):
    """Consecutive failures of one (method, endpoint) within a conversation."""

    strategy: ErrorStrategy
    count: int = 0

    @property
    def within_budget(self) -> bool:
        return self.count <= self.strategy.max_retries

    @property
    def current_adaptation(self) -> str:
        return self.strategy.adaptation_for(self.count)


# ── Pattern memory (persisted) ───────────────────────────────────────


class ErrorEntry(BaseModel):
    message: str
    remediation: str = ""
    frequency: int = 0


class CallPattern(BaseModel):
    """Running statistics for one (method, endpoint) pair."""

    method: str
    endpoint: str
    success_count: int = 0
    last_successful_params: dict[str, Any] | None = None
    last_successful_body: Any = None
    common_errors: list[ErrorEntry] = Field(default_factory=list)
    last_updated: float = Field(default_factory=time.time)


class GlobalLearning(BaseModel):
    insight: str
    examples: list[str] = Field(default_factory=list)
    confidence: float = 1.0


MEMORY_DOCUMENT_VERSION = 1


class MemoryDocument(BaseModel):
    """The JSON document Pattern Memory persists under one key."""

    version: int = MEMORY_DOCUMENT_VERSION
    patterns: dict[str, CallPattern] = Field(default_factory=dict)
    global_learnings: list[GlobalLearning] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    confidence: float
    suggestions: list[str] = Field(default_factory=list)
    similar_successful_calls: list[CallPattern] = Field(default_factory=list)


# ── Transcript / loop outcome ────────────────────────────────────────


class TranscriptEntry(BaseModel):
    """One user-visible message, optionally carrying the call that produced it."""

    role: Literal["user", "assistant"]
    content: str
    plan: CallPlan | None = None
    result: ExecutionResult | None = None
    timestamp: float = Field(default_factory=time.time)


class LoopStatus(StrEnum):
    ANSWERED = "answered"
    EXHAUSTED = "exhausted"


class LoopOutcome(BaseModel):
    answer: str
    status: LoopStatus
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    turns: int = 0
    validation_retries: int = 0
    model_calls: int = 0
