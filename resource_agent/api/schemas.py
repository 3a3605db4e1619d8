"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from resource_agent.models import LoopStatus, TranscriptEntry


class ChatRequest(BaseModel):
    """Incoming request for the agent."""

    message: str = Field(..., min_length=1, max_length=4000, description="The user's request")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )


class ChatResponse(BaseModel):
    """Final answer plus every transcript entry this request produced."""

    reply: str = Field(..., description="The agent's final user-visible message")
    session_id: str
    status: LoopStatus
    turns: int = Field(..., description="Turns consumed by this request")
    transcript: list[TranscriptEntry] = Field(
        default_factory=list,
        description="Entries added by this request, with the calls and results behind them",
    )


class MemoryResponse(BaseModel):
    """What Pattern Memory currently knows, as injected into the system prompt."""

    pattern_count: int
    insights: str
    global_learnings: str


class LearningRequest(BaseModel):
    insight: str = Field(..., min_length=1, max_length=1000)
    examples: list[str] = Field(default_factory=list, max_length=20)


class LearningResponse(BaseModel):
    status: str = "recorded"
    insight: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "resource-api-agent"
