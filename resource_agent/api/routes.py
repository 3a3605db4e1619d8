"""FastAPI route definitions for the Resource API agent."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from resource_agent.agent import ResourceAgent
from resource_agent.api.schemas import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    LearningRequest,
    LearningResponse,
    MemoryResponse,
)
from resource_agent.services.session_cache import SessionCache

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_agent(request: Request) -> ResourceAgent:
    """Retrieve the agent built during the FastAPI lifespan (see ``server.py``)."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return agent


def _get_sessions(request: Request) -> SessionCache:
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        sessions = request.app.state.sessions = SessionCache()
    return sessions


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one request through the agent loop.

    The session's earlier transcript is passed back in as history, and the
    entries this request produced are appended to it afterwards.  A failed
    request leaves the session untouched.
    """
    agent = _get_agent(http_request)
    sessions = _get_sessions(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        outcome = await agent.run(request.message, history=sessions.get(request.session_id))
    except Exception as e:
        # Full traceback stays server-side
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    sessions.append(request.session_id, outcome.transcript)
    logger.info(
        "[%s] session=%s status=%s turns=%d",
        request_id, request.session_id, outcome.status.value, outcome.turns,
    )
    return ChatResponse(
        reply=outcome.answer,
        session_id=request.session_id,
        status=outcome.status,
        turns=outcome.turns,
        transcript=outcome.transcript,
    )


@router.get("/memory", response_model=MemoryResponse)
async def memory_insights(http_request: Request):
    """Show the pattern-memory text the agent currently starts each request with."""
    memory = _get_agent(http_request).memory
    return MemoryResponse(
        pattern_count=memory.pattern_count,
        insights=memory.get_memory_insights(),
        global_learnings=memory.get_global_learnings(),
    )


@router.post("/memory/learnings", response_model=LearningResponse, status_code=201)
async def add_learning(request: LearningRequest, http_request: Request):
    """Record a manually curated insight about the resource API."""
    memory = _get_agent(http_request).memory
    # The write flushes to the store synchronously
    await asyncio.to_thread(memory.add_global_learning, request.insight, request.examples)
    logger.info("Global learning recorded: %s", request.insight[:80])
    return LearningResponse(insight=request.insight)
