"""FastAPI server for the Resource API agent.

Run with:
    uvicorn resource_agent.server:app --reload --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from resource_agent.agent import create_resource_agent
from resource_agent.api.routes import router
from resource_agent.config import (
    CORS_ORIGINS,
    MEMORY_STORE_PATH,
    SERVER_HOST,
    SERVER_PORT,
    SESSION_CACHE_MAX_BYTES,
)
from resource_agent.services.metrics import metrics
from resource_agent.services.pattern_memory import PatternMemory
from resource_agent.services.resource_client import ResourceClient
from resource_agent.services.session_cache import SessionCache
from resource_agent.services.store import FileStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: load Pattern Memory, open the HTTP client, build the agent.

    Shutdown flushes memory and metrics and closes the HTTP client, so
    nothing learned during the process lifetime is lost.
    """
    logger.info("Loading pattern memory from %s", MEMORY_STORE_PATH)
    memory = PatternMemory(FileStore(MEMORY_STORE_PATH)).load()
    client = ResourceClient()
    application.state.agent = create_resource_agent(memory=memory, client=client)
    application.state.sessions = SessionCache(max_bytes=SESSION_CACHE_MAX_BYTES)
    logger.info("Agent ready (resource API at %s).", client.base_url)
    try:
        yield
    finally:
        memory.flush()
        await client.aclose()
        metrics.flush()
        logger.info("Shutdown complete.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Resource API Agent",
    description=(
        "Conversational agent that answers requests by calling a REST "
        "resource API and learns which call shapes work."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) to every request and response for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Resource API Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting Resource API agent server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "resource_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
