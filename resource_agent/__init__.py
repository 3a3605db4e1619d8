"""Resource API Agent: answers natural-language requests by calling a REST resource API.

Architecture Overview
=====================

The agent is a **LangGraph** state machine that drives one user request
through repeated model turns:

1. **call_model** — invokes Claude with the running context.  The reply is
   scanned for a call plan: a fenced block whose first line is
   ``<METHOD> /path`` with an optional ``Body:`` JSON payload.
2. **execute** — performs the call with one shared ``httpx.AsyncClient`` and
   feeds the normalized result back into the next model turn.
3. **check_confidence** — when the reply carries no call, the model is asked
   whether it is CONFIDENT enough to answer; if so it writes the final
   summary, otherwise the loop continues until the turn budget runs out.

Key Design Decisions
--------------------
- **Plan extraction**: one verb/path grammar over fenced blocks with a raw
  text fallback.  The "announced a call but gave none" heuristic is a
  separate keyword score that can be switched off.
- **Failure handling**: every failure is classified (validation, not found,
  authentication, network, server) into a retry policy kept as data; the
  policy's hint for the current attempt goes back to the model.
- **Pattern Memory**: per-endpoint success/failure history, persisted as one
  versioned JSON document in a key-value store and injected into every
  system prompt.  It is an explicit handle with ``load()`` / ``flush()``.
- **Validation retries**: 400/422 results get a bounded number of retries
  that do not consume a turn.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``resource_agent/agent.py`` — LangGraph orchestration loop
- ``resource_agent/extractor.py`` — call-plan grammar and intent heuristic
- ``resource_agent/classifier.py`` — error categories and retry policies
- ``resource_agent/models.py`` — pydantic data contracts
- ``resource_agent/prompts.py`` — prompt text
- ``resource_agent/api_reference.py`` — resource API reference for the model
- ``resource_agent/config.py`` — configuration from environment variables
- ``resource_agent/server.py`` — FastAPI application
- ``resource_agent/main.py`` — CLI chat interface
- ``resource_agent/services/`` — HTTP executor, pattern memory, stores, metrics, sessions
- ``resource_agent/api/`` — FastAPI routes and Pydantic schemas
"""
