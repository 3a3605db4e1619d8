"""LangGraph orchestration loop for the Resource API agent.

Architecture:
  One user request runs through a LangGraph StateGraph whose nodes share an
  explicit ``LoopState``:

    1. **call_model**        — renders any pending call result into the
                               context, invokes the model and extracts a
                               CallPlan from its reply
    2. **execute**           — runs the plan, records it in Pattern Memory,
                               updates per-endpoint failure trackers
    3. **correct_intent**    — the reply announced a call but carried no
                               parseable plan; inject the exact call format
    4. **check_confidence**  — the reply had no plan; ask CONFIDENT /
                               NOT CONFIDENT
    5. **summarize**         — request the final user-facing summary
    6. **exhausted**         — turn budget spent; explain what failed

  Routing:
    call_model → (plan?)               → execute → call_model | exhausted
               → (announced a call?)   → correct_intent → call_model | exhausted
               → (otherwise)           → check_confidence → summarize → END
                                                          → call_model | exhausted

  Turn accounting:
    Every execute / correct_intent / not-confident step counts one turn.  A
    400/422 result is exempt while ``validation_retries`` is below
    ``max_validation_retries``; that ceiling, not the turn counter, bounds
    validation recovery.

  Memory:
    No checkpointer.  The loop state lives for one ``run`` call; callers pass
    earlier transcripts back in as ``history``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from resource_agent.api_reference import find_sections, format_sections
from resource_agent.classifier import classify_error, is_validation_error
from resource_agent.config import (
    ANTHROPIC_API_KEY,
    INTENT_CORRECTION_ENABLED,
    MAX_TURNS,
    MAX_VALIDATION_RETRIES,
    MEMORY_STORE_PATH,
    MODEL_NAME,
    MODEL_TIMEOUT_SECONDS,
)
from resource_agent.extractor import extract_call_plan, signals_call_intent, strip_code_blocks
from resource_agent.models import (
    CallPlan,
    ErrorCategory,
    ExecutionResult,
    FailureTracker,
    LoopOutcome,
    LoopStatus,
    TranscriptEntry,
)
from resource_agent.prompts import (
    FORMAT_CORRECTION_PROMPT,
    MODEL_FAILURE_PLACEHOLDER,
    build_confidence_prompt,
    build_exhausted_message,
    build_summary_prompt,
    get_system_prompt,
    render_payload,
)
from resource_agent.services.metrics import metrics
from resource_agent.services.pattern_memory import PatternMemory, resource_segment
from resource_agent.services.resource_client import ResourceClient, get_resource_client
from resource_agent.services.store import FileStore

logger = logging.getLogger(__name__)

METRICS_SERVICE = "anthropic"

# Leading markdown/punctuation is skipped; anything after the verdict is rationale.
_VERDICT_RE = re.compile(r"^\W*(NOT\s+CONFIDENT|CONFIDENT)\b", re.IGNORECASE)


# ── State schema ─────────────────────────────────────────────────────


class PendingResult(TypedDict):
    """An executed call waiting to be shown to the model on the next step."""

    result: ExecutionResult
    attempt: int
    max_retries: int
    adaptation: str | None
    learned: str | None
    advisories: list[str]
    reference: str


class LoopState(TypedDict):
    """The state that flows through the graph for one user request.

    ``messages`` uses the ``add_messages`` reducer so nodes only return what
    they append.  Every other key is replaced wholesale, so nodes build new
    lists/dicts instead of mutating the ones they were given.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    question: str
    transcript: list[TranscriptEntry]
    turn: int
    validation_retries: int
    model_calls: int
    failures: dict[str, FailureTracker]
    failed_attempts: list[str]
    pending: PendingResult | None
    reply: str
    plan: CallPlan | None
    confident: bool
    answer: str
    status: str


# ── Message helpers ──────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the model client used for every step of the loop."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=2048,
    )


def _to_model_messages(messages: list[AnyMessage]) -> list[AnyMessage]:
    """Keep the leading system prompt; send later system notes as tagged human turns.

    The Anthropic API accepts a single system prompt at the start of the
    conversation.
    """
    converted: list[AnyMessage] = []
    for index, message in enumerate(messages):
        if isinstance(message, SystemMessage) and index > 0:
            converted.append(HumanMessage(content=f"[system] {message.content}"))
        else:
            converted.append(message)
    return converted


def _content_text(content: Any) -> str:
    """Flatten a model response's content (plain string or content blocks)."""
    if isinstance(content, str):
        return content.strip()
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def _history_to_messages(history: list[TranscriptEntry]) -> list[AnyMessage]:
    """Turn an earlier transcript into alternating human / assistant messages."""
    messages: list[AnyMessage] = []
    for entry in history:
        text = entry.content
        if entry.plan is not None:
            outcome = "succeeded" if entry.result and entry.result.success else "failed"
            text = f"{text}\n(called {entry.plan.describe()}: {outcome})".strip()
        if entry.role == "user":
            messages.append(HumanMessage(content=text))
        elif messages and isinstance(messages[-1], AIMessage):
            messages[-1] = AIMessage(content=f"{messages[-1].content}\n\n{text}")
        else:
            messages.append(AIMessage(content=text))
    return messages


def _is_confident(text: str | None) -> bool:
    """Read the verdict from the first word(s) of the confidence reply."""
    if not text:
        return False
    match = _VERDICT_RE.match(text)
    return bool(match) and not match.group(1).upper().startswith("NOT")


def _describe_failure(result: ExecutionResult) -> str:
    return f"{result.plan_executed.describe()} -> {result.error}"


def render_pending(pending: PendingResult) -> str:
    """Render an executed call for the model's next step."""
    result = pending["result"]
    plan = result.plan_executed
    timing = f"{result.execution_time_ms:.0f}ms"

    if result.success:
        lines = [
            f"API CALL RESULT ({plan.describe()} -> HTTP {result.http_status}, {timing}):",
            render_payload(result.data),
        ]
    else:
        status = f"HTTP {result.http_status}" if result.http_status else "no response"
        lines = [
            f"API CALL FAILED ({plan.describe()} -> {status}, {timing})",
            f"Error: {result.error}",
        ]
        if result.data not in (None, ""):
            lines.append(f"Response body: {render_payload(result.data, limit=2000)}")
        if pending["adaptation"]:
            lines.append(
                f"SUGGESTED FIX (attempt {pending['attempt']}/{pending['max_retries']}): "
                f"{pending['adaptation']}"
            )
        else:
            lines.append("Max retries exceeded for this error type. Consider a different approach.")
        if pending["learned"]:
            lines.append(f"LEARNED SOLUTION: {pending['learned']}")
        if pending["reference"]:
            lines.append(f"Relevant API reference:\n{pending['reference']}")

    if pending["advisories"]:
        lines.append("Memory advisory for this call:")
        lines.extend(f"- {s}" for s in pending["advisories"])
    return "\n".join(lines)


# ── Agent ────────────────────────────────────────────────────────────


class ResourceAgent:
    """Drives one user request from question to final answer or exhaustion.

    Holds no per-conversation state of its own, so one instance can serve
    concurrent conversations that share the same PatternMemory.
    """

    def __init__(
        self,
        memory: PatternMemory,
        client: ResourceClient,
        llm: Any = None,
        *,
        max_turns: int = MAX_TURNS,
        max_validation_retries: int = MAX_VALIDATION_RETRIES,
        intent_correction: bool = INTENT_CORRECTION_ENABLED,
        model_timeout: float = MODEL_TIMEOUT_SECONDS,
    ) -> None:
        self.memory = memory
        self.client = client
        self._llm = llm if llm is not None else _build_llm()
        self.max_turns = max_turns
        self.max_validation_retries = max_validation_retries
        self.intent_correction = intent_correction
        self._model_timeout = model_timeout
        self._graph = self._build_graph()

    # ── Model access ─────────────────────────────────────────────────

    async def _invoke_model(self, messages: list[AnyMessage], operation: str) -> str | None:
        """Call the model; ``None`` on failure or timeout.  Cancellation propagates."""
        t0 = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._llm.ainvoke(_to_model_messages(messages)),
                timeout=self._model_timeout,
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                METRICS_SERVICE, operation,
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Model call %s failed: %s", operation, str(exc) or type(exc).__name__)
            return None

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success(METRICS_SERVICE, operation, latency_ms=elapsed)
        logger.debug("Model call %s responded in %.0fms", operation, elapsed)
        return _content_text(response.content)

    # ── Nodes ────────────────────────────────────────────────────────

    async def _call_model(self, state: LoopState) -> dict:
        appended: list[AnyMessage] = []
        if state["pending"] is not None:
            appended.append(SystemMessage(content=render_pending(state["pending"])))

        text = await self._invoke_model(state["messages"] + appended, "loop_step")
        reply = text or MODEL_FAILURE_PLACEHOLDER
        plan = extract_call_plan(text) if text else None
        logger.debug(
            "Turn %d: model replied (%d chars), plan=%s",
            state["turn"], len(reply), plan.describe() if plan else None,
        )
        return {
            "messages": appended,
            "pending": None,
            "reply": reply,
            "plan": plan,
            "model_calls": state["model_calls"] + 1,
        }

    async def _execute(self, state: LoopState) -> dict:
        plan = state["plan"]
        reply = state["reply"]

        validation = self.memory.validate_api_call(plan)
        advisories = list(validation.suggestions) if not validation.is_valid else []

        result = await self.client.execute(plan)

        failures = dict(state["failures"])
        failed_attempts = list(state["failed_attempts"])
        pending = PendingResult(
            result=result, attempt=0, max_retries=0, adaptation=None,
            learned=None, advisories=advisories, reference="",
        )

        if result.success:
            await asyncio.to_thread(self.memory.record_success, plan, result)
            failures.pop(plan.key, None)
        else:
            strategy = classify_error(result)
            tracker = failures.get(plan.key)
            if tracker is None or tracker.strategy.category != strategy.category:
                tracker = FailureTracker(strategy=strategy)
            tracker = tracker.model_copy(update={"count": tracker.count + 1})
            failures[plan.key] = tracker

            adaptation = tracker.current_adaptation if tracker.within_budget else None
            # Read back a fix learned earlier before this failure is recorded
            learned = self.memory.learned_remediation(plan, result.error)
            await asyncio.to_thread(
                self.memory.record_failure, plan, result, remediation=adaptation
            )
            failed_attempts.append(_describe_failure(result))

            reference = ""
            if strategy.category is ErrorCategory.NOT_FOUND:
                query = f"{resource_segment(plan.endpoint) or ''} list show search endpoint"
                reference = format_sections(find_sections(query))

            pending.update(
                attempt=tracker.count,
                max_retries=strategy.max_retries,
                adaptation=adaptation,
                learned=learned,
                reference=reference,
            )

        turn = state["turn"]
        validation_retries = state["validation_retries"]
        if is_validation_error(result) and validation_retries < self.max_validation_retries:
            validation_retries += 1
            logger.debug(
                "Validation retry %d/%d for %s (turn stays at %d)",
                validation_retries, self.max_validation_retries, plan.key, turn,
            )
        else:
            turn += 1

        entry = TranscriptEntry(
            role="assistant",
            content=strip_code_blocks(reply) or plan.describe(),
            plan=plan,
            result=result,
        )
        return {
            "messages": [AIMessage(content=reply)],
            "transcript": state["transcript"] + [entry],
            "failures": failures,
            "failed_attempts": failed_attempts,
            "pending": pending,
            "turn": turn,
            "validation_retries": validation_retries,
        }

    async def _correct_intent(self, state: LoopState) -> dict:
        snippet = state["reply"][:120].replace("\n", " ")
        logger.info("Reply announced a call without a parseable call block; correcting")
        return {
            "messages": [AIMessage(content=state["reply"]), SystemMessage(content=FORMAT_CORRECTION_PROMPT)],
            "failed_attempts": state["failed_attempts"] + [f'Announced a call but gave no call block: "{snippet}"'],
            "turn": state["turn"] + 1,
        }

    async def _check_confidence(self, state: LoopState) -> dict:
        reply_message = AIMessage(content=state["reply"])
        prompt = build_confidence_prompt(
            question=state["question"],
            turn=state["turn"] + 1,
            max_turns=self.max_turns,
            failed_attempts=state["failed_attempts"],
            has_insights=self.memory.pattern_count > 0,
        )
        verdict = await self._invoke_model(
            state["messages"] + [reply_message, SystemMessage(content=prompt)],
            "confidence_check",
        )
        confident = _is_confident(verdict)
        logger.debug("Confidence check at turn %d: %s", state["turn"], "CONFIDENT" if confident else "NOT CONFIDENT")

        update: dict[str, Any] = {
            "confident": confident,
            "model_calls": state["model_calls"] + 1,
        }
        if confident:
            update["messages"] = [reply_message]
            return update

        rationale = verdict or "NOT CONFIDENT (the confidence check did not complete)"
        update["messages"] = [
            reply_message,
            SystemMessage(
                content=(
                    f"Confidence check: {rationale}\n"
                    "Keep working on the request. Make another API call if more information is needed."
                )
            ),
        ]
        update["turn"] = state["turn"] + 1
        return update

    async def _summarize(self, state: LoopState) -> dict:
        summary = await self._invoke_model(
            state["messages"] + [SystemMessage(content=build_summary_prompt(state["question"]))],
            "final_summary",
        )
        answer = (
            strip_code_blocks(summary or "")
            or strip_code_blocks(state["reply"])
            or state["reply"]
            or MODEL_FAILURE_PLACEHOLDER
        )
        return {
            "answer": answer,
            "status": LoopStatus.ANSWERED.value,
            "model_calls": state["model_calls"] + 1,
            "messages": [AIMessage(content=answer)],
            "transcript": state["transcript"] + [TranscriptEntry(role="assistant", content=answer)],
        }

    async def _exhausted(self, state: LoopState) -> dict:
        answer = build_exhausted_message(self.max_turns, state["failed_attempts"])
        logger.info(
            "Turn budget exhausted after %d turns (%d failed attempts)",
            state["turn"], len(state["failed_attempts"]),
        )
        return {
            "answer": answer,
            "status": LoopStatus.EXHAUSTED.value,
            "messages": [AIMessage(content=answer)],
            "transcript": state["transcript"] + [TranscriptEntry(role="assistant", content=answer)],
        }

    # ── Conditional edges ────────────────────────────────────────────

    def _route_reply(self, state: LoopState) -> str:
        if state["plan"] is not None:
            return "execute"
        if self.intent_correction and signals_call_intent(state["reply"]):
            return "correct_intent"
        return "check_confidence"

    def _continue_or_exhaust(self, state: LoopState) -> str:
        if state["turn"] >= self.max_turns:
            return "exhausted"
        return "call_model"

    def _after_confidence(self, state: LoopState) -> str:
        if state["confident"]:
            return "summarize"
        return self._continue_or_exhaust(state)

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(LoopState)

        graph.add_node("call_model", self._call_model)
        graph.add_node("execute", self._execute)
        graph.add_node("correct_intent", self._correct_intent)
        graph.add_node("check_confidence", self._check_confidence)
        graph.add_node("summarize", self._summarize)
        graph.add_node("exhausted", self._exhausted)

        graph.set_entry_point("call_model")

        graph.add_conditional_edges(
            "call_model",
            self._route_reply,
            {
                "execute": "execute",
                "correct_intent": "correct_intent",
                "check_confidence": "check_confidence",
            },
        )
        for node in ("execute", "correct_intent"):
            graph.add_conditional_edges(
                node,
                self._continue_or_exhaust,
                {"call_model": "call_model", "exhausted": "exhausted"},
            )
        graph.add_conditional_edges(
            "check_confidence",
            self._after_confidence,
            {"summarize": "summarize", "call_model": "call_model", "exhausted": "exhausted"},
        )
        graph.add_edge("summarize", END)
        graph.add_edge("exhausted", END)

        return graph.compile()

    @property
    def recursion_limit(self) -> int:
        # Each counted or exempt step visits at most two nodes
        return (self.max_turns + self.max_validation_retries) * 2 + 10

    # ── Entry point ──────────────────────────────────────────────────

    def _initial_state(self, question: str, history: list[TranscriptEntry]) -> LoopState:
        context = "\n\n".join(
            part for part in (self.memory.get_memory_insights(), self.memory.get_global_learnings()) if part
        )
        messages: list[AnyMessage] = [SystemMessage(content=get_system_prompt(context))]
        messages.extend(_history_to_messages(history))
        messages.append(HumanMessage(content=question))
        return LoopState(
            messages=messages,
            question=question,
            transcript=[TranscriptEntry(role="user", content=question)],
            turn=0,
            validation_retries=0,
            model_calls=0,
            failures={},
            failed_attempts=[],
            pending=None,
            reply="",
            plan=None,
            confident=False,
            answer="",
            status="",
        )

    async def run(self, question: str, history: list[TranscriptEntry] | None = None) -> LoopOutcome:
        """Answer *question*, returning the final message and this request's transcript."""
        initial = self._initial_state(question, list(history or []))
        final = await self._graph.ainvoke(initial, config={"recursion_limit": self.recursion_limit})

        outcome = LoopOutcome(
            answer=final["answer"],
            status=LoopStatus(final["status"]),
            transcript=final["transcript"],
            turns=final["turn"],
            validation_retries=final["validation_retries"],
            model_calls=final["model_calls"],
        )
        metrics.record_loop_outcome(outcome.status.value, outcome.turns)
        logger.info(
            "Request finished: %s after %d turns, %d validation retries, %d model calls",
            outcome.status.value, outcome.turns, outcome.validation_retries, outcome.model_calls,
        )
        return outcome


def create_resource_agent(
    memory: PatternMemory | None = None,
    client: ResourceClient | None = None,
) -> ResourceAgent:
    """Build a ResourceAgent wired to the configured model, API and memory store."""
    if memory is None:
        memory = PatternMemory(FileStore(MEMORY_STORE_PATH)).load()
    agent = ResourceAgent(memory=memory, client=client or get_resource_client())
    logger.debug(
        "Resource agent ready: model=%s, max_turns=%d, max_validation_retries=%d",
        MODEL_NAME, agent.max_turns, agent.max_validation_retries,
    )
    return agent
