"""Tests for the LangGraph orchestration loop.

Covers:
  - Message helpers (system-note conversion, content flattening, history)
  - Answering, executing calls and feeding results back
  - Validation-error retries and the turn budget
  - Intent correction, model failures, timeouts and cancellation
"""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from resource_agent.agent import (
    ResourceAgent,
    _content_text,
    _history_to_messages,
    _is_confident,
    _to_model_messages,
)
from resource_agent.models import CallPlan, ExecutionResult, LoopStatus, TranscriptEntry
from resource_agent.prompts import MODEL_FAILURE_PLACEHOLDER
from resource_agent.services.pattern_memory import PatternMemory
from resource_agent.services.store import InMemoryStore

USERS_CALL = "Let me check.\n```\nGET /api/v2/users?limit=5\n```"
JOBS_CALL = 'Creating the job.\n```\nPOST /api/v2/jobs\nBody: {"title": "Fix roof"}\n```'


# ── Helpers ──────────────────────────────────────────────────────────


def _mock_llm(*replies):
    """LLM whose ``ainvoke`` returns *replies* in order (exceptions are raised)."""
    llm = MagicMock()
    llm.ainvoke = AsyncMock(
        side_effect=[r if isinstance(r, Exception) else AIMessage(content=r) for r in replies]
    )
    return llm


def _repeating_llm(reply: str):
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=AIMessage(content=reply))
    return llm


def _mock_client(status: int = 200, data=None, error: str | None = None):
    """Client whose ``execute`` answers every plan with the same outcome."""

    async def respond(plan: CallPlan) -> ExecutionResult:
        success = 200 <= status < 300
        return ExecutionResult(
            success=success,
            data=data,
            error=None if success else (error or f"HTTP {status}"),
            http_status=status,
            execution_time_ms=12.0,
            request_url=f"http://api.test{plan.endpoint}",
            plan_executed=plan,
        )

    client = MagicMock()
    client.execute = AsyncMock(side_effect=respond)
    return client


def _memory() -> PatternMemory:
    return PatternMemory(InMemoryStore()).load()


def _agent(llm, client=None, memory=None, **kwargs) -> ResourceAgent:
    return ResourceAgent(
        memory=memory or _memory(),
        client=client or _mock_client(),
        llm=llm,
        **kwargs,
    )


def _sent(llm, call_index: int) -> list:
    """Messages passed to the model on the given call."""
    return llm.ainvoke.call_args_list[call_index].args[0]


# ── Message helpers ──────────────────────────────────────────────────


class TestMessageHelpers:
    def test_later_system_messages_become_tagged_human_turns(self):
        converted = _to_model_messages(
            [SystemMessage(content="prompt"), HumanMessage(content="q"), SystemMessage(content="note")]
        )
        assert isinstance(converted[0], SystemMessage)
        assert isinstance(converted[2], HumanMessage)
        assert converted[2].content == "[system] note"

    def test_content_text_from_blocks(self):
        content = [{"type": "text", "text": "Hello "}, {"type": "tool_use", "id": "x"}, "world"]
        assert _content_text(content) == "Hello world"
        assert _content_text("  plain  ") == "plain"

    @pytest.mark.parametrize(
        ("verdict", "expected"),
        [
            ("CONFIDENT - I have the list", True),
            ("confident", True),
            ("NOT CONFIDENT - the search failed", False),
            ("I am not sure", False),
            ("CONFIDENT, though not confident about totals", True),
            ("I'm not fully confident", False),
            ("**CONFIDENT** - done", True),
            ("Not confident yet", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_confident(self, verdict, expected):
        assert _is_confident(verdict) is expected

    def test_history_merges_consecutive_assistant_entries(self):
        plan = CallPlan(method="GET", endpoint="/api/v2/users")
        result = ExecutionResult(success=True, http_status=200, plan_executed=plan)
        history = [
            TranscriptEntry(role="user", content="How many users?"),
            TranscriptEntry(role="assistant", content="Checking.", plan=plan, result=result),
            TranscriptEntry(role="assistant", content="There are 2 users."),
        ]
        messages = _history_to_messages(history)
        assert [type(m) for m in messages] == [HumanMessage, AIMessage]
        assert "(called GET /api/v2/users: succeeded)" in messages[1].content
        assert messages[1].content.endswith("There are 2 users.")


# ── Answering ────────────────────────────────────────────────────────


class TestAnswering:
    @pytest.mark.asyncio
    async def test_direct_answer(self):
        llm = _mock_llm("Hello! Ask me about your data.", "CONFIDENT", "Hello! How can I help?")
        agent = _agent(llm)

        outcome = await agent.run("hi")

        assert outcome.status is LoopStatus.ANSWERED
        assert outcome.answer == "Hello! How can I help?"
        assert outcome.turns == 0
        assert outcome.model_calls == 3
        assert [e.role for e in outcome.transcript] == ["user", "assistant"]
        agent.client.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_call_result_is_fed_back(self):
        llm = _mock_llm(USERS_CALL, "There are 2 users.", "CONFIDENT", "There are 2 users: Ann and Bob.")
        client = _mock_client(data={"data": [{"name": "Ann"}, {"name": "Bob"}]})
        memory = _memory()
        agent = _agent(llm, client=client, memory=memory)

        outcome = await agent.run("How many users are there?")

        plan = client.execute.await_args.args[0]
        assert plan == CallPlan(method="GET", endpoint="/api/v2/users", params={"limit": "5"})

        note = _sent(llm, 1)[-1]
        assert isinstance(note, HumanMessage)
        assert note.content.startswith("[system] API CALL RESULT (GET /api/v2/users -> HTTP 200")
        assert '"Ann"' in note.content

        assert outcome.status is LoopStatus.ANSWERED
        assert outcome.turns == 1
        assert outcome.answer == "There are 2 users: Ann and Bob."
        call_entry = outcome.transcript[1]
        assert call_entry.content == "Let me check."
        assert call_entry.plan == plan
        assert call_entry.result.success is True
        assert memory.get_pattern("GET", "/api/v2/users").success_count == 1

    @pytest.mark.asyncio
    async def test_only_one_system_prompt_is_sent(self):
        llm = _mock_llm(USERS_CALL, "Done.", "CONFIDENT", "Done.")
        await _agent(llm).run("list users")
        for call in llm.ainvoke.call_args_list:
            messages = call.args[0]
            assert isinstance(messages[0], SystemMessage)
            assert not any(isinstance(m, SystemMessage) for m in messages[1:])
            assert isinstance(messages[-1], HumanMessage)

    @pytest.mark.asyncio
    async def test_system_prompt_carries_memory(self):
        memory = _memory()
        memory.add_global_learning("Users are called crew members")
        llm = _mock_llm("Hi.", "CONFIDENT", "Hi.")
        await _agent(llm, memory=memory).run("hi")
        system = _sent(llm, 0)[0].content
        assert "**API MEMORY INSIGHTS**" in system
        assert "Users are called crew members" in system

    @pytest.mark.asyncio
    async def test_history_precedes_question(self):
        history = [
            TranscriptEntry(role="user", content="Hi"),
            TranscriptEntry(role="assistant", content="Hello"),
        ]
        llm = _mock_llm("Sure.", "CONFIDENT", "Sure.")
        await _agent(llm).run("And now?", history=history)
        sent = _sent(llm, 0)
        assert [m.content for m in sent[1:]] == ["Hi", "Hello", "And now?"]

    @pytest.mark.asyncio
    async def test_empty_summary_falls_back_to_last_reply(self):
        llm = _mock_llm("There are 2 users.", "CONFIDENT", "")
        outcome = await _agent(llm).run("How many users?")
        assert outcome.answer == "There are 2 users."

    @pytest.mark.asyncio
    async def test_failed_summary_falls_back_to_last_reply(self):
        llm = _mock_llm("There are 2 users.", "CONFIDENT", RuntimeError("overloaded"))
        outcome = await _agent(llm).run("How many users?")
        assert outcome.status is LoopStatus.ANSWERED
        assert outcome.answer == "There are 2 users."


# ── Failures and retries ─────────────────────────────────────────────


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_validation_retries_do_not_consume_turns(self):
        llm = _repeating_llm(JOBS_CALL)
        client = _mock_client(status=422, data={"errors": {"customer_id": "required"}})
        agent = _agent(llm, client=client, max_turns=2, max_validation_retries=3)

        outcome = await agent.run("Create a job to fix the roof")

        # 3 exempt retries + 2 counted turns
        assert client.execute.await_count == 5
        assert outcome.validation_retries == 3
        assert outcome.turns == 2
        assert outcome.model_calls == 5
        assert outcome.status is LoopStatus.EXHAUSTED
        assert "POST /api/v2/jobs -> HTTP 422" in outcome.answer

    @pytest.mark.asyncio
    async def test_failure_note_carries_adaptation_hint(self):
        llm = _mock_llm(JOBS_CALL, JOBS_CALL, "Giving up on that.", "CONFIDENT", "Could not create it.")
        client = _mock_client(status=422, error="HTTP 422: Unprocessable Entity", data={"errors": {"customer_id": "required"}})
        memory = _memory()
        agent = _agent(llm, client=client, memory=memory)

        await agent.run("Create a job")

        first_note = _sent(llm, 1)[-1].content
        assert "API CALL FAILED (POST /api/v2/jobs -> HTTP 422" in first_note
        assert "customer_id" in first_note
        assert "SUGGESTED FIX (attempt 1/4): Check that every required field" in first_note
        second_note = _sent(llm, 2)[-1].content
        assert "SUGGESTED FIX (attempt 2/4)" in second_note

        entry = memory.get_pattern("POST", "/api/v2/jobs").common_errors[0]
        assert entry.frequency == 2
        assert entry.remediation.startswith("Verify that field data types")

    @pytest.mark.asyncio
    async def test_learned_remediation_is_surfaced(self):
        memory = _memory()
        plan = CallPlan(method="POST", endpoint="/api/v2/jobs", body={"title": "Fix roof"})
        failure = ExecutionResult(
            success=False, error="HTTP 422: Unprocessable Entity", http_status=422, plan_executed=plan,
        )
        memory.record_failure(plan, failure, remediation="Include customer_id in the body")

        llm = _mock_llm(JOBS_CALL, "I need a customer.", "CONFIDENT", "Which customer?")
        client = _mock_client(status=422, error="HTTP 422: Unprocessable Entity")
        await _agent(llm, client=client, memory=memory).run("Create a job")

        assert "LEARNED SOLUTION: Include customer_id in the body" in _sent(llm, 1)[-1].content

    @pytest.mark.asyncio
    async def test_retry_budget_exhaustion_notice(self):
        llm = _repeating_llm("```\nGET /api/v2/widgets/9\n```")
        client = _mock_client(status=404, error="HTTP 404: Not Found")
        agent = _agent(llm, client=client, max_turns=5)

        outcome = await agent.run("Show widget 9")

        assert outcome.turns == 5
        assert "SUGGESTED FIX (attempt 3/3)" in _sent(llm, 3)[-1].content
        assert "Max retries exceeded for this error type" in _sent(llm, 4)[-1].content

    @pytest.mark.asyncio
    async def test_not_found_attaches_reference(self):
        llm = _mock_llm("```\nGET /api/v2/user/list\n```", "No luck.", "CONFIDENT", "Not found.")
        client = _mock_client(status=404, error="HTTP 404: Not Found")
        await _agent(llm, client=client).run("list users")
        assert "Relevant API reference:" in _sent(llm, 1)[-1].content

    @pytest.mark.asyncio
    async def test_memory_writes_run_off_the_event_loop(self):
        writer_threads = []

        class RecordingStore(InMemoryStore):
            def set(self, key, value):
                writer_threads.append(threading.get_ident())
                super().set(key, value)

        memory = PatternMemory(RecordingStore()).load()
        writer_threads.clear()
        loop_thread = threading.get_ident()

        await _agent(
            _mock_llm(USERS_CALL, "2 users.", "CONFIDENT", "2 users."), memory=memory
        ).run("How many users?")
        await _agent(
            _mock_llm(USERS_CALL, "It failed.", "CONFIDENT", "It failed."),
            client=_mock_client(500, error="boom"),
            memory=memory,
        ).run("How many users?")

        assert len(writer_threads) == 2
        assert loop_thread not in writer_threads
        pattern = memory.get_pattern("GET", "/api/v2/users")
        assert pattern.success_count == 1
        assert pattern.common_errors[0].frequency == 1

    @pytest.mark.asyncio
    async def test_endpoint_success_resets_failure_tracker(self):
        llm = _mock_llm(JOBS_CALL, JOBS_CALL, JOBS_CALL, "Created.", "CONFIDENT", "Created.")
        outcomes = iter([422, 200, 422])

        async def respond(plan):
            status = next(outcomes)
            return ExecutionResult(
                success=status == 200,
                error=None if status == 200 else "HTTP 422",
                http_status=status,
                plan_executed=plan,
            )

        client = MagicMock()
        client.execute = AsyncMock(side_effect=respond)
        await _agent(llm, client=client).run("Create two jobs")

        assert "SUGGESTED FIX (attempt 1/4)" in _sent(llm, 3)[-1].content

    @pytest.mark.asyncio
    async def test_memory_advisory_accompanies_result(self):
        memory = _memory()
        plan = CallPlan(method="GET", endpoint="/api/v2/users")
        failure = ExecutionResult(success=False, error="HTTP 400: Bad Request", http_status=400, plan_executed=plan)
        memory.record_failure(plan, failure, remediation="Use limit, not per_page")
        memory.record_failure(plan, failure, remediation="Use limit, not per_page")

        llm = _mock_llm("```\nGET /api/v2/users\n```", "2 users.", "CONFIDENT", "2 users.")
        await _agent(llm, memory=memory).run("list users")

        note = _sent(llm, 1)[-1].content
        assert "API CALL RESULT" in note
        assert "Memory advisory for this call:" in note
        assert "Use limit, not per_page" in note


# ── Intent correction and confidence ─────────────────────────────────


class TestIntentAndConfidence:
    @pytest.mark.asyncio
    async def test_announced_call_gets_corrected(self):
        llm = _mock_llm(
            "I'll fetch the users now.",
            "```\nGET /api/v2/users\n```",
            "There are 2 users.",
            "CONFIDENT",
            "There are 2 users.",
        )
        outcome = await _agent(llm).run("How many users?")

        correction = _sent(llm, 1)[-1]
        assert isinstance(correction, HumanMessage)
        assert correction.content.startswith("[system] You said you would call the API")
        assert outcome.turns == 2
        # The announcement itself never reaches the transcript
        assert all("I'll fetch" not in e.content for e in outcome.transcript)
        assert len(outcome.transcript) == 3

    @pytest.mark.asyncio
    async def test_intent_correction_can_be_disabled(self):
        llm = _mock_llm("I'll fetch the users now.", "CONFIDENT", "I could not fetch them.")
        outcome = await _agent(llm, intent_correction=False).run("How many users?")
        assert outcome.model_calls == 3
        assert outcome.status is LoopStatus.ANSWERED

    @pytest.mark.asyncio
    async def test_confidence_prompt_lists_failed_attempts(self):
        llm = _mock_llm("```\nGET /api/v2/widgets\n```", "Nothing found.", "CONFIDENT", "Nothing found.")
        client = _mock_client(status=404, error="HTTP 404: Not Found")
        await _agent(llm, client=client).run("list widgets")

        prompt = _sent(llm, 2)[-1].content
        assert "CONFIDENT" in prompt
        assert "GET /api/v2/widgets -> HTTP 404: Not Found" in prompt
        assert "Current turn: 2/8" in prompt

    @pytest.mark.asyncio
    async def test_never_confident_exhausts_turns(self):
        llm = _repeating_llm("NOT CONFIDENT, still missing data")
        outcome = await _agent(llm, max_turns=3).run("What happened last week?")

        assert outcome.status is LoopStatus.EXHAUSTED
        assert outcome.turns == 3
        assert outcome.model_calls == 6
        assert "maximum number of attempts (3)" in outcome.answer
        assert outcome.transcript[-1].content == outcome.answer
        assert [e.role for e in outcome.transcript] == ["user", "assistant"]


# ── Model failures, timeouts, cancellation ───────────────────────────


class TestResilience:
    @pytest.mark.asyncio
    async def test_model_failures_exhaust_gracefully(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("API down"))
        outcome = await _agent(llm, max_turns=2).run("hi")

        assert outcome.status is LoopStatus.EXHAUSTED
        assert outcome.model_calls == 4
        assert outcome.turns == 2

    @pytest.mark.asyncio
    async def test_placeholder_reply_is_shown_to_confidence_check(self):
        llm = _mock_llm(RuntimeError("API down"), "NOT CONFIDENT", "Answer.", "CONFIDENT", "Answer.")
        await _agent(llm).run("hi")
        placeholder = _sent(llm, 1)[-2]
        assert isinstance(placeholder, AIMessage)
        assert placeholder.content == MODEL_FAILURE_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_empty_replies_never_become_empty_assistant_turns(self):
        llm = _repeating_llm("")
        outcome = await _agent(llm, max_turns=2).run("hi")

        assert outcome.status is LoopStatus.EXHAUSTED
        for call in llm.ainvoke.call_args_list:
            context = call.args[0][:-1]
            assert not any(isinstance(m, AIMessage) and m.content == "" for m in context)
        assert _sent(llm, 1)[-2].content == MODEL_FAILURE_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_empty_reply_and_summary_still_answer(self):
        llm = _mock_llm("", "CONFIDENT", "")
        outcome = await _agent(llm).run("hi")
        assert outcome.status is LoopStatus.ANSWERED
        assert outcome.answer == MODEL_FAILURE_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_model_timeout_is_treated_as_failure(self):
        async def slow(messages):
            await asyncio.sleep(5)

        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=slow)
        outcome = await _agent(llm, max_turns=1, model_timeout=0.01).run("hi")

        assert outcome.status is LoopStatus.EXHAUSTED
        assert outcome.model_calls == 2

    @pytest.mark.asyncio
    async def test_cancellation_aborts_in_flight_call(self):
        started = asyncio.Event()

        async def hang(plan):
            started.set()
            await asyncio.Event().wait()

        client = MagicMock()
        client.execute = AsyncMock(side_effect=hang)
        memory = _memory()
        agent = _agent(_repeating_llm(USERS_CALL), client=client, memory=memory)

        task = asyncio.create_task(agent.run("list users"))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert memory.pattern_count == 0
