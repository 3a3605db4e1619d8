"""Prompt text for the orchestration loop."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from resource_agent.api_reference import get_api_reference

SYSTEM_PROMPT_TEMPLATE = """You are an AI agent that answers questions and performs tasks by calling a REST resource API.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The current time is **{current_time} UTC**.
Use this to resolve relative dates like "this week" or "last month" in filters.

## How to Make an API Call
When you need data or want to change something, output the call in a fenced code block in this EXACT format:

```
GET /api/v2/users
```

With query parameters:

```
GET /api/v2/users?include=crews&with_count=entries
```

With a JSON body (POST / PUT / PATCH / DELETE):

```
POST /api/v2/users/search
Body: {{"filters": [{{"field": "name", "operator": "like", "value": "John"}}], "includes": [{{"relation": "crews"}}]}}
```

### Rules
1. Make at most ONE call per reply. The first call in your reply is the only one executed.
2. The method and path must be the FIRST line of the code block.
3. Put `Body:` followed by valid JSON on the lines after it. Never put comments inside the JSON.
4. If you say you are going to call the API, the very next thing in your reply MUST be the code block.
   Never just announce "I will fetch the users" without it.
5. After each call you will receive the result (or the error) in a system note. Use it before calling again.
6. When you already have everything needed, answer in plain text with no code block.
7. NEVER invent data. Only report what the API returned.

{memory_insights}

## API Reference
---
{api_reference}
---
"""

FORMAT_CORRECTION_PROMPT = """You said you would call the API but did NOT provide a call in the required format.

Output the call NOW, as a fenced code block whose first line is the method and path:

```
GET /api/v2/users
```

or with a body:

```
POST /api/v2/users
Body: {"name": "John"}
```

Do not describe the call. Output the code block."""

CONFIDENCE_PROMPT_TEMPLATE = """Evaluate your progress on answering: "{question}"

Consider:
1. Do you have sufficient information to answer completely?
2. Are there failed API calls that should be retried with what you have learned?
3. Have you used the memory insights effectively?

Current turn: {turn}/{max_turns}
Memory insights available: {has_insights}
{attempts}
Reply with CONFIDENT if you are ready to give the final answer, or NOT CONFIDENT if you should keep working, followed by one sentence explaining why."""

SUMMARY_PROMPT_TEMPLATE = (
    'Provide a clear, complete answer to: "{question}" using all the information gathered '
    "above. Do not include API call code blocks. Mention anything that could not be retrieved."
)

MODEL_FAILURE_PLACEHOLDER = "Sorry, I could not respond."


def get_system_prompt(memory_insights: str = "") -> str:
    """Build the system prompt with the API reference, memory and current date injected."""
    now = datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        memory_insights=memory_insights.strip(),
        api_reference=get_api_reference(),
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
    )


def build_confidence_prompt(
    question: str,
    turn: int,
    max_turns: int,
    failed_attempts: list[str],
    has_insights: bool,
) -> str:
    attempts = ""
    if failed_attempts:
        listed = "\n".join(f"- {a}" for a in failed_attempts)
        attempts = f"\nFailed or mismatched call attempts so far:\n{listed}\n"
    return CONFIDENCE_PROMPT_TEMPLATE.format(
        question=question,
        turn=turn,
        max_turns=max_turns,
        has_insights="Yes" if has_insights else "No",
        attempts=attempts,
    )


def build_summary_prompt(question: str) -> str:
    return SUMMARY_PROMPT_TEMPLATE.format(question=question)


def build_exhausted_message(max_turns: int, failed_attempts: list[str]) -> str:
    message = (
        f"I reached the maximum number of attempts ({max_turns}) without gathering "
        "enough information to answer confidently."
    )
    if failed_attempts:
        listed = "\n".join(f"- {a}" for a in failed_attempts)
        message += f"\n\nThese calls did not succeed:\n{listed}"
    message += (
        "\n\nWhat I learned about these endpoints has been saved, so a follow-up "
        "request should go better. You could also rephrase or narrow the question."
    )
    return message


def render_payload(data: Any, limit: int = 4000) -> str:
    """JSON-encode *data* for the model, truncated to *limit* characters."""
    text = data if isinstance(data, str) else json.dumps(data, default=str)
    if len(text) > limit:
        return text[:limit] + f"... [truncated {len(text) - limit} chars]"
    return text
