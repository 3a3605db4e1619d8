"""CLI entry point for the Resource API agent.

A terminal chat loop for trying the agent against a live resource API.
For production, use the FastAPI server (resource_agent/server.py).

Usage:
    python -m resource_agent.main            # normal mode (quiet)
    python -m resource_agent.main --debug    # debug mode (shows loop steps and HTTP calls)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

from resource_agent.agent import create_resource_agent
from resource_agent.config import MEMORY_STORE_PATH
from resource_agent.models import LoopStatus, TranscriptEntry
from resource_agent.services.metrics import metrics
from resource_agent.services.pattern_memory import PatternMemory
from resource_agent.services.resource_client import ResourceClient
from resource_agent.services.store import FileStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("resource_agent").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_calls(transcript: list[TranscriptEntry]) -> None:
    for entry in transcript:
        if entry.plan is None or entry.result is None:
            continue
        status = entry.result.http_status or "network error"
        mark = "ok" if entry.result.success else "failed"
        print(f"  [{mark}] {entry.plan.describe()} -> {status} ({entry.result.execution_time_ms:.0f}ms)")


async def _chat_loop() -> None:
    memory = PatternMemory(FileStore(MEMORY_STORE_PATH)).load()
    client = ResourceClient()
    agent = create_resource_agent(memory=memory, client=client)

    session_id = str(uuid.uuid4())
    history: list[TranscriptEntry] = []
    logger.info("Started new session: %s", session_id)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break

            if user_input.lower() == "new":
                session_id = str(uuid.uuid4())
                history = []
                print(f"\n>> New session started: {session_id[:8]}...\n")
                continue

            if user_input.lower() == "memory":
                print(f"\n{memory.get_memory_insights()}\n")
                continue

            try:
                outcome = await agent.run(user_input, history=history)
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\nAgent: Something went wrong: {e}")
                print("       Please try again or type 'new' to start a fresh session.\n")
                continue

            history.extend(outcome.transcript)
            _print_calls(outcome.transcript)
            label = "Agent" if outcome.status is LoopStatus.ANSWERED else "Agent (gave up)"
            print(f"\n{label}: {outcome.answer}\n")
    finally:
        memory.flush()
        await client.aclose()
        metrics.flush()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Resource API agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including loop steps and HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Resource API Agent - CLI Chat")
    print("=" * 60)
    print("  Type your request and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session,")
    print("            'memory' to show what the agent has learned.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat_loop())
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
