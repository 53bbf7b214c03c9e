#!/usr/bin/env python3
"""01_chat_pipeline.py: chatgate orchestration demo.

Sends a few messages through ConversationOrchestrator and prints the
structured results: compliance annotations, usage/billing and session info.

The backend is the OpenAI chat-completions adapter when OPENAI_API_KEY is
set, otherwise the deterministic stub (no external calls).

Prerequisites:
    pip install -e .[test]

Usage:
    python examples/01_chat_pipeline.py
    OPENAI_API_KEY=sk-... python examples/01_chat_pipeline.py
"""

from __future__ import annotations

import asyncio
import logging

from chatgate import (
    ConversationOrchestrator,
    EngineConfig,
    InMemoryLedger,
    StaticEligibilityChecker,
    StubChatBackend,
)


def _backends(config: EngineConfig):
    if not config.api_key:
        return StubChatBackend(reply="Blue Dream is a sativa-dominant hybrid known for balanced effects."), None
    from chatgate.openai_backend import build_backends

    return build_backends(config)


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    # ------------------------------------------------------------------
    # 1. Configuration from CHATGATE_* / OPENAI_API_KEY, with a verified
    #    demo user holding 100 credits.
    # ------------------------------------------------------------------
    config = EngineConfig.from_env()
    chat_backend, thread_backend = _backends(config)
    orchestrator = ConversationOrchestrator(
        chat_backend,
        config,
        thread_backend=thread_backend,
        ledger=InMemoryLedger({("demo-user", "demo-guild"): 100}),
        eligibility=StaticEligibilityChecker({("demo-user", "demo-guild")}),
    )
    orchestrator.start()

    # ------------------------------------------------------------------
    # 2. A general question, then an age-gated strain question.
    # ------------------------------------------------------------------
    requests = [
        {"text": "Hi! What can you help me with?"},
        {"text": "Tell me about Blue Dream", "category": "strain_advice"},
    ]
    for fields in requests:
        result = await orchestrator.handle_message(
            {"user_id": "demo-user", "guild_id": "demo-guild", "channel_id": "demo-channel", **fields}
        )
        print("--- Result ---")
        if not result.success:
            print(f"Failed ({result.error_code}): {result.user_message}")
            continue
        print(result.text)
        for page in result.additional_pages:
            print(page)
        print(f"Compliance: {result.compliance}")
        print(f"Usage:      {result.usage}")
        print(f"Session:    {result.session}")
        print()

    # ------------------------------------------------------------------
    # 3. Per-user stats, then shut the background tasks down.
    # ------------------------------------------------------------------
    print(await orchestrator.get_stats("demo-user", "demo-guild"))
    await orchestrator.stop()


if __name__ == "__main__":
    asyncio.run(main())
