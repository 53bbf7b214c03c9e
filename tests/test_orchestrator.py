"""End-to-end tests for ConversationOrchestrator using in-memory collaborators."""

from __future__ import annotations

import asyncio

import pytest

from chatgate.collaborators import (
    InMemoryAuditSink,
    InMemoryKnowledge,
    InMemoryLedger,
    InMemoryRepository,
    StaticEligibilityChecker,
    StaticMembershipDirectory,
)
from chatgate.config import EngineConfig
from chatgate.errors import BackendError, PersistenceError, ValidationError
from chatgate.formatting import AI_FOOTER
from chatgate.models import BackendState, BillingMode, ConversationCategory, ResponseStyle
from chatgate.orchestrator import ConversationOrchestrator
from chatgate.provider import ChatRole, StubChatBackend, StubThreadBackend

U, G, C = "u1", "g1", "c1"


class Harness:
    def __init__(
        self,
        reply: str = "Happy to help with that question.",
        balance: int = 100,
        verified: bool = True,
        chat: StubChatBackend | None = None,
        thread: StubThreadBackend | None = None,
        vip: bool = False,
        repository: InMemoryRepository | None = None,
        knowledge: InMemoryKnowledge | None = None,
        **config,
    ) -> None:
        self.chat = chat or StubChatBackend(reply=reply)
        self.thread = thread
        self.repo = repository or InMemoryRepository()
        self.ledger = InMemoryLedger({(U, G): balance})
        self.sink = InMemoryAuditSink()
        self.orch = ConversationOrchestrator(
            self.chat,
            EngineConfig(api_key="sk-shared", **config),
            thread_backend=thread,
            repository=self.repo,
            ledger=self.ledger,
            eligibility=StaticEligibilityChecker({(U, G)} if verified else set()),
            membership=StaticMembershipDirectory({(U, G)} if vip else set()),
            knowledge=knowledge,
            audit_sink=self.sink,
        )

    async def send(self, text: str = "Hello, how are you?", **fields):
        request = {"user_id": U, "guild_id": G, "channel_id": C, "text": text, **fields}
        return await self.orch.handle_message(request)

    async def balance(self) -> int:
        return await self.ledger.get_balance(U, G)

    async def audit_actions(self) -> list[str]:
        await self.orch.audit.drain()
        return self.sink.actions()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_general_message_round_trip():
    h = Harness()
    result = await h.send()

    assert result.success is True
    assert result.text.startswith("Happy to help with that question.")
    assert AI_FOOTER in result.text
    assert result.additional_pages == []
    assert result.session.turn_count == 1
    assert result.session.max_turns == 10
    assert 0 < result.session.seconds_remaining <= 600
    assert result.usage["billing_mode"] == "credit"
    assert result.usage["backend_mode"] == "chat"
    assert result.usage["cost"] >= 1
    assert result.usage["deducted"] == result.usage["cost"]
    assert await h.balance() == 100 - result.usage["cost"]
    assert result.suggestions["follow_up"] == [
        "Ask follow-up questions",
        "Get more information",
        "Change topic",
    ]
    assert result.suggestions["reactions"][-1] == "👍"
    assert result.conversation_id is not None


@pytest.mark.asyncio
async def test_both_turns_logged_durably():
    h = Harness()
    result = await h.send()

    roles = [m.role for m in h.repo.messages]
    assert roles == [ChatRole.USER, ChatRole.ASSISTANT]
    assistant = h.repo.messages[1]
    assert assistant.conversation_id == result.conversation_id
    assert assistant.model == "gpt-4-turbo-preview"
    assert assistant.cost == result.usage["cost"]
    assert assistant.billing_mode is BillingMode.CREDIT

    conversation = h.repo.conversations[result.conversation_id]
    assert conversation.message_count == 2
    assert conversation.token_count == result.usage["total_tokens"]
    assert await h.audit_actions() == ["ai_chat_interaction"]


@pytest.mark.asyncio
async def test_session_continues_across_messages():
    h = Harness()
    first = await h.send("First question")
    second = await h.send("Second question")
    assert second.session.turn_count == 2
    assert second.conversation_id == first.conversation_id
    # previous exchange is part of the context sent to the backend
    contents = [m.content for m in h.chat.calls[-1]]
    assert "First question" in contents
    assert contents[-1] == "Second question"


@pytest.mark.asyncio
async def test_session_turns_bounded_through_orchestrator():
    h = Harness()
    for i in range(11):
        result = await h.send(f"question number {i}")
    assert result.session.turn_count == 5


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_malformed_request_raises_without_side_effects():
    h = Harness()
    with pytest.raises(ValidationError):
        await h.send("   ")
    with pytest.raises(ValidationError):
        await h.orch.handle_message({"user_id": U, "text": "hi"})
    assert h.repo.messages == []
    assert h.chat.calls == []
    assert len(h.orch.sessions) == 0


# ---------------------------------------------------------------------------
# Age gate
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unverified_user_needs_verification_for_restricted_category():
    h = Harness(verified=False)
    result = await h.send("Tell me about Blue Dream", category="strain_advice")

    assert result.success is False
    assert result.needs_verification is True
    assert result.error_code == "needs_verification"
    assert "verif" in result.user_message.lower()
    assert h.chat.calls == []
    assert h.repo.messages == []
    assert len(h.orch.sessions) == 0
    assert await h.balance() == 100


@pytest.mark.asyncio
async def test_verified_user_gets_restricted_answer_with_disclaimer():
    h = Harness(reply="Blue Dream is a balanced hybrid.")
    result = await h.send("Tell me about Blue Dream", category="strain_advice")

    assert result.success is True
    assert "Strain effects vary by individual" in result.text
    assert result.compliance["age_gated"] is True
    assert result.compliance["restricted_content"] is True
    assert "disclaimer_added" in result.compliance["issues"]
    assert result.suggestions["follow_up"][0] == "Ask about growing this strain"


@pytest.mark.asyncio
async def test_general_message_with_restricted_terms_escalates():
    h = Harness(verified=False)
    result = await h.send("What's the best cannabis strain for sleep?")
    assert result.needs_verification is True
    assert h.chat.calls == []


@pytest.mark.asyncio
async def test_annotate_policy_only_records_the_hit():
    h = Harness(verified=False, escalation_policy="annotate")
    result = await h.send("What's the best cannabis strain for sleep?")
    assert result.success is True
    assert result.compliance["escalated"] is False
    assert "cannabis" in result.compliance["matched_terms"]


@pytest.mark.asyncio
async def test_escalated_verified_conversation_is_gated():
    h = Harness()
    result = await h.send("Is CBD legal here?")
    assert result.success is True
    assert result.compliance["escalated"] is True
    assert h.repo.conversations[result.conversation_id].age_gated is True


@pytest.mark.asyncio
async def test_restricted_assistance_opt_out():
    h = Harness()
    await h.orch.update_preferences(U, G, restricted_assistance_enabled=False)
    result = await h.send("Grow question", category="grow_tips")
    assert result.success is False
    assert result.error_code == "assistance_disabled"


@pytest.mark.asyncio
async def test_restricted_assistance_opt_out_applies_to_escalated_messages():
    h = Harness()
    await h.orch.update_preferences(U, G, restricted_assistance_enabled=False)
    result = await h.send("What's the best cannabis strain for sleep?")
    assert result.success is False
    assert result.error_code == "assistance_disabled"
    assert h.chat.calls == []


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_insufficient_credit_short_circuits_before_backend():
    h = Harness(balance=5)
    result = await h.send()
    assert result.success is False
    assert result.error_code == "insufficient_credit"
    assert result.usage == {"balance": 5, "required": 10}
    assert h.chat.calls == []
    assert await h.balance() == 5


@pytest.mark.asyncio
async def test_vip_not_charged():
    h = Harness(balance=0, vip=True)
    result = await h.send()
    assert result.success is True
    assert result.usage["billing_mode"] == "vip"
    assert result.usage["deducted"] == 0


@pytest.mark.asyncio
async def test_own_key_not_charged():
    h = Harness(balance=0)
    await h.orch.update_preferences(U, G, use_own_api_key=True, own_api_key="sk-mine")
    result = await h.send()
    assert result.success is True
    assert result.usage["billing_mode"] == "self_pay"
    assert await h.balance() == 0


@pytest.mark.asyncio
async def test_backend_failure_is_never_billed():
    h = Harness(chat=StubChatBackend(fail_with=BackendError("upstream 500")))
    result = await h.send()

    assert result.success is False
    assert result.error_code == "service_error"
    assert result.user_message
    assert await h.balance() == 100
    # the user turn is still logged
    assert [m.role for m in h.repo.messages] == [ChatRole.USER]
    assert await h.audit_actions() == ["ai_chat_error"]


@pytest.mark.asyncio
async def test_rate_limit_message_is_specific():
    h = Harness(chat=StubChatBackend(fail_with=BackendError("429", code="rate_limited")))
    result = await h.send()
    assert "busy" in result.user_message


# ---------------------------------------------------------------------------
# Backend fallback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_thread_failure_falls_back_once_and_sticks():
    thread = StubThreadBackend(fail_on="create_thread")
    h = Harness(thread=thread, thread_mode_enabled=True)

    first = await h.send("First")
    second = await h.send("Second")

    assert first.success and second.success
    assert first.usage["backend_mode"] == "chat"
    assert first.usage["fell_back"] is True
    assert second.usage["fell_back"] is False
    assert thread.create_calls == 1


@pytest.mark.asyncio
async def test_thread_mode_success():
    thread = StubThreadBackend(reply="Answer from the assistant thread.")
    h = Harness(thread=thread, thread_mode_enabled=True)
    result = await h.send()
    assert result.usage["backend_mode"] == "thread"
    assert result.usage["model"] == "gpt-4.1-mini"
    conversation = h.repo.conversations[result.conversation_id]
    assert conversation.thread_id is not None


# ---------------------------------------------------------------------------
# Output shaping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_long_reply_is_paginated():
    h = Harness(reply="This is a sentence. " * 150)
    result = await h.send()
    pages = [result.text, *result.additional_pages]
    assert len(pages) >= 2
    assert all(len(p) <= 2000 for p in pages)
    assert pages[-1].endswith(AI_FOOTER)


@pytest.mark.asyncio
async def test_full_length_restricted_reply_keeps_disclaimer():
    h = Harness(reply="Blue Dream has balanced effects. " * 62)
    result = await h.send("Tell me about Blue Dream", category="strain_advice")
    delivered = "".join([result.text, *result.additional_pages])
    assert "disclaimer_added" in result.compliance["issues"]
    assert "Strain effects vary by individual" in delivered
    assert delivered.endswith(AI_FOOTER)


@pytest.mark.asyncio
async def test_footer_follows_disclaimer_preference():
    h = Harness()
    await h.orch.update_preferences(U, G, include_disclaimers=False)
    result = await h.send()
    assert result.success is True
    assert AI_FOOTER not in result.text


@pytest.mark.asyncio
async def test_commercial_content_redacted():
    h = Harness(reply="You can buy it from my dealer. Stay safe out there.")
    result = await h.send()
    assert "dealer" not in result.text
    assert result.compliance["filtered"] is True
    assert "commercial_content_removed" in result.compliance["issues"]
    assert h.repo.messages[-1].compliance_filtered is True


@pytest.mark.asyncio
async def test_knowledge_snippets_reach_the_system_prompt():
    kb = InMemoryKnowledge([("strains", "Blue Dream", "A sativa-dominant hybrid from California.")])
    h = Harness(knowledge=kb)
    await h.send("Tell me about Blue Dream", category="strain_advice")
    system = h.chat.calls[-1][0]
    assert system.role == ChatRole.SYSTEM
    assert "Blue Dream: A sativa-dominant hybrid" in system.content


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class SlowChat(StubChatBackend):
    async def complete(self, messages, settings, credential, images=()):
        await asyncio.sleep(5)
        return await super().complete(messages, settings, credential, images)


@pytest.mark.asyncio
async def test_request_timeout_returns_service_error_without_billing():
    h = Harness(chat=SlowChat(), request_timeout=0.05)
    result = await h.send()
    assert result.success is False
    assert result.error_code == "timeout"
    assert await h.balance() == 100


class BrokenRepository(InMemoryRepository):
    async def save_message(self, message):
        raise PersistenceError("disk full")


@pytest.mark.asyncio
async def test_persistence_failure_does_not_block_response():
    h = Harness(repository=BrokenRepository())
    result = await h.send()
    assert result.success is True
    assert result.usage["deducted"] == result.usage["cost"]


@pytest.mark.asyncio
async def test_concurrent_messages_same_channel():
    h = Harness()
    results = await asyncio.gather(h.send("one"), h.send("two"))
    assert all(r.success for r in results)
    history = await h.orch.sessions.history(U, C)
    assert len(history) == 4


class SlowReadRepository(InMemoryRepository):
    """Suspends after every conversation read, widening overlap windows."""

    async def get_active_conversation(self, *args, **kwargs):
        found = await super().get_active_conversation(*args, **kwargs)
        await asyncio.sleep(0.01)
        return found

    async def get_conversation(self, conversation_id):
        found = await super().get_conversation(conversation_id)
        await asyncio.sleep(0.01)
        return found


@pytest.mark.asyncio
async def test_concurrent_first_messages_share_one_conversation():
    h = Harness(repository=SlowReadRepository())
    results = await asyncio.gather(h.send("one"), h.send("two"))

    assert all(r.success for r in results)
    active = [c for c in h.repo.conversations.values() if not c.archived]
    assert len(active) == 1
    assert results[0].conversation_id == results[1].conversation_id
    assert active[0].message_count == 4


@pytest.mark.asyncio
async def test_concurrent_turns_keep_counters_exact():
    h = Harness(repository=SlowReadRepository())
    await h.send("warm up")
    await asyncio.gather(h.send("one"), h.send("two"))

    (conversation,) = h.repo.conversations.values()
    assert conversation.message_count == len(h.repo.messages) == 6


class SplitThread(StubThreadBackend):
    """Fails appends of "fail" and stalls appends of "ok"."""

    async def append_message(self, thread_id, text, credential):
        if text == "fail":
            raise BackendError("thread broke", code="run_failed")
        if text == "ok":
            await asyncio.sleep(0.02)
        await super().append_message(thread_id, text, credential)


@pytest.mark.asyncio
async def test_overlapping_thread_success_cannot_undo_downgrade():
    thread = SplitThread()
    h = Harness(thread=thread, thread_mode_enabled=True)
    warm = await h.send("warm up")
    assert warm.usage["backend_mode"] == "thread"

    ok, failed = await asyncio.gather(h.send("ok"), h.send("fail"))
    assert ok.usage["backend_mode"] == "thread"
    assert failed.usage["fell_back"] is True

    stored = h.repo.conversations[warm.conversation_id]
    assert stored.backend_state is BackendState.CHAT_ACTIVE

    after = await h.send("next")
    assert after.usage["backend_mode"] == "chat"
    assert after.usage["fell_back"] is False


# ---------------------------------------------------------------------------
# Other operations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_clear_conversation():
    h = Harness()
    first = await h.send()
    cleared = await h.orch.clear_conversation(U, G, C)

    assert cleared == {"session_cleared": True, "conversations_archived": 1}
    archived = h.repo.conversations[first.conversation_id]
    assert archived.archived is True
    assert archived.end_reason == "user_cleared"

    second = await h.send()
    assert second.conversation_id != first.conversation_id
    assert second.session.turn_count == 1
    assert "ai_conversation_cleared" in await h.audit_actions()


@pytest.mark.asyncio
async def test_update_preferences_validates():
    h = Harness()
    prefs = await h.orch.update_preferences(U, G, response_style="technical")
    assert prefs.response_style is ResponseStyle.TECHNICAL

    with pytest.raises(ValidationError):
        await h.orch.update_preferences(U, G, max_response_length=5)
    with pytest.raises(ValidationError):
        await h.orch.update_preferences(U, G, favourite_colour="green")
    with pytest.raises(ValidationError):
        await h.orch.update_preferences(U, G, use_own_api_key=True)

    stored = await h.orch.get_preferences(U, G)
    assert stored.response_style is ResponseStyle.TECHNICAL
    assert stored.max_response_length == 2000
    assert "ai_preferences_updated" in await h.audit_actions()


@pytest.mark.asyncio
async def test_reset_preferences():
    h = Harness()
    await h.orch.update_preferences(U, G, response_style="technical", history_enabled=False)
    prefs = await h.orch.reset_preferences(U, G)
    assert prefs.response_style is ResponseStyle.CONVERSATIONAL
    assert prefs.history_enabled is True


@pytest.mark.asyncio
async def test_get_stats():
    h = Harness()
    await h.orch.update_preferences(U, G, use_own_api_key=True, own_api_key="sk-secret")
    await h.send()
    stats = await h.orch.get_stats(U, G)
    assert stats["conversations"] == 1
    assert stats["total_messages"] == 2
    assert stats["balance"] == 100
    assert "own_api_key" not in stats["preferences"]
    assert stats["by_category"] == {ConversationCategory.GENERAL.value: 1}


@pytest.mark.asyncio
async def test_start_and_stop():
    h = Harness()
    h.orch.start()
    await h.send()
    await h.orch.stop()
    assert h.sink.actions() == ["ai_chat_interaction"]
