"""External collaborator contracts and in-memory reference implementations.

Persistence, the currency ledger, age verification, the knowledge base and
audit storage live outside the engine. The in-memory backends here are for
tests and local development.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .models import Conversation, ConversationCategory, Message, UserPreferences

# ---------------------------------------------------------------------------
# Age / eligibility
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str = ""


class EligibilityChecker(ABC):
    """Age-verification subsystem."""

    @abstractmethod
    async def verify(self, user_id: str, guild_id: str) -> Eligibility:
        """Return whether the user may access age-gated content."""


class StaticEligibilityChecker(EligibilityChecker):
    """Eligibility from a fixed set of verified (user, guild) pairs."""

    def __init__(self, verified: set[tuple[str, str]] | None = None) -> None:
        self.verified: set[tuple[str, str]] = set(verified or ())
        self.calls = 0

    async def verify(self, user_id: str, guild_id: str) -> Eligibility:
        self.calls += 1
        if (user_id, guild_id) in self.verified:
            return Eligibility(eligible=True, reason="verified_21_plus")
        return Eligibility(eligible=False, reason="age_not_verified")


# ---------------------------------------------------------------------------
# Membership (VIP status)
# ---------------------------------------------------------------------------


class MembershipDirectory(ABC):
    """Community role lookups."""

    @abstractmethod
    async def is_vip(self, user_id: str, guild_id: str) -> bool:
        """True when the user holds the sponsored (VIP) role."""


class StaticMembershipDirectory(MembershipDirectory):
    def __init__(self, vip: set[tuple[str, str]] | None = None) -> None:
        self.vip: set[tuple[str, str]] = set(vip or ())

    async def is_vip(self, user_id: str, guild_id: str) -> bool:
        return (user_id, guild_id) in self.vip


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class Ledger(ABC):
    """Virtual-currency ledger. Deduction must be atomic with a floor of zero."""

    @abstractmethod
    async def get_balance(self, user_id: str, guild_id: str) -> int:
        """Return the current balance (0 for unknown users)."""

    @abstractmethod
    async def deduct(self, user_id: str, guild_id: str, amount: int) -> int:
        """Deduct up to *amount*; return the amount actually deducted."""


class InMemoryLedger(Ledger):
    """Dict-based ledger with atomic decrement-with-floor."""

    def __init__(self, balances: dict[tuple[str, str], int] | None = None) -> None:
        self._balances: dict[tuple[str, str], int] = dict(balances or {})
        self._spent: dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    def credit(self, user_id: str, guild_id: str, amount: int) -> None:
        key = (user_id, guild_id)
        self._balances[key] = self._balances.get(key, 0) + amount

    def spent(self, user_id: str, guild_id: str) -> int:
        return self._spent.get((user_id, guild_id), 0)

    async def get_balance(self, user_id: str, guild_id: str) -> int:
        return self._balances.get((user_id, guild_id), 0)

    async def deduct(self, user_id: str, guild_id: str, amount: int) -> int:
        key = (user_id, guild_id)
        async with self._lock:
            balance = self._balances.get(key, 0)
            taken = max(0, min(balance, amount))
            self._balances[key] = balance - taken
            self._spent[key] = self._spent.get(key, 0) + taken
            return taken


# ---------------------------------------------------------------------------
# Persistence repository
# ---------------------------------------------------------------------------


class ConversationRepository(ABC):
    """Durable storage for conversations, messages and preferences."""

    @abstractmethod
    async def save_message(self, message: Message) -> None:
        """Append a message to the log."""

    @abstractmethod
    async def upsert_conversation(self, conversation: Conversation) -> None:
        """Insert or replace a conversation record."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Stored record by id, archived or not."""

    @abstractmethod
    async def get_active_conversation(
        self,
        user_id: str,
        guild_id: str,
        channel_id: str,
        category: ConversationCategory | None = None,
    ) -> Conversation | None:
        """Most recently active non-archived conversation for the scope."""

    @abstractmethod
    async def get_recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """Up to *limit* newest messages, oldest first."""

    @abstractmethod
    async def get_or_create_preferences(self, user_id: str, guild_id: str) -> UserPreferences:
        """Stored preferences, created with defaults on first use."""

    @abstractmethod
    async def save_preferences(self, preferences: UserPreferences) -> None:
        """Persist preferences."""

    async def get_user_stats(self, user_id: str, guild_id: str) -> dict[str, Any]:
        """Aggregate usage for a user. Repositories may override with a query."""
        return {}


class InMemoryRepository(ConversationRepository):
    """Dict-based repository (for testing and development)."""

    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []
        self.preferences: dict[tuple[str, str], UserPreferences] = {}

    async def save_message(self, message: Message) -> None:
        self.messages.append(message)

    async def upsert_conversation(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation.model_copy()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        stored = self.conversations.get(conversation_id)
        return stored.model_copy() if stored is not None else None

    async def get_active_conversation(
        self,
        user_id: str,
        guild_id: str,
        channel_id: str,
        category: ConversationCategory | None = None,
    ) -> Conversation | None:
        candidates = [
            c
            for c in self.conversations.values()
            if c.user_id == user_id
            and c.guild_id == guild_id
            and c.channel_id == channel_id
            and not c.archived
            and (category is None or c.category == category)
        ]
        if not candidates:
            return None
        newest = max(candidates, key=lambda c: c.last_activity_at)
        return newest.model_copy()

    async def get_recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        matching = [m for m in self.messages if m.conversation_id == conversation_id]
        return matching[-limit:] if limit > 0 else []

    async def get_or_create_preferences(self, user_id: str, guild_id: str) -> UserPreferences:
        key = (user_id, guild_id)
        if key not in self.preferences:
            self.preferences[key] = UserPreferences(user_id=user_id, guild_id=guild_id)
        return self.preferences[key].model_copy()

    async def save_preferences(self, preferences: UserPreferences) -> None:
        self.preferences[(preferences.user_id, preferences.guild_id)] = preferences.model_copy()

    async def get_user_stats(self, user_id: str, guild_id: str) -> dict[str, Any]:
        convs = [c for c in self.conversations.values() if c.user_id == user_id and c.guild_id == guild_id]
        by_category: dict[str, int] = {}
        for c in convs:
            by_category[c.category.value] = by_category.get(c.category.value, 0) + 1
        return {
            "conversations": len(convs),
            "active_conversations": sum(1 for c in convs if not c.archived),
            "total_messages": sum(c.message_count for c in convs),
            "total_tokens": sum(c.token_count for c in convs),
            "by_category": by_category,
        }


# ---------------------------------------------------------------------------
# Knowledge lookup
# ---------------------------------------------------------------------------


class KnowledgeLookup(ABC):
    """Curated knowledge snippets used to augment context."""

    @abstractmethod
    async def search(self, area: str, query: str, limit: int) -> list[str]:
        """Return up to *limit* snippet texts for the knowledge area."""


class InMemoryKnowledge(KnowledgeLookup):
    """Word-overlap matching over (area, title, content) entries."""

    def __init__(self, entries: list[tuple[str, str, str]] | None = None) -> None:
        self._entries = list(entries or [])

    def add(self, area: str, title: str, content: str) -> None:
        self._entries.append((area, title, content))

    async def search(self, area: str, query: str, limit: int) -> list[str]:
        query_words = {w for w in query.lower().split() if len(w) >= 3}
        scored: list[tuple[int, str]] = []
        for entry_area, title, content in self._entries:
            if entry_area != area:
                continue
            text = f"{title} {content}".lower()
            score = sum(1 for w in query_words if w in text)
            scored.append((score, f"{title}: {content[:200]}"))
        scored.sort(key=lambda s: s[0], reverse=True)
        return [snippet for _, snippet in scored[:limit]]


# ---------------------------------------------------------------------------
# Audit sink
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEvent:
    """One audit-trail record."""

    action: str
    user_id: str
    guild_id: str
    details: dict[str, Any] = field(default_factory=dict)
    severity: str = "low"
    compliance_flag: bool = False
    timestamp: float = field(default_factory=time.time)


class AuditSink(ABC):
    """Audit-log writer."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist an audit event."""


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]
