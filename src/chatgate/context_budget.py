"""Context budgeter: fit system prompt, knowledge and history into a token budget."""

from __future__ import annotations

from dataclasses import dataclass, field

from .provider import ChatMessage, ChatRole
from .token_budget import TokenCounter, estimate_tokens, truncate_to_tokens

_KNOWLEDGE_HEADER = "\n\nRelevant knowledge:\n"


@dataclass
class BuiltContext:
    """Ordered messages ready for a chat-mode call."""

    messages: list[ChatMessage]
    token_count: int
    budget: int
    truncated: bool = False
    included_turns: int = 0
    dropped_turns: int = 0
    included_snippets: list[str] = field(default_factory=list)

    def is_within_budget(self) -> bool:
        return self.token_count <= self.budget


class ContextBudgeter:
    """Builds bounded context windows with recency bias.

    Order of priority: the system prompt (never dropped), the latest user
    turn (truncated only if nothing else fits), knowledge snippets (folded
    into the system message), then prior turns newest-first. Older turns
    are dropped whole, never cut mid-message.
    """

    def __init__(self, counter: TokenCounter = estimate_tokens) -> None:
        self._count = counter

    def build_context(
        self,
        system_prompt: str,
        history: list[ChatMessage],
        knowledge_snippets: list[str] | None = None,
        budget_tokens: int = 3000,
    ) -> BuiltContext:
        """Assemble ``[system, *recent_history, latest]`` within *budget_tokens*.

        ``history[-1]`` is the latest user turn and is always included.
        """
        if budget_tokens <= 0:
            msg = "budget_tokens must be positive"
            raise ValueError(msg)

        prior = list(history[:-1])
        latest = history[-1] if history else None

        system_tokens = self._count(system_prompt)
        latest_tokens = self._count(latest.content) if latest else 0
        truncated = False

        if latest is not None and system_tokens + latest_tokens > budget_tokens:
            room = max(0, budget_tokens - system_tokens)
            latest = ChatMessage(
                role=latest.role,
                content=truncate_to_tokens(latest.content, room, self._count),
            )
            latest_tokens = self._count(latest.content)
            truncated = True

        used = system_tokens + latest_tokens

        # Knowledge goes into the system message, never into history.
        system_text = system_prompt
        included_snippets: list[str] = []
        for snippet in knowledge_snippets or []:
            if not snippet:
                continue
            addition = (_KNOWLEDGE_HEADER if not included_snippets else "\n\n") + snippet
            candidate = system_text + addition
            candidate_tokens = self._count(candidate)
            if candidate_tokens + latest_tokens > budget_tokens:
                continue
            system_text = candidate
            included_snippets.append(snippet)
            used = candidate_tokens + latest_tokens

        kept: list[ChatMessage] = []
        for turn in reversed(prior):
            cost = self._count(turn.content)
            if used + cost > budget_tokens:
                break
            kept.append(turn)
            used += cost
        kept.reverse()

        messages = [ChatMessage(role=ChatRole.SYSTEM, content=system_text), *kept]
        if latest is not None:
            messages.append(latest)

        return BuiltContext(
            messages=messages,
            token_count=used,
            budget=budget_tokens,
            truncated=truncated,
            included_turns=len(kept),
            dropped_turns=len(prior) - len(kept),
            included_snippets=included_snippets,
        )
