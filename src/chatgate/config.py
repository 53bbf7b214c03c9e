"""Engine configuration: explicit defaults, overridable from environment."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, Field, model_validator

# Valid values for CHATGATE_TOKENIZER
_VALID_TOKENIZERS = frozenset({"estimate", "tiktoken"})

_TRUE = frozenset({"1", "true", "yes", "on"})

# env var suffix -> (field name, parser)
_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "SESSION_TIMEOUT_SEC": ("session_timeout", float),
    "SESSION_MAX_TURNS": ("session_max_turns", int),
    "SESSION_WINDOW": ("session_window", int),
    "SWEEP_INTERVAL_SEC": ("sweep_interval", float),
    "CONTEXT_BUDGET_TOKENS": ("context_budget_tokens", int),
    "MAX_RESPONSE_TOKENS": ("max_response_tokens", int),
    "HISTORY_LIMIT": ("history_limit", int),
    "CONVERSATION_IDLE_SEC": ("conversation_idle_timeout", float),
    "CONVERSATION_MAX_MESSAGES": ("conversation_max_messages", int),
    "CONVERSATION_MAX_TOKENS": ("conversation_max_tokens", int),
    "THREAD_MODE": ("thread_mode_enabled", bool),
    "ASSISTANT_ID": ("assistant_id", str),
    "ASSISTANT_MODEL": ("assistant_model", str),
    "CHAT_MODEL": ("chat_model", str),
    "POLL_INTERVAL_SEC": ("poll_interval", float),
    "POLL_MAX_WAIT_SEC": ("poll_max_wait", float),
    "REQUEST_TIMEOUT_SEC": ("request_timeout", float),
    "MIN_CREDIT_BALANCE": ("min_credit_balance", int),
    "PAGE_LIMIT": ("page_limit", int),
    "KNOWLEDGE_LIMIT": ("knowledge_limit", int),
    "TOKENIZER": ("tokenizer", str),
    "ESCALATION_POLICY": ("escalation_policy", str),
    "AUDIT_QUEUE_SIZE": ("audit_queue_size", int),
    "PERSISTENCE_TIMEOUT_SEC": ("persistence_timeout", float),
}


class EngineConfig(BaseModel):
    """All tunables of the conversation engine.

    Defaults mirror the production deployment: 10-minute sessions capped at
    10 exchanges, a 3000-token context window and credit billing with a
    10-unit minimum balance.
    """

    # Session store
    session_timeout: float = Field(default=600.0, gt=0)
    session_max_turns: int = Field(default=10, gt=0)
    session_window: int = Field(default=5, gt=0)
    sweep_interval: float = Field(default=60.0, gt=0)

    # Context
    context_budget_tokens: int = Field(default=3000, gt=0)
    max_response_tokens: int = Field(default=1000, gt=0)
    history_limit: int = Field(default=20, gt=0)
    knowledge_limit: int = Field(default=5, ge=0)
    tokenizer: str = "estimate"

    # Durable conversation lifecycle
    conversation_idle_timeout: float = Field(default=3600.0, gt=0)
    conversation_max_messages: int = Field(default=100, gt=0)
    conversation_max_tokens: int = Field(default=50_000, gt=0)

    # Backends
    thread_mode_enabled: bool = False
    assistant_id: str = ""
    assistant_model: str = "gpt-4.1-mini"
    chat_model: str = "gpt-4-turbo-preview"
    poll_interval: float = Field(default=1.0, ge=0)
    poll_max_wait: float = Field(default=30.0, gt=0)
    request_timeout: float = Field(default=90.0, gt=0)
    api_key: str = ""

    # Billing
    min_credit_balance: int = Field(default=10, ge=0)

    # Compliance
    escalation_policy: str = "block"

    # Output
    page_limit: int = Field(default=2000, gt=0)

    # Audit
    audit_queue_size: int = Field(default=1000, gt=0)

    # Best-effort repository writes
    persistence_timeout: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> EngineConfig:
        if self.session_window >= self.session_max_turns:
            msg = "session_window must be smaller than session_max_turns"
            raise ValueError(msg)
        if self.poll_interval > self.poll_max_wait:
            msg = "poll_interval must not exceed poll_max_wait"
            raise ValueError(msg)
        if self.tokenizer not in _VALID_TOKENIZERS:
            msg = (
                f"Unknown tokenizer '{self.tokenizer}'. "
                f"Valid values: {', '.join(sorted(_VALID_TOKENIZERS))}"
            )
            raise ValueError(msg)
        if self.escalation_policy not in {"block", "annotate"}:
            msg = f"Unknown escalation policy '{self.escalation_policy}'"
            raise ValueError(msg)
        return self

    @classmethod
    def from_env(cls, prefix: str = "CHATGATE_", **overrides: Any) -> EngineConfig:
        """Build a config from ``CHATGATE_*`` environment variables.

        Explicit keyword *overrides* win over the environment. The API key
        falls back to ``OPENAI_API_KEY`` when ``CHATGATE_OPENAI_API_KEY`` is
        unset.
        """
        values: dict[str, Any] = {}
        for suffix, (field_name, parser) in _ENV_FIELDS.items():
            raw = os.environ.get(prefix + suffix, "").strip()
            if not raw:
                continue
            if parser is bool:
                values[field_name] = raw.lower() in _TRUE
            else:
                values[field_name] = parser(raw)

        api_key = os.environ.get(prefix + "OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY", "")
        if api_key:
            values["api_key"] = api_key.strip()

        values.update(overrides)
        return cls(**values)
