"""Durable records and request/response types."""

from __future__ import annotations

import time
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .provider import ChatRole


class ConversationCategory(StrEnum):
    """Conversation subject category. Everything but GENERAL is age-gated."""

    GENERAL = "general"
    CANNABIS_EDUCATION = "cannabis_education"
    STRAIN_ADVICE = "strain_advice"
    GROW_TIPS = "grow_tips"
    LEGAL_INFO = "legal_info"
    CULTIVATION_ADVICE = "cultivation_advice"

    @property
    def is_restricted(self) -> bool:
        return self is not ConversationCategory.GENERAL


class BackendMode(StrEnum):
    THREAD = "thread"
    CHAT = "chat"


class BackendState(StrEnum):
    """Per-conversation backend state machine (see ``backend_selector``)."""

    NO_BACKEND_CHOSEN = "no_backend_chosen"
    THREAD_CREATING = "thread_creating"
    THREAD_ACTIVE = "thread_active"
    THREAD_FAILED = "thread_failed"
    CHAT_ACTIVE = "chat_active"


# Forward order of backend states; stored records never move backwards
_BACKEND_PROGRESS: tuple[BackendState, ...] = tuple(BackendState)


class ResponseStyle(StrEnum):
    CONVERSATIONAL = "conversational"
    EDUCATIONAL = "educational"
    TECHNICAL = "technical"


class FilterStrictness(StrEnum):
    STRICT = "strict"
    MODERATE = "moderate"
    MINIMAL = "minimal"


class BillingMode(StrEnum):
    VIP = "vip"
    SELF_PAY = "self_pay"
    CREDIT = "credit"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Conversation(BaseModel):
    """Durable record of an ongoing exchange in one channel."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    guild_id: str
    channel_id: str
    category: ConversationCategory = ConversationCategory.GENERAL
    age_gated: bool = False
    message_count: int = 0
    token_count: int = 0
    started_at: float = Field(default_factory=time.time)
    last_activity_at: float = Field(default_factory=time.time)
    ended_at: float | None = None
    archived: bool = False
    end_reason: str | None = None
    thread_id: str | None = None
    backend_state: BackendState = BackendState.NO_BACKEND_CHOSEN
    backend_mode: BackendMode = BackendMode.CHAT

    model_config = ConfigDict(validate_assignment=True)

    @model_validator(mode="after")
    def _restricted_implies_gate(self) -> Conversation:
        if self.category.is_restricted and not self.age_gated:
            # validate_assignment re-enters this validator; bypass it
            object.__setattr__(self, "age_gated", True)
        return self

    def is_idle(self, now: float, idle_timeout: float) -> bool:
        return now - self.last_activity_at > idle_timeout

    def exceeds_caps(self, max_messages: int, max_tokens: int) -> bool:
        return self.message_count >= max_messages or self.token_count >= max_tokens

    def record_turn(self, tokens: int, now: float, messages: int = 1) -> None:
        self.message_count += messages
        self.token_count += tokens
        self.last_activity_at = now

    def absorb(self, other: Conversation) -> None:
        """Fold another copy's backend progress and age gate into this record.

        The backend state only moves forward, so a stale copy written back by
        an overlapping request cannot undo a downgrade to chat mode.
        """
        if _BACKEND_PROGRESS.index(other.backend_state) > _BACKEND_PROGRESS.index(self.backend_state):
            self.backend_state = other.backend_state
            self.backend_mode = other.backend_mode
        if self.thread_id is None:
            self.thread_id = other.thread_id
        if other.age_gated:
            self.age_gated = True

    def archive(self, reason: str, now: float) -> None:
        """Soft-end the conversation. Records are never hard-deleted."""
        self.archived = True
        self.ended_at = now
        self.end_reason = reason


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One durable turn. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    conversation_id: str
    user_id: str
    role: ChatRole
    content: str
    restricted_content: bool = False
    token_count: int = 0
    model: str | None = None
    backend_mode: BackendMode | None = None
    compliance_filtered: bool = False
    compliance_issues: tuple[str, ...] = ()
    cost: int = 0
    billing_mode: BillingMode | None = None
    has_attachments: bool = False
    created_at: float = Field(default_factory=time.time)


# ---------------------------------------------------------------------------
# UserPreferences
# ---------------------------------------------------------------------------


class UserPreferences(BaseModel):
    """Per (user, guild) assistant settings, validated on every write."""

    model_config = ConfigDict(validate_assignment=True)

    user_id: str
    guild_id: str
    restricted_assistance_enabled: bool = True
    response_style: ResponseStyle = ResponseStyle.CONVERSATIONAL
    max_response_length: int = Field(default=2000, ge=100, le=2000)
    filter_strictness: FilterStrictness = FilterStrictness.MODERATE
    history_enabled: bool = True
    include_disclaimers: bool = True
    use_own_api_key: bool = False
    own_api_key: str | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def _byok_needs_key(self) -> UserPreferences:
        if self.use_own_api_key and not self.own_api_key:
            msg = "use_own_api_key requires own_api_key"
            raise ValueError(msg)
        return self

    def reset(self) -> None:
        """Restore every setting to its default, keeping identity."""
        defaults = UserPreferences(user_id=self.user_id, guild_id=self.guild_id)
        for name in type(self).model_fields:
            if name in {"user_id", "guild_id"}:
                continue
            object.__setattr__(self, name, getattr(defaults, name))


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------

_IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".gif", ".webp")


class InboundMessage(BaseModel):
    """A user message handed to the orchestrator by the command layer."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1)
    guild_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    text: str = Field(min_length=1, max_length=2000)
    category: ConversationCategory = ConversationCategory.GENERAL
    image_urls: list[str] = Field(default_factory=list, max_length=4)

    @field_validator("image_urls")
    @classmethod
    def _check_images(cls, urls: list[str]) -> list[str]:
        for url in urls:
            if not url.startswith(("https://", "http://")):
                msg = f"image reference must be an http(s) URL: {url!r}"
                raise ValueError(msg)
        return urls

    def image_attachments(self) -> tuple[str, ...]:
        """Image references with a recognised image suffix."""
        return tuple(u for u in self.image_urls if u.lower().split("?")[0].endswith(_IMAGE_SUFFIXES))


class SessionInfo(BaseModel):
    turn_count: int
    max_turns: int
    seconds_remaining: int


class ChatResult(BaseModel):
    """Structured result returned to the command layer."""

    success: bool
    text: str = ""
    additional_pages: list[str] = Field(default_factory=list)
    compliance: dict[str, Any] = Field(default_factory=dict)
    usage: dict[str, Any] = Field(default_factory=dict)
    session: SessionInfo | None = None
    needs_verification: bool = False
    error: str | None = None
    error_code: str | None = None
    user_message: str | None = None
    suggestions: dict[str, list[str]] = Field(default_factory=dict)
    conversation_id: str | None = None

    @classmethod
    def failure(
        cls,
        error: str,
        code: str,
        user_message: str,
        **extra: Any,
    ) -> ChatResult:
        return cls(success=False, error=error, error_code=code, user_message=user_message, **extra)
