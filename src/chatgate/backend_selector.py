"""Backend selector: thread mode with one-way fallback to chat mode.

Each conversation carries a :class:`~chatgate.models.BackendState`. Thread
mode is attempted lazily, only while the feature flag is on; the first
thread-mode failure moves the conversation to ``chat_active`` for good.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from .errors import BackendError
from .models import BackendMode, BackendState, Conversation
from .provider import (
    TERMINAL_STATUSES,
    ChatBackend,
    ChatMessage,
    CompletionSettings,
    RunState,
    RunStatus,
    ThreadBackend,
    TokenUsage,
)
from .telemetry import trace_backend_call
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[BackendState, list[BackendState]] = {
    BackendState.NO_BACKEND_CHOSEN: [BackendState.THREAD_CREATING, BackendState.CHAT_ACTIVE],
    BackendState.THREAD_CREATING: [BackendState.THREAD_ACTIVE, BackendState.THREAD_FAILED],
    BackendState.THREAD_ACTIVE: [BackendState.THREAD_FAILED],
    BackendState.THREAD_FAILED: [BackendState.CHAT_ACTIVE],
    BackendState.CHAT_ACTIVE: [],  # terminal
}


def can_transition(current: BackendState, target: BackendState) -> bool:
    return target in _TRANSITIONS.get(current, [])


def transition(conversation: Conversation, target: BackendState) -> None:
    """Move *conversation* to *target*, raising ``ValueError`` if not allowed."""
    current = conversation.backend_state
    if not can_transition(current, target):
        raise ValueError(f"Invalid backend transition: {current} -> {target}")
    conversation.backend_state = target
    if target is BackendState.CHAT_ACTIVE:
        conversation.backend_mode = BackendMode.CHAT
    elif target is BackendState.THREAD_ACTIVE:
        conversation.backend_mode = BackendMode.THREAD


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass(frozen=True)
class BackendReply:
    text: str
    usage: TokenUsage
    model: str
    mode_used: BackendMode
    fell_back: bool = False


@dataclass(frozen=True)
class BackendOutcome:
    """``success`` carries a reply; the other kinds carry the error."""

    kind: OutcomeKind
    reply: BackendReply | None = None
    error: BackendError | None = None

    @classmethod
    def success(cls, reply: BackendReply) -> BackendOutcome:
        return cls(kind=OutcomeKind.SUCCESS, reply=reply)

    @classmethod
    def recoverable(cls, error: BackendError) -> BackendOutcome:
        return cls(kind=OutcomeKind.RECOVERABLE, error=error)

    @classmethod
    def fatal(cls, error: BackendError) -> BackendOutcome:
        return cls(kind=OutcomeKind.FATAL, error=error)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


def _as_backend_error(exc: Exception) -> BackendError:
    if isinstance(exc, BackendError):
        return exc
    return BackendError(f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class BackendSelector:
    """Routes one generation request to thread mode or chat mode."""

    def __init__(
        self,
        chat_backend: ChatBackend,
        thread_backend: ThreadBackend | None = None,
        thread_mode_enabled: bool = False,
        assistant_model: str = "gpt-4.1-mini",
        poll_interval: float = 1.0,
        poll_max_wait: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._chat = chat_backend
        self._thread = thread_backend
        self.thread_mode_enabled = thread_mode_enabled
        self.assistant_model = assistant_model
        self.poll_interval = poll_interval
        self.poll_max_wait = poll_max_wait
        self._clock = clock
        self._sleep = sleep

    def uses_thread_mode(self, conversation: Conversation) -> bool:
        """Whether the next call for *conversation* goes to thread mode."""
        if not self.thread_mode_enabled or self._thread is None:
            return False
        return conversation.backend_state in (
            BackendState.NO_BACKEND_CHOSEN,
            BackendState.THREAD_ACTIVE,
        )

    async def respond(
        self,
        conversation: Conversation,
        context_messages: list[ChatMessage],
        latest_message: str,
        settings: CompletionSettings,
        credential: str,
        images: tuple[str, ...] = (),
    ) -> BackendOutcome:
        """Generate a reply, falling back from thread to chat mode at most once.

        Updates ``conversation.backend_state`` (and ``thread_id``) in place;
        the caller persists it.
        """
        if self.uses_thread_mode(conversation):
            outcome = await self._respond_thread(conversation, latest_message, settings, credential)
            if outcome.ok:
                return outcome
            self._downgrade(conversation, outcome.error)
            chat = await self._respond_chat(context_messages, settings, credential, images)
            if chat.ok and chat.reply is not None:
                reply = chat.reply
                return BackendOutcome.success(
                    BackendReply(reply.text, reply.usage, reply.model, reply.mode_used, fell_back=True)
                )
            return chat

        if conversation.backend_state is BackendState.NO_BACKEND_CHOSEN:
            transition(conversation, BackendState.CHAT_ACTIVE)
        return await self._respond_chat(context_messages, settings, credential, images)

    # -- chat mode ----------------------------------------------------------

    async def _respond_chat(
        self,
        messages: list[ChatMessage],
        settings: CompletionSettings,
        credential: str,
        images: tuple[str, ...],
    ) -> BackendOutcome:
        with trace_backend_call(BackendMode.CHAT, settings.model) as span:
            try:
                completion = await self._chat.complete(messages, settings, credential, images)
                if not completion.text.strip():
                    raise BackendError("chat completion returned no content", code="empty_response")
            except Exception as exc:  # noqa: BLE001
                err = _as_backend_error(exc)
                span.set_attribute("backend.error", err.code)
                logger.error("Chat-mode generation failed (%s): %s", err.code, err)
                return BackendOutcome.fatal(err)
        return BackendOutcome.success(
            BackendReply(
                text=completion.text,
                usage=completion.usage,
                model=completion.model,
                mode_used=BackendMode.CHAT,
            )
        )

    # -- thread mode --------------------------------------------------------

    async def _respond_thread(
        self,
        conversation: Conversation,
        latest_message: str,
        settings: CompletionSettings,
        credential: str,
    ) -> BackendOutcome:
        assert self._thread is not None
        run_settings = settings.model_copy(update={"model": self.assistant_model})
        with trace_backend_call(BackendMode.THREAD, run_settings.model) as span:
            try:
                if conversation.backend_state is BackendState.NO_BACKEND_CHOSEN:
                    transition(conversation, BackendState.THREAD_CREATING)
                    conversation.thread_id = await self._thread.create_thread(credential)
                    transition(conversation, BackendState.THREAD_ACTIVE)
                    logger.info("Created thread %s for conversation %s", conversation.thread_id, conversation.id)
                thread_id = conversation.thread_id
                if not thread_id:
                    raise BackendError("thread-mode conversation has no thread handle", code="run_failed")

                await self._thread.append_message(thread_id, latest_message, credential)
                run_id = await self._thread.start_run(thread_id, run_settings, credential)
                state = await self._await_run(thread_id, run_id, credential)
                if state.status is not RunStatus.COMPLETED:
                    raise BackendError(f"run {run_id} ended with status {state.status}", code="run_failed")

                text = await self._thread.get_latest_message(thread_id, credential)
                if not text.strip():
                    raise BackendError(f"run {run_id} produced no assistant message", code="empty_response")
            except Exception as exc:  # noqa: BLE001
                err = _as_backend_error(exc)
                span.set_attribute("backend.error", err.code)
                return BackendOutcome.recoverable(err)

        usage = state.usage or TokenUsage(
            prompt_tokens=estimate_tokens(latest_message),
            completion_tokens=estimate_tokens(text),
        )
        return BackendOutcome.success(
            BackendReply(text=text, usage=usage, model=run_settings.model, mode_used=BackendMode.THREAD)
        )

    async def _await_run(self, thread_id: str, run_id: str, credential: str) -> RunState:
        """Poll until a terminal status or the wall-clock ceiling."""
        assert self._thread is not None
        deadline = self._clock() + self.poll_max_wait
        while True:
            state = await self._thread.poll_run(thread_id, run_id, credential)
            if state.status in TERMINAL_STATUSES:
                return state
            if self._clock() >= deadline:
                msg = f"run {run_id} still {state.status} after {self.poll_max_wait:g}s"
                raise BackendError(msg, code="timeout")
            await self._sleep(self.poll_interval)

    def _downgrade(self, conversation: Conversation, error: BackendError | None) -> None:
        if conversation.backend_state is not BackendState.THREAD_FAILED:
            transition(conversation, BackendState.THREAD_FAILED)
        transition(conversation, BackendState.CHAT_ACTIVE)
        logger.warning(
            "Thread mode failed for conversation %s (%s); switching to chat mode permanently: %s",
            conversation.id,
            error.code if error else "unknown",
            error,
        )
