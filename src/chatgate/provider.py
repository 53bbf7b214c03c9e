"""Backend client abstraction: chat mode and thread mode, real and stub."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from enum import StrEnum

from pydantic import BaseModel, Field

from .errors import BackendError

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single role-tagged turn."""

    role: ChatRole
    content: str


class TokenUsage(BaseModel):
    """Token consumption metrics for a single generation."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CompletionSettings(BaseModel):
    """Generation parameters sent with every backend call."""

    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    instructions: str = ""


class Completion(BaseModel):
    """Result of a chat-mode completion."""

    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str


class RunStatus(StrEnum):
    """Lifecycle status of a thread-mode run."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Statuses after which polling stops
TERMINAL_STATUSES = frozenset(
    {
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.EXPIRED,
        RunStatus.REQUIRES_ACTION,
    }
)


class RunState(BaseModel):
    """Snapshot of a thread-mode run returned by polling."""

    run_id: str
    status: RunStatus
    usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Backend ABCs
# ---------------------------------------------------------------------------


class ChatBackend(ABC):
    """Stateless backend: the full context is sent on every call."""

    @abstractmethod
    def name(self) -> str:
        """Return the canonical backend name."""

    @abstractmethod
    async def complete(
        self,
        messages: list[ChatMessage],
        settings: CompletionSettings,
        credential: str,
        images: tuple[str, ...] = (),
    ) -> Completion:
        """Generate a reply to *messages*; *images* attach to the last user turn."""


class ThreadBackend(ABC):
    """Stateful backend: conversation state lives on the provider side."""

    @abstractmethod
    def name(self) -> str:
        """Return the canonical backend name."""

    @abstractmethod
    async def create_thread(self, credential: str) -> str:
        """Create a provider-side thread and return its handle."""

    @abstractmethod
    async def append_message(self, thread_id: str, text: str, credential: str) -> None:
        """Append a user message to the thread."""

    @abstractmethod
    async def start_run(
        self, thread_id: str, settings: CompletionSettings, credential: str
    ) -> str:
        """Trigger a run on the thread and return the run id."""

    @abstractmethod
    async def poll_run(self, thread_id: str, run_id: str, credential: str) -> RunState:
        """Return the current state of a run."""

    @abstractmethod
    async def get_latest_message(self, thread_id: str, credential: str) -> str:
        """Return the text of the newest assistant message on the thread."""


# ---------------------------------------------------------------------------
# Stub implementations (for testing / offline development)
# ---------------------------------------------------------------------------


class StubChatBackend(ChatBackend):
    """Returns canned replies without making network calls.

    Set ``fail_with`` to make every call raise that error, or pass a
    ``reply`` to control the text.
    """

    _CANNED = "This is a stub response for testing purposes."

    def __init__(self, reply: str | None = None, fail_with: Exception | None = None) -> None:
        self.reply = reply or self._CANNED
        self.fail_with = fail_with
        self.calls: list[list[ChatMessage]] = []

    def name(self) -> str:
        return "stub-chat"

    async def complete(
        self,
        messages: list[ChatMessage],
        settings: CompletionSettings,
        credential: str,
        images: tuple[str, ...] = (),
    ) -> Completion:
        self.calls.append(list(messages))
        if self.fail_with is not None:
            raise self.fail_with
        prompt_tokens = sum(len(m.content.split()) for m in messages)
        return Completion(
            text=self.reply,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=len(self.reply.split()),
            ),
            model=settings.model,
        )


class StubThreadBackend(ThreadBackend):
    """In-memory thread backend.

    ``statuses`` is the sequence of statuses returned by successive polls
    (the last one repeats). ``fail_on`` names an operation that raises.
    """

    def __init__(
        self,
        reply: str = "This is a stub thread response.",
        statuses: list[RunStatus] | None = None,
        fail_on: str | None = None,
    ) -> None:
        self.reply = reply
        self.statuses = statuses or [RunStatus.COMPLETED]
        self.fail_on = fail_on
        self.threads: dict[str, list[str]] = {}
        self.create_calls = 0
        self.poll_calls = 0

    def name(self) -> str:
        return "stub-thread"

    def _maybe_fail(self, operation: str) -> None:
        if self.fail_on == operation:
            msg = f"stub thread backend failure in {operation}"
            raise BackendError(msg, code="run_failed")

    async def create_thread(self, credential: str) -> str:
        self.create_calls += 1
        self._maybe_fail("create_thread")
        thread_id = f"thread_{uuid.uuid4().hex[:12]}"
        self.threads[thread_id] = []
        return thread_id

    async def append_message(self, thread_id: str, text: str, credential: str) -> None:
        self._maybe_fail("append_message")
        self.threads.setdefault(thread_id, []).append(text)

    async def start_run(
        self, thread_id: str, settings: CompletionSettings, credential: str
    ) -> str:
        self._maybe_fail("start_run")
        self.poll_calls = 0
        return f"run_{uuid.uuid4().hex[:12]}"

    async def poll_run(self, thread_id: str, run_id: str, credential: str) -> RunState:
        self._maybe_fail("poll_run")
        idx = min(self.poll_calls, len(self.statuses) - 1)
        self.poll_calls += 1
        status = self.statuses[idx]
        usage = None
        if status == RunStatus.COMPLETED:
            prompt = sum(len(t.split()) for t in self.threads.get(thread_id, []))
            usage = TokenUsage(prompt_tokens=prompt, completion_tokens=len(self.reply.split()))
        return RunState(run_id=run_id, status=status, usage=usage)

    async def get_latest_message(self, thread_id: str, credential: str) -> str:
        self._maybe_fail("get_latest_message")
        return self.reply
