"""OpenAI adapters for chat mode (chat completions) and thread mode (assistants).

Requires the ``openai`` package. A client is created per credential and
cached, because self-pay users bring their own key.
"""

from __future__ import annotations

import logging
from typing import Any

import openai
from openai import AsyncOpenAI

from .config import EngineConfig
from .errors import BackendError
from .provider import (
    ChatBackend,
    ChatMessage,
    ChatRole,
    Completion,
    CompletionSettings,
    RunState,
    RunStatus,
    ThreadBackend,
    TokenUsage,
)

logger = logging.getLogger(__name__)


def map_openai_error(exc: Exception) -> BackendError:
    """Translate an SDK exception into a coded :class:`BackendError`."""
    if isinstance(exc, BackendError):
        return exc
    if isinstance(exc, openai.RateLimitError):
        body = exc.body if isinstance(exc.body, dict) else {}
        code = "quota_exceeded" if body.get("code") == "insufficient_quota" else "rate_limited"
        return BackendError(str(exc), code=code)
    if isinstance(exc, openai.AuthenticationError | openai.PermissionDeniedError):
        return BackendError(str(exc), code="invalid_credential")
    if isinstance(exc, openai.APITimeoutError):
        return BackendError(str(exc), code="timeout")
    return BackendError(f"{type(exc).__name__}: {exc}", code="unknown")


class _ClientCache:
    def __init__(self, timeout: float, base_url: str | None) -> None:
        self._timeout = timeout
        self._base_url = base_url
        self._clients: dict[str, AsyncOpenAI] = {}

    def get(self, credential: str) -> AsyncOpenAI:
        if not credential:
            raise BackendError("no API credential configured", code="invalid_credential")
        client = self._clients.get(credential)
        if client is None:
            client = AsyncOpenAI(api_key=credential, base_url=self._base_url, timeout=self._timeout)
            self._clients[credential] = client
        return client

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


def _to_openai_messages(messages: list[ChatMessage], images: tuple[str, ...]) -> list[dict[str, Any]]:
    translated: list[dict[str, Any]] = [{"role": m.role.value, "content": m.content} for m in messages]
    if images:
        # Vision: attach image parts to the last user turn
        for entry in reversed(translated):
            if entry["role"] == ChatRole.USER.value:
                parts: list[dict[str, Any]] = [{"type": "text", "text": entry["content"]}]
                parts.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
                entry["content"] = parts
                break
    return translated


# ---------------------------------------------------------------------------
# Chat mode
# ---------------------------------------------------------------------------


class OpenAIChatBackend(ChatBackend):
    """Stateless chat completions."""

    def __init__(self, timeout: float = 60.0, base_url: str | None = None) -> None:
        self._clients = _ClientCache(timeout, base_url)

    def name(self) -> str:
        return "openai-chat"

    async def complete(
        self,
        messages: list[ChatMessage],
        settings: CompletionSettings,
        credential: str,
        images: tuple[str, ...] = (),
    ) -> Completion:
        client = self._clients.get(credential)
        try:
            response = await client.chat.completions.create(
                model=settings.model,
                messages=_to_openai_messages(messages, images),
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        if not response.choices:
            raise BackendError("chat completion returned no choices", code="empty_response")
        usage = response.usage
        return Completion(
            text=response.choices[0].message.content or "",
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
            ),
            model=response.model or settings.model,
        )

    async def close(self) -> None:
        await self._clients.close()


# ---------------------------------------------------------------------------
# Thread mode
# ---------------------------------------------------------------------------


class OpenAIThreadBackend(ThreadBackend):
    """Assistants threads and runs bound to one assistant id."""

    def __init__(self, assistant_id: str, timeout: float = 60.0, base_url: str | None = None) -> None:
        if not assistant_id:
            msg = "assistant_id is required for thread mode"
            raise ValueError(msg)
        self.assistant_id = assistant_id
        self._clients = _ClientCache(timeout, base_url)

    def name(self) -> str:
        return "openai-thread"

    async def create_thread(self, credential: str) -> str:
        client = self._clients.get(credential)
        try:
            thread = await client.beta.threads.create()
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc
        return thread.id

    async def append_message(self, thread_id: str, text: str, credential: str) -> None:
        client = self._clients.get(credential)
        try:
            await client.beta.threads.messages.create(thread_id, role="user", content=text)
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

    async def start_run(self, thread_id: str, settings: CompletionSettings, credential: str) -> str:
        client = self._clients.get(credential)
        try:
            run = await client.beta.threads.runs.create(
                thread_id=thread_id,
                assistant_id=self.assistant_id,
                model=settings.model,
                additional_instructions=settings.instructions or None,
                temperature=settings.temperature,
                max_completion_tokens=settings.max_tokens,
            )
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc
        return run.id

    async def poll_run(self, thread_id: str, run_id: str, credential: str) -> RunState:
        client = self._clients.get(credential)
        try:
            run = await client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        try:
            status = RunStatus(run.status)
        except ValueError:
            # incomplete and other provider statuses count as failures
            logger.warning("Run %s returned unexpected status %r", run_id, run.status)
            status = RunStatus.FAILED
        usage = None
        if run.usage is not None:
            usage = TokenUsage(
                prompt_tokens=run.usage.prompt_tokens,
                completion_tokens=run.usage.completion_tokens,
            )
        return RunState(run_id=run_id, status=status, usage=usage)

    async def get_latest_message(self, thread_id: str, credential: str) -> str:
        client = self._clients.get(credential)
        try:
            page = await client.beta.threads.messages.list(thread_id, order="desc", limit=10)
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        for message in page.data:
            if message.role != "assistant":
                continue
            parts = [block.text.value for block in message.content if block.type == "text"]
            return "\n".join(parts)
        return ""

    async def close(self) -> None:
        await self._clients.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_backends(
    config: EngineConfig, timeout: float = 60.0, base_url: str | None = None
) -> tuple[OpenAIChatBackend, OpenAIThreadBackend | None]:
    """Chat backend plus, when thread mode is on, an assistants backend.

    Thread mode without ``assistant_id`` is logged and left off; the engine
    then runs in chat mode only.
    """
    chat = OpenAIChatBackend(timeout=timeout, base_url=base_url)
    if not config.thread_mode_enabled:
        return chat, None
    if not config.assistant_id:
        logger.warning("Thread mode enabled but no assistant id configured; using chat mode only")
        return chat, None
    return chat, OpenAIThreadBackend(config.assistant_id, timeout=timeout, base_url=base_url)
