"""Tests for the OpenAI adapters, with the SDK client mocked out."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from chatgate.config import EngineConfig
from chatgate.errors import BackendError
from chatgate.openai_backend import (
    OpenAIChatBackend,
    OpenAIThreadBackend,
    _to_openai_messages,
    build_backends,
    map_openai_error,
)
from chatgate.provider import ChatMessage, ChatRole, CompletionSettings, RunStatus

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
SETTINGS = CompletionSettings(model="gpt-4", temperature=0.5, max_tokens=200, instructions="be brief")
MESSAGES = [
    ChatMessage(role=ChatRole.SYSTEM, content="sys"),
    ChatMessage(role=ChatRole.USER, content="hello"),
]


def _status_error(cls, status: int, body=None):
    return cls("api error", response=httpx.Response(status, request=_REQUEST), body=body)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def test_rate_limit_mapped():
    assert map_openai_error(_status_error(openai.RateLimitError, 429)).code == "rate_limited"


def test_insufficient_quota_mapped():
    err = _status_error(openai.RateLimitError, 429, body={"code": "insufficient_quota"})
    assert map_openai_error(err).code == "quota_exceeded"


@pytest.mark.parametrize(
    ("cls", "status"),
    [(openai.AuthenticationError, 401), (openai.PermissionDeniedError, 403)],
)
def test_credential_errors_mapped(cls, status):
    assert map_openai_error(_status_error(cls, status)).code == "invalid_credential"


def test_timeout_mapped():
    assert map_openai_error(openai.APITimeoutError(request=_REQUEST)).code == "timeout"


def test_other_errors_unknown():
    err = _status_error(openai.InternalServerError, 500)
    mapped = map_openai_error(err)
    assert mapped.code == "unknown"
    assert "InternalServerError" in str(mapped)


def test_backend_error_passes_through():
    original = BackendError("x", code="run_failed")
    assert map_openai_error(original) is original


# ---------------------------------------------------------------------------
# Chat mode
# ---------------------------------------------------------------------------


def test_images_attach_to_last_user_turn():
    translated = _to_openai_messages(MESSAGES, ("https://cdn.example/a.png",))
    assert translated[0] == {"role": "system", "content": "sys"}
    parts = translated[1]["content"]
    assert parts[0] == {"type": "text", "text": "hello"}
    assert parts[1] == {"type": "image_url", "image_url": {"url": "https://cdn.example/a.png"}}


def _chat_client(response=None, error=None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=error)
    client.close = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_chat_completion():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="Hi there!"))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
        model="gpt-4-0613",
    )
    client = _chat_client(response)
    with patch("chatgate.openai_backend.AsyncOpenAI", return_value=client) as factory:
        backend = OpenAIChatBackend(timeout=5.0)
        completion = await backend.complete(MESSAGES, SETTINGS, "sk-test")
        await backend.complete(MESSAGES, SETTINGS, "sk-test")

    assert completion.text == "Hi there!"
    assert completion.usage.total_tokens == 15
    assert completion.model == "gpt-4-0613"
    factory.assert_called_once_with(api_key="sk-test", base_url=None, timeout=5.0)
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-4"
    assert kwargs["max_tokens"] == 200
    assert kwargs["temperature"] == 0.5


@pytest.mark.asyncio
async def test_client_per_credential():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="ok"))], usage=None, model=None
    )
    with patch("chatgate.openai_backend.AsyncOpenAI", side_effect=lambda **_: _chat_client(response)) as factory:
        backend = OpenAIChatBackend()
        await backend.complete(MESSAGES, SETTINGS, "sk-shared")
        completion = await backend.complete(MESSAGES, SETTINGS, "sk-own")
        await backend.close()
    assert factory.call_count == 2
    assert completion.model == "gpt-4"
    assert completion.usage.total_tokens == 0


@pytest.mark.asyncio
async def test_chat_sdk_error_mapped():
    client = _chat_client(error=_status_error(openai.RateLimitError, 429))
    with patch("chatgate.openai_backend.AsyncOpenAI", return_value=client):
        with pytest.raises(BackendError) as excinfo:
            await OpenAIChatBackend().complete(MESSAGES, SETTINGS, "sk-test")
    assert excinfo.value.code == "rate_limited"


@pytest.mark.asyncio
async def test_no_choices_is_empty_response():
    client = _chat_client(SimpleNamespace(choices=[], usage=None, model="gpt-4"))
    with patch("chatgate.openai_backend.AsyncOpenAI", return_value=client):
        with pytest.raises(BackendError) as excinfo:
            await OpenAIChatBackend().complete(MESSAGES, SETTINGS, "sk-test")
    assert excinfo.value.code == "empty_response"


@pytest.mark.asyncio
async def test_missing_credential():
    with pytest.raises(BackendError) as excinfo:
        await OpenAIChatBackend().complete(MESSAGES, SETTINGS, "")
    assert excinfo.value.code == "invalid_credential"


# ---------------------------------------------------------------------------
# Thread mode
# ---------------------------------------------------------------------------


def test_thread_backend_requires_assistant():
    with pytest.raises(ValueError):
        OpenAIThreadBackend("")


def _thread_client(status: str = "completed") -> MagicMock:
    client = MagicMock()
    threads = client.beta.threads
    threads.create = AsyncMock(return_value=SimpleNamespace(id="thread_1"))
    threads.messages.create = AsyncMock()
    threads.runs.create = AsyncMock(return_value=SimpleNamespace(id="run_1"))
    threads.runs.retrieve = AsyncMock(
        return_value=SimpleNamespace(
            status=status,
            usage=SimpleNamespace(prompt_tokens=30, completion_tokens=10),
        )
    )
    text_block = SimpleNamespace(type="text", text=SimpleNamespace(value="Thread answer"))
    threads.messages.list = AsyncMock(
        return_value=SimpleNamespace(
            data=[
                SimpleNamespace(role="user", content=[]),
                SimpleNamespace(role="assistant", content=[text_block]),
            ]
        )
    )
    return client


@pytest.mark.asyncio
async def test_thread_flow():
    client = _thread_client()
    with patch("chatgate.openai_backend.AsyncOpenAI", return_value=client):
        backend = OpenAIThreadBackend("asst_123")
        thread_id = await backend.create_thread("sk-test")
        await backend.append_message(thread_id, "hello", "sk-test")
        run_id = await backend.start_run(thread_id, SETTINGS, "sk-test")
        state = await backend.poll_run(thread_id, run_id, "sk-test")
        text = await backend.get_latest_message(thread_id, "sk-test")

    assert thread_id == "thread_1"
    assert run_id == "run_1"
    assert state.status is RunStatus.COMPLETED
    assert state.usage.total_tokens == 40
    assert text == "Thread answer"
    run_kwargs = client.beta.threads.runs.create.await_args.kwargs
    assert run_kwargs["assistant_id"] == "asst_123"
    assert run_kwargs["additional_instructions"] == "be brief"
    assert run_kwargs["max_completion_tokens"] == 200


@pytest.mark.asyncio
async def test_unexpected_run_status_counts_as_failed():
    with patch("chatgate.openai_backend.AsyncOpenAI", return_value=_thread_client("incomplete")):
        state = await OpenAIThreadBackend("asst_123").poll_run("thread_1", "run_1", "sk-test")
    assert state.status is RunStatus.FAILED


@pytest.mark.asyncio
async def test_thread_sdk_error_mapped():
    client = _thread_client()
    client.beta.threads.create.side_effect = _status_error(openai.AuthenticationError, 401)
    with patch("chatgate.openai_backend.AsyncOpenAI", return_value=client):
        with pytest.raises(BackendError) as excinfo:
            await OpenAIThreadBackend("asst_123").create_thread("sk-bad")
    assert excinfo.value.code == "invalid_credential"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def test_build_backends_chat_only_by_default():
    chat, thread = build_backends(EngineConfig(assistant_id="asst_123"))
    assert isinstance(chat, OpenAIChatBackend)
    assert thread is None


def test_build_backends_thread_mode_uses_assistant_id():
    _, thread = build_backends(EngineConfig(thread_mode_enabled=True, assistant_id="asst_123"))
    assert isinstance(thread, OpenAIThreadBackend)
    assert thread.assistant_id == "asst_123"


def test_build_backends_thread_mode_without_assistant_id():
    _, thread = build_backends(EngineConfig(thread_mode_enabled=True))
    assert thread is None
