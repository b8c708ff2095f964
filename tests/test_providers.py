"""Tests for eklavya/providers: error taxonomy and the SDK adapters, driven by fake clients."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest
from google.genai import errors as genai_errors

from config.config_loader import ModelConfig
from eklavya.providers.anthropic import AnthropicProvider
from eklavya.providers.base import ErrorKind, ProviderAborted, ProviderError, StreamAborted, kind_for_status
from eklavya.providers.gemini import GeminiProvider
from eklavya.providers.openai_provider import OpenAIProvider


@pytest.mark.parametrize(
    ("status", "kind"),
    [(401, ErrorKind.AUTH), (403, ErrorKind.AUTH), (408, ErrorKind.TIMEOUT), (429, ErrorKind.RATE_LIMIT),
     (503, ErrorKind.OVERLOADED), (529, ErrorKind.OVERLOADED), (500, ErrorKind.SERVER), (502, ErrorKind.SERVER),
     (400, ErrorKind.BAD_REQUEST), (404, ErrorKind.BAD_REQUEST), (None, ErrorKind.UNKNOWN)],
)
def test_kind_for_status(status, kind):
    assert kind_for_status(status) == kind


def test_user_message_hides_raw_payload():
    exc = ProviderError("anthropic", '{"error": {"type": "overloaded_error", "secret": "xyz"}}', ErrorKind.OVERLOADED)
    message = exc.user_message()
    assert "anthropic" in message
    assert "overloaded" in message
    assert "secret" not in message


def test_provider_aborted_is_distinguishable():
    exc = ProviderAborted("openai")
    assert isinstance(exc, ProviderError)
    assert exc.kind == ErrorKind.ABORTED
    assert not exc.retryable


# ─── SDK adapters with fake clients ──────────────────────────────────────────

_REQUEST = httpx.Request("POST", "https://api.example.test/v1")


def _build(cls, monkeypatch, name: str):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")
    provider = cls(ModelConfig(
        name=name, sdk=name, model=f"{name}-model", api_key_env="TEST_PROVIDER_KEY", timeout_sec=5,
    ))
    provider._client = MagicMock()
    return provider


async def _aiter(items):
    for item in items:
        yield item


def _refuse(token: str) -> None:
    raise StreamAborted()


@pytest.mark.parametrize("cls", [AnthropicProvider, OpenAIProvider, GeminiProvider])
def test_missing_api_key_is_auth_error(cls, monkeypatch):
    monkeypatch.delenv("TEST_PROVIDER_KEY", raising=False)
    with pytest.raises(ProviderError) as exc_info:
        cls(ModelConfig(name="x", sdk="x", model="m", api_key_env="TEST_PROVIDER_KEY", timeout_sec=5))
    assert exc_info.value.kind == ErrorKind.AUTH


class _FakeAnthropicStream:
    def __init__(self, chunks: list[str]) -> None:
        self._chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        return _aiter(self._chunks)

    async def get_final_message(self):
        return SimpleNamespace(usage=SimpleNamespace(input_tokens=10, output_tokens=3))


async def test_anthropic_sends_system_and_prefill(monkeypatch):
    provider = _build(AnthropicProvider, monkeypatch, "anthropic")
    provider._client.messages.create = AsyncMock(return_value=SimpleNamespace(
        content=[SimpleNamespace(type="text", text='"decisions": []}')],
        usage=SimpleNamespace(input_tokens=12, output_tokens=4),
    ))

    response = await provider.generate("be brief", "question", max_tokens=50, temperature=0.3, prefill="{")

    assert response.content == '{"decisions": []}'
    assert response.token_count == 16
    request = provider._client.messages.create.call_args.kwargs
    assert request["system"] == "be brief"
    assert request["model"] == "anthropic-model"
    assert request["messages"] == [
        {"role": "user", "content": "question"},
        {"role": "assistant", "content": "{"},
    ]


async def test_anthropic_streams_prefill_first(monkeypatch):
    provider = _build(AnthropicProvider, monkeypatch, "anthropic")
    provider._client.messages.stream = MagicMock(return_value=_FakeAnthropicStream(["a", "", "b"]))
    tokens: list[str] = []

    response = await provider.generate("s", "u", max_tokens=10, temperature=0.5, on_token=tokens.append, prefill="[")

    assert tokens == ["[", "a", "b"]
    assert response.content == "[ab"
    assert response.token_count == 13


async def test_anthropic_closed_consumer_aborts(monkeypatch):
    provider = _build(AnthropicProvider, monkeypatch, "anthropic")
    provider._client.messages.stream = MagicMock(return_value=_FakeAnthropicStream(["a", "b"]))
    with pytest.raises(ProviderAborted):
        await provider.generate("s", "u", max_tokens=10, temperature=0.5, on_token=_refuse)


async def test_anthropic_no_text_blocks_is_empty_response(monkeypatch):
    provider = _build(AnthropicProvider, monkeypatch, "anthropic")
    provider._client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[], usage=None))
    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("s", "u", max_tokens=10, temperature=0.5)
    assert exc_info.value.kind == ErrorKind.EMPTY_RESPONSE


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (anthropic.APITimeoutError(request=_REQUEST), ErrorKind.TIMEOUT),
        (anthropic.APIConnectionError(request=_REQUEST), ErrorKind.CONNECTION),
        (anthropic.APIStatusError("overloaded", response=httpx.Response(529, request=_REQUEST), body=None),
         ErrorKind.OVERLOADED),
        (anthropic.APIStatusError("bad key", response=httpx.Response(401, request=_REQUEST), body=None),
         ErrorKind.AUTH),
        (ValueError("odd"), ErrorKind.UNKNOWN),
    ],
)
async def test_anthropic_sdk_errors_are_classified(monkeypatch, exc, kind):
    provider = _build(AnthropicProvider, monkeypatch, "anthropic")
    provider._client.messages.create = AsyncMock(side_effect=exc)
    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("s", "u", max_tokens=10, temperature=0.5)
    assert exc_info.value.kind == kind


async def test_openai_puts_system_message_first(monkeypatch):
    provider = _build(OpenAIProvider, monkeypatch, "openai")
    provider._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="A point."))],
        usage=SimpleNamespace(total_tokens=9),
    ))

    response = await provider.generate("persona", "question", model="gpt-big", max_tokens=40, temperature=0.9)

    assert response.content == "A point."
    assert response.model == "gpt-big"
    request = provider._client.chat.completions.create.call_args.kwargs
    assert request["messages"] == [
        {"role": "system", "content": "persona"},
        {"role": "user", "content": "question"},
    ]
    assert (request["max_tokens"], request["temperature"]) == (40, 0.9)


async def test_openai_streams_tokens_and_usage(monkeypatch):
    provider = _build(OpenAIProvider, monkeypatch, "openai")
    chunks = [
        SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel"))]),
        SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
        SimpleNamespace(usage=None, choices=[SimpleNamespace(delta=SimpleNamespace(content="lo"))]),
        SimpleNamespace(usage=SimpleNamespace(total_tokens=7), choices=[]),
    ]
    provider._client.chat.completions.create = AsyncMock(return_value=_aiter(chunks))
    tokens: list[str] = []

    response = await provider.generate("", "u", max_tokens=10, temperature=0.5, on_token=tokens.append)

    assert tokens == ["Hel", "lo"]
    assert response.content == "Hello"
    assert response.token_count == 7
    request = provider._client.chat.completions.create.call_args.kwargs
    assert request["stream"] is True
    assert request["messages"] == [{"role": "user", "content": "u"}]


async def test_openai_empty_content(monkeypatch):
    provider = _build(OpenAIProvider, monkeypatch, "openai")
    provider._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=None))], usage=None,
    ))
    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("s", "u", max_tokens=10, temperature=0.5)
    assert exc_info.value.kind == ErrorKind.EMPTY_RESPONSE
    assert exc_info.value.retryable


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (openai.APITimeoutError(request=_REQUEST), ErrorKind.TIMEOUT),
        (openai.APIConnectionError(request=_REQUEST), ErrorKind.CONNECTION),
        (openai.APIStatusError("slow down", response=httpx.Response(429, request=_REQUEST), body=None),
         ErrorKind.RATE_LIMIT),
    ],
)
async def test_openai_sdk_errors_are_classified(monkeypatch, exc, kind):
    provider = _build(OpenAIProvider, monkeypatch, "openai")
    provider._client.chat.completions.create = AsyncMock(side_effect=exc)
    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("s", "u", max_tokens=10, temperature=0.5)
    assert exc_info.value.kind == kind


async def test_gemini_uses_system_instruction(monkeypatch):
    provider = _build(GeminiProvider, monkeypatch, "gemini")
    provider._client.aio.models.generate_content = AsyncMock(return_value=SimpleNamespace(
        text="Consider the cost.", usage_metadata=SimpleNamespace(total_token_count=21),
    ))

    response = await provider.generate("persona rules", "question", max_tokens=30, temperature=0.2)

    assert response.content == "Consider the cost."
    assert response.token_count == 21
    call = provider._client.aio.models.generate_content.call_args.kwargs
    assert call["contents"] == "question"
    assert call["config"].system_instruction == "persona rules"
    assert call["config"].max_output_tokens == 30


async def test_gemini_streams_and_aborts(monkeypatch):
    provider = _build(GeminiProvider, monkeypatch, "gemini")
    chunks = [SimpleNamespace(text="one ", usage_metadata=None), SimpleNamespace(text="two", usage_metadata=None)]

    provider._client.aio.models.generate_content_stream = AsyncMock(return_value=_aiter(chunks))
    tokens: list[str] = []
    response = await provider.generate("s", "u", max_tokens=10, temperature=0.5, on_token=tokens.append)
    assert tokens == ["one ", "two"]
    assert response.content == "one two"

    provider._client.aio.models.generate_content_stream = AsyncMock(return_value=_aiter(chunks))
    with pytest.raises(ProviderAborted):
        await provider.generate("s", "u", max_tokens=10, temperature=0.5, on_token=_refuse)


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (genai_errors.ServerError(503, {"error": {"code": 503, "message": "busy", "status": "UNAVAILABLE"}}),
         ErrorKind.OVERLOADED),
        (httpx.ConnectTimeout("slow", request=_REQUEST), ErrorKind.TIMEOUT),
        (httpx.ConnectError("refused", request=_REQUEST), ErrorKind.CONNECTION),
    ],
)
async def test_gemini_errors_are_classified(monkeypatch, exc, kind):
    provider = _build(GeminiProvider, monkeypatch, "gemini")
    provider._client.aio.models.generate_content = AsyncMock(side_effect=exc)
    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("s", "u", max_tokens=10, temperature=0.5)
    assert exc_info.value.kind == kind
