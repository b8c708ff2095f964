"""Tests for eklavya/adapter.py."""

import pytest

from config.config_loader import ConfigError
from eklavya.adapter import BackendTarget, GenerationAdapter, build_all_providers
from eklavya.providers.base import ErrorKind, ProviderError
from tests.conftest import MockProvider


async def test_generate_returns_full_text(make_adapter):
    provider = MockProvider(script=["hello there world"])
    adapter = make_adapter(provider)
    text = await adapter.generate(adapter.resolve("mock"), "sys", "usr", max_tokens=50, temperature=0.7)
    assert text == "hello there world"
    call = provider.calls[0]
    assert (call.system, call.user, call.max_tokens, call.temperature) == ("sys", "usr", 50, 0.7)


async def test_streaming_delivers_tokens_in_order(make_adapter):
    provider = MockProvider(script=["one two three"])
    adapter = make_adapter(provider)
    tokens: list[str] = []
    text = await adapter.generate(
        adapter.resolve("mock"), "s", "u", max_tokens=10, temperature=0.5, on_token=tokens.append,
    )
    assert "".join(tokens) == text == "one two three"
    assert provider.calls[0].streamed is True


async def test_streaming_disabled_buffers(make_adapter):
    provider = MockProvider(script=["one two"])
    adapter = make_adapter(provider, stream=False)
    tokens: list[str] = []
    await adapter.generate(adapter.resolve("mock"), "s", "u", max_tokens=10, temperature=0.5, on_token=tokens.append)
    assert tokens == []
    assert provider.calls[0].streamed is False


async def test_retries_transient_then_succeeds(make_adapter):
    provider = MockProvider(script=[
        ProviderError("mock", "busy", ErrorKind.OVERLOADED),
        ProviderError("mock", "slow", ErrorKind.TIMEOUT),
        "finally",
    ])
    adapter = make_adapter(provider)
    retries: list[int] = []
    text = await adapter.generate(
        adapter.resolve("mock"), "s", "u", max_tokens=10, temperature=0.5,
        on_retry=lambda n, exc: retries.append(n),
    )
    assert text == "finally"
    assert len(provider.calls) == 3
    assert retries == [1, 2]


class DropsMidStream(MockProvider):
    """Streams the first word of its first reply, then loses the connection."""

    async def generate(self, system, user, **kwargs):
        on_token = kwargs.get("on_token")
        if not self.calls and on_token is not None:
            def first_word_then_drop(text: str) -> None:
                on_token(text)
                raise ProviderError(self.name(), "connection reset", ErrorKind.CONNECTION)

            kwargs["on_token"] = first_word_then_drop
        return await super().generate(system, user, **kwargs)


async def test_failure_after_streamed_tokens_is_not_retried(make_adapter):
    provider = DropsMidStream(script=["PARTIAL rest of reply", "clean second attempt"])
    adapter = make_adapter(provider)
    tokens: list[str] = []
    retries: list[int] = []
    with pytest.raises(ProviderError) as exc_info:
        await adapter.generate(
            adapter.resolve("mock"), "s", "u", max_tokens=10, temperature=0.5,
            on_token=tokens.append, on_retry=lambda n, exc: retries.append(n),
        )
    assert exc_info.value.kind == ErrorKind.CONNECTION
    assert tokens == ["PARTIAL"]
    assert retries == []
    assert len(provider.calls) == 1


async def test_failure_before_first_token_is_still_retried(make_adapter):
    provider = MockProvider(script=[ProviderError("mock", "reset", ErrorKind.CONNECTION), "alpha beta"])
    adapter = make_adapter(provider)
    tokens: list[str] = []
    text = await adapter.generate(
        adapter.resolve("mock"), "s", "u", max_tokens=10, temperature=0.5, on_token=tokens.append,
    )
    assert text == "".join(tokens) == "alpha beta"
    assert len(provider.calls) == 2


async def test_non_retryable_surfaces_after_one_attempt(make_adapter):
    provider = MockProvider(script=[ProviderError("mock", "bad key", ErrorKind.AUTH), "never"])
    adapter = make_adapter(provider)
    with pytest.raises(ProviderError):
        await adapter.generate(adapter.resolve("mock"), "s", "u", max_tokens=10, temperature=0.5)
    assert len(provider.calls) == 1


async def test_prefill_included_in_returned_text(make_adapter):
    provider = MockProvider(script=['"decisions": []}'], supports_prefill=True)
    adapter = make_adapter(provider)
    target = adapter.resolve("mock")
    assert adapter.supports_prefill(target)
    text = await adapter.generate(target, "s", "u", max_tokens=10, temperature=0.2, prefill="{")
    assert text == '{"decisions": []}'


def test_resolve_uses_default_model_and_override(make_adapter):
    adapter = make_adapter(MockProvider())
    assert adapter.resolve("mock") == BackendTarget("mock", "mock-model")
    assert adapter.resolve("mock", "mock-large").label == "mock/mock-large"


def test_resolve_unknown_backend_never_falls_back(make_adapter):
    adapter = make_adapter(MockProvider("anthropic"))
    with pytest.raises(ConfigError, match="openai"):
        adapter.resolve("openai")


async def test_calls_go_to_resolved_backend_only(make_adapter):
    first, second = MockProvider("first"), MockProvider("second")
    adapter = make_adapter(first, second)
    await adapter.generate(adapter.resolve("second"), "s", "u", max_tokens=5, temperature=0.5)
    assert first.calls == []
    assert len(second.calls) == 1


def test_build_all_providers_only_available(sample_app_config):
    built = build_all_providers(sample_app_config, factory=lambda cfg: MockProvider(cfg.name))
    assert set(built) == {"anthropic"}


def test_build_all_providers_skips_failures(sample_app_config, caplog):
    def factory(cfg):
        raise ProviderError(cfg.name, "Missing API key", ErrorKind.AUTH)

    assert build_all_providers(sample_app_config, factory=factory) == {}
    assert "Failed to instantiate provider 'anthropic'" in caplog.text


def test_from_config_applies_stream_override(sample_app_config):
    adapter = GenerationAdapter.from_config(sample_app_config, stream=False, factory=lambda cfg: MockProvider(cfg.name))
    assert adapter.streaming is False
    assert adapter.backends == ["anthropic"]
