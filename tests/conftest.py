"""Shared pytest fixtures."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from config.config_loader import (
    AppConfig,
    CatalogConfig,
    DefaultsConfig,
    GenerationConfig,
    InboxConfig,
    ModelConfig,
    RetryConfig,
    RunOptions,
    TurnParams,
)
from eklavya.adapter import GenerationAdapter
from eklavya.models import Council, ModelResponse, Participant
from eklavya.providers.base import AIProvider, ProviderAborted, StreamAborted, TokenCallback
from eklavya.retry import RetryPolicy


@dataclass
class RecordedCall:
    system: str
    user: str
    model: str | None
    max_tokens: int
    temperature: float
    streamed: bool
    prefill: str | None


class MockProvider(AIProvider):
    """Test double AIProvider.

    Replies are taken from ``script`` in order; an Exception entry is raised
    instead of returned. Once the script is used up, ``responder`` (or a
    numbered default) supplies the text. Streaming splits the reply on spaces.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        script: list[str | Exception] | None = None,
        responder: Callable[[str, str], str] | None = None,
        supports_prefill: bool = False,
    ) -> None:
        super().__init__(ModelConfig(
            name=provider_name,
            sdk="mock",
            model="mock-model",
            api_key_env="MOCK_API_KEY",
            timeout_sec=5,
        ))
        self.script = list(script or [])
        self.responder = responder
        self.supports_prefill = supports_prefill
        self.calls: list[RecordedCall] = []

    async def generate(
        self,
        system: str,
        user: str,
        *,
        model: str | None = None,
        max_tokens: int,
        temperature: float,
        on_token: TokenCallback | None = None,
        prefill: str | None = None,
    ) -> ModelResponse:
        await asyncio.sleep(0)
        self.calls.append(RecordedCall(system, user, model, max_tokens, temperature, on_token is not None, prefill))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, Exception):
                raise item
            content = item
        elif self.responder:
            content = self.responder(system, user)
        else:
            content = f"{self.name()} reply {len(self.calls)}"

        if on_token is not None:
            try:
                for i, word in enumerate(content.split(" ")):
                    on_token(word if i == 0 else " " + word)
            except StreamAborted as exc:
                raise ProviderAborted(self.name()) from exc
        if prefill and self.supports_prefill:
            content = prefill + content

        return ModelResponse(
            provider=self.name(),
            model=model or self.model_string(),
            content=content,
            latency_sec=0.01,
            token_count=len(content.split()),
        )


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def zero_delay_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay_sec=0.0)


@pytest.fixture
def make_adapter(zero_delay_policy: RetryPolicy) -> Callable[..., GenerationAdapter]:
    def _make(*providers: MockProvider, stream: bool = True) -> GenerationAdapter:
        return GenerationAdapter({p.name(): p for p in providers}, retry_policy=zero_delay_policy, stream=stream)

    return _make


@pytest.fixture
def generation_config() -> GenerationConfig:
    return GenerationConfig(
        opening=TurnParams(max_tokens=150, temperature=0.5),
        summary=TurnParams(max_tokens=180, temperature=0.4),
        synthesis=TurnParams(max_tokens=1200, temperature=0.2),
    )


@pytest.fixture
def participants() -> list[Participant]:
    return [
        Participant(
            id="skeptic",
            name="The Skeptic",
            role="Senior Engineer",
            expertise=("failure modes", "technical debt"),
            style="Challenges every assumption.",
            contrarian_level=0.9,
            bias="Most estimates are optimistic.",
        ),
        Participant(
            id="pragmatist",
            name="The Pragmatist",
            role="Staff Engineer",
            expertise=("delivery", "tradeoffs"),
            style="Focused on what can ship this week.",
            contrarian_level=0.5,
            verbosity="brief",
        ),
        Participant(
            id="mentor",
            name="The Mentor",
            role="Experienced Advisor",
            expertise=("career growth",),
            style="Asks more questions than gives answers.",
            contrarian_level=0.2,
            verbosity="detailed",
        ),
    ]


@pytest.fixture
def council(participants: list[Participant]) -> Council:
    return Council(
        id="test-council",
        name="Test Council",
        description="Council used in tests.",
        persona_ids=tuple(p.id for p in participants),
        rounds=2,
        focus="architecture trade-offs",
    )


@pytest.fixture
def run_options() -> RunOptions:
    return RunOptions(
        provider="mock",
        rounds=2,
        stream=True,
        max_tokens_per_turn=400,
        council_id="test-council",
    )


@pytest.fixture
def sample_app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(
            provider="anthropic",
            council="software-architecture",
            min_rounds=1,
            max_rounds=3,
            stream=True,
            max_tokens_per_turn=400,
            sessions_dir=tmp_path / "sessions",
            output_dir=tmp_path / "output",
        ),
        models={
            "anthropic": ModelConfig(
                name="anthropic",
                sdk="anthropic",
                model="claude-3-5-sonnet-20241022",
                api_key_env="TEST_ANTHROPIC_KEY",
                timeout_sec=60,
            ),
            "openai": ModelConfig(
                name="openai",
                sdk="openai",
                model="gpt-4o",
                api_key_env="TEST_OPENAI_KEY",
                timeout_sec=60,
            ),
        },
        generation=GenerationConfig(
            opening=TurnParams(max_tokens=150, temperature=0.5),
            summary=TurnParams(max_tokens=180, temperature=0.4),
            synthesis=TurnParams(max_tokens=1200, temperature=0.2),
        ),
        retry=RetryConfig(max_retries=2, base_delay_sec=1.5),
        inbox=InboxConfig(dir=tmp_path / "inbox", archive_dir=tmp_path / "inbox" / "archive"),
        catalog=CatalogConfig(),
        available_providers={"anthropic"},
    )
