"""Uniform generation contract over the configured backends.

Resolves which backend/model serves a call, builds one provider client per
available backend, and applies the retry policy around every call.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

from config.config_loader import AppConfig, ConfigError, ModelConfig
from eklavya.providers.anthropic import AnthropicProvider
from eklavya.providers.base import AIProvider, TokenCallback
from eklavya.providers.gemini import GeminiProvider
from eklavya.providers.openai_provider import OpenAIProvider
from eklavya.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
}

ProviderFactory = Callable[[ModelConfig], AIProvider]


@dataclass(frozen=True)
class BackendTarget:
    backend: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.backend}/{self.model}"


def _default_factory(model_cfg: ModelConfig) -> AIProvider:
    if model_cfg.sdk not in PROVIDER_CLASSES:
        raise ConfigError(f"Unknown sdk '{model_cfg.sdk}' for provider '{model_cfg.name}'")
    return PROVIDER_CLASSES[model_cfg.sdk](model_cfg)


def build_all_providers(
    config: AppConfig,
    factory: ProviderFactory = _default_factory,
) -> dict[str, AIProvider]:
    """Build a provider for every backend with credentials. Returns dict keyed by name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        try:
            providers[name] = factory(model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


class GenerationAdapter:
    """One call contract across heterogeneous backends.

    Holds no per-session state: the provider map is built once and only read,
    so concurrent sessions can share an adapter.
    """

    def __init__(
        self,
        providers: dict[str, AIProvider],
        retry_policy: RetryPolicy | None = None,
        stream: bool = True,
    ) -> None:
        self._providers = dict(providers)
        self._retry_policy = retry_policy or RetryPolicy()
        self._stream = stream

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        stream: bool | None = None,
        factory: ProviderFactory = _default_factory,
    ) -> "GenerationAdapter":
        return cls(
            build_all_providers(config, factory),
            retry_policy=RetryPolicy.from_config(config.retry),
            stream=config.defaults.stream if stream is None else stream,
        )

    @property
    def streaming(self) -> bool:
        return self._stream

    @property
    def backends(self) -> list[str]:
        return sorted(self._providers)

    def provider(self, backend: str) -> AIProvider:
        if backend not in self._providers:
            available = ", ".join(self.backends) or "none"
            raise ConfigError(f"Provider '{backend}' is not available (configured: {available})")
        return self._providers[backend]

    def supports_prefill(self, target: BackendTarget) -> bool:
        return self.provider(target.backend).supports_prefill

    def resolve(self, backend: str, model: str | None = None) -> BackendTarget:
        """Pin the backend and model for a call.

        Raises ConfigError when the backend has no provider; there is no
        fallback to a different backend.
        """
        provider = self.provider(backend)
        return BackendTarget(backend=backend, model=model or provider.model_string())

    async def generate(
        self,
        target: BackendTarget,
        system: str,
        user: str,
        *,
        max_tokens: int,
        temperature: float,
        on_token: TokenCallback | None = None,
        prefill: str | None = None,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> str:
        """Generate text on ``target``; returns the full text.

        Streams only when ``on_token`` is given and streaming is enabled.

        Raises:
            ProviderError: non-retryable failure, retries exhausted, or a
                failure after streamed tokens were delivered.
        """
        provider = self.provider(target.backend)
        delivered = False

        def deliver(text: str) -> None:
            nonlocal delivered
            delivered = True
            on_token(text)

        token_sink = deliver if on_token is not None and self._stream else None
        policy = self._retry_policy
        if token_sink is not None:
            # tokens already shown cannot be taken back, so a failure after
            # the first one surfaces instead of being retried
            policy = replace(
                policy,
                is_retryable=lambda exc: not delivered and self._retry_policy.is_retryable(exc),
            )

        async def attempt() -> str:
            response = await provider.generate(
                system,
                user,
                model=target.model,
                max_tokens=max_tokens,
                temperature=temperature,
                on_token=token_sink,
                prefill=prefill,
            )
            return response.content

        return await call_with_retry(attempt, policy, label=target.label, on_retry=on_retry)
