"""OpenAI provider using openai SDK with native async.

Also serves OpenAI-compatible endpoints when the model config sets base_url.
"""

import asyncio
import logging
import os
import time
from typing import Any

import openai
from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from eklavya.models import ModelResponse
from eklavya.providers.base import (
    AIProvider,
    ErrorKind,
    ProviderAborted,
    ProviderError,
    StreamAborted,
    TokenCallback,
    kind_for_status,
)

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorKind.AUTH)
        if config.base_url:
            self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        else:
            self._client = AsyncOpenAI(api_key=api_key)

    def _classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.APITimeoutError):
            kind = ErrorKind.TIMEOUT
        elif isinstance(exc, openai.APIConnectionError):
            kind = ErrorKind.CONNECTION
        elif isinstance(exc, openai.APIStatusError):
            kind = kind_for_status(exc.status_code)
        else:
            kind = ErrorKind.UNKNOWN
        logger.debug("OpenAI raw error (%s): %r", kind.value, exc)
        return ProviderError(self._config.name, f"API call failed: {exc}", kind)

    async def _stream(self, request: dict[str, Any], on_token: TokenCallback) -> tuple[str, int | None]:
        parts: list[str] = []
        token_count: int | None = None
        stream = await self._client.chat.completions.create(
            **request,
            stream=True,
            stream_options={"include_usage": True},
        )
        async for chunk in stream:
            if chunk.usage:
                token_count = chunk.usage.total_tokens
            if not chunk.choices:
                continue
            token = chunk.choices[0].delta.content
            if token:
                parts.append(token)
                on_token(token)
        return "".join(parts), token_count

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
        model_name = model or self._config.model
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        request: dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        start = time.monotonic()
        try:
            if on_token is None:
                response = await asyncio.wait_for(
                    self._client.chat.completions.create(**request),
                    timeout=self._config.timeout_sec,
                )
                choice = response.choices[0] if response.choices else None
                content = choice.message.content if choice else None
                token_count = response.usage.total_tokens if response.usage else None
            else:
                content, token_count = await asyncio.wait_for(
                    self._stream(request, on_token),
                    timeout=self._config.timeout_sec,
                )
        except StreamAborted as exc:
            raise ProviderAborted(self._config.name) from exc
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name,
                f"Request timed out after {self._config.timeout_sec}s",
                ErrorKind.TIMEOUT,
            ) from exc
        except Exception as exc:
            raise self._classify(exc) from exc

        latency = time.monotonic() - start

        if not content:
            raise ProviderError(self._config.name, "Empty response content", ErrorKind.EMPTY_RESPONSE)

        logger.info("OpenAI %s: %.2fs, %s tokens", model_name, latency, token_count)

        return ModelResponse(
            provider=self._config.name,
            model=model_name,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
