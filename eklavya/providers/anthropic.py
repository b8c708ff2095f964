"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time
from typing import Any

import anthropic as anthropic_sdk

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


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    supports_prefill = True

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorKind.AUTH)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def _classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, anthropic_sdk.APITimeoutError):
            kind = ErrorKind.TIMEOUT
        elif isinstance(exc, anthropic_sdk.APIConnectionError):
            kind = ErrorKind.CONNECTION
        elif isinstance(exc, anthropic_sdk.APIStatusError):
            kind = kind_for_status(exc.status_code)
        else:
            kind = ErrorKind.UNKNOWN
        logger.debug("Anthropic raw error (%s): %r", kind.value, exc)
        return ProviderError(self._config.name, f"API call failed: {exc}", kind)

    async def _stream(self, request: dict[str, Any], on_token: TokenCallback) -> tuple[str, Any]:
        parts: list[str] = []
        async with self._client.messages.stream(**request) as stream:
            async for text in stream.text_stream:
                if text:
                    parts.append(text)
                    on_token(text)
            final = await stream.get_final_message()
        return "".join(parts), final.usage

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
        messages: list[dict[str, str]] = [{"role": "user", "content": user}]
        if prefill:
            # Continuation prefill: the reply is forced to start with this text
            messages.append({"role": "assistant", "content": prefill})
        request: dict[str, Any] = {
            "model": model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            request["system"] = system

        start = time.monotonic()
        try:
            if on_token is None:
                response = await asyncio.wait_for(
                    self._client.messages.create(**request),
                    timeout=self._config.timeout_sec,
                )
                text = "".join(b.text for b in response.content if b.type == "text")
                usage = response.usage
            else:
                if prefill:
                    on_token(prefill)
                text, usage = await asyncio.wait_for(
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

        if not text:
            raise ProviderError(self._config.name, "No text blocks in response", ErrorKind.EMPTY_RESPONSE)

        content = f"{prefill}{text}" if prefill else text

        token_count: int | None = None
        if usage:
            token_count = usage.input_tokens + usage.output_tokens

        logger.info("Anthropic %s: %.2fs, %s tokens", model_name, latency, token_count)

        return ModelResponse(
            provider=self._config.name,
            model=model_name,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
