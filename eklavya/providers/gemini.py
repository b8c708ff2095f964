"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorKind.AUTH)
        self._client = genai.Client(api_key=api_key)

    def _classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, genai_errors.APIError):
            kind = kind_for_status(exc.code)
        elif isinstance(exc, httpx.TimeoutException):
            kind = ErrorKind.TIMEOUT
        elif isinstance(exc, (httpx.TransportError, ConnectionError)):
            kind = ErrorKind.CONNECTION
        else:
            kind = ErrorKind.UNKNOWN
        logger.debug("Gemini raw error (%s): %r", kind.value, exc)
        return ProviderError(self._config.name, f"API call failed: {exc}", kind)

    async def _stream(
        self,
        model_name: str,
        user: str,
        config: genai_types.GenerateContentConfig,
        on_token: TokenCallback,
    ) -> tuple[str, int | None]:
        parts: list[str] = []
        token_count: int | None = None
        stream = await self._client.aio.models.generate_content_stream(
            model=model_name,
            contents=user,
            config=config,
        )
        async for chunk in stream:
            if chunk.usage_metadata:
                token_count = chunk.usage_metadata.total_token_count
            token = chunk.text
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
        # System text goes through system_instruction, never into the user turn
        config = genai_types.GenerateContentConfig(
            system_instruction=system or None,
            max_output_tokens=max_tokens,
            temperature=temperature,
        )

        start = time.monotonic()
        try:
            if on_token is None:
                response = await asyncio.wait_for(
                    self._client.aio.models.generate_content(
                        model=model_name,
                        contents=user,
                        config=config,
                    ),
                    timeout=self._config.timeout_sec,
                )
                content = response.text
                token_count = response.usage_metadata.total_token_count if response.usage_metadata else None
            else:
                content, token_count = await asyncio.wait_for(
                    self._stream(model_name, user, config, on_token),
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
            raise ProviderError(self._config.name, "Empty response text", ErrorKind.EMPTY_RESPONSE)

        logger.info("Gemini %s: %.2fs, %s tokens", model_name, latency, token_count)

        return ModelResponse(
            provider=self._config.name,
            model=model_name,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
