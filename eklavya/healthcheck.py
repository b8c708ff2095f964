"""Backend health checks for ``eklavya status --check``."""

import asyncio
import logging
import time
from dataclasses import dataclass

from eklavya.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)

_PING_SYSTEM = "You are a connectivity check."
_PING_PROMPT = "Reply with the word OK only."
_PING_MAX_TOKENS = 5
_TIMEOUT_SEC = 15.0


@dataclass
class HealthResult:
    backend: str
    model: str
    ok: bool
    error: str = ""
    latency_sec: float = 0.0


async def _check_one(name: str, provider: AIProvider) -> HealthResult:
    start = time.monotonic()
    error = ""
    try:
        await asyncio.wait_for(
            provider.generate(_PING_SYSTEM, _PING_PROMPT, max_tokens=_PING_MAX_TOKENS, temperature=0.0),
            timeout=_TIMEOUT_SEC,
        )
    except ProviderError as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        error = exc.user_message()
    except TimeoutError:
        error = f"no reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        logger.debug("Health check failed for %s: %r", name, exc)
        error = str(exc) or type(exc).__name__
    return HealthResult(
        backend=name,
        model=provider.model_string(),
        ok=not error,
        error=error,
        latency_sec=round(time.monotonic() - start, 2),
    )


async def run_health_checks(providers: dict[str, AIProvider]) -> dict[str, HealthResult]:
    """Ping every backend concurrently with a tiny, non-streamed prompt."""
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return {r.backend: r for r in results}
