"""Abstract base for all text-generation backends, plus the error taxonomy."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

from config.config_loader import ModelConfig
from eklavya.models import ModelResponse

TokenCallback = Callable[[str], None]


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    OVERLOADED = "overloaded"
    SERVER = "server"
    CONNECTION = "connection"
    EMPTY_RESPONSE = "empty_response"
    AUTH = "auth"
    BAD_REQUEST = "bad_request"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMIT,
    ErrorKind.OVERLOADED,
    ErrorKind.SERVER,
    ErrorKind.CONNECTION,
    ErrorKind.EMPTY_RESPONSE,
})

_USER_MESSAGES = {
    ErrorKind.TIMEOUT: "the request timed out",
    ErrorKind.RATE_LIMIT: "the backend is rate limiting requests",
    ErrorKind.OVERLOADED: "the backend is overloaded",
    ErrorKind.SERVER: "the backend returned a server error",
    ErrorKind.CONNECTION: "the backend could not be reached",
    ErrorKind.EMPTY_RESPONSE: "the backend returned an empty response",
    ErrorKind.AUTH: "authentication failed (check the API key)",
    ErrorKind.BAD_REQUEST: "the backend rejected the request",
    ErrorKind.ABORTED: "the stream was closed before the response finished",
    ErrorKind.UNKNOWN: "the backend call failed",
}


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> None:
        self.provider_name = provider_name
        self.kind = kind
        super().__init__(f"[{provider_name}] {message}")

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def user_message(self) -> str:
        """Classified, payload-free description safe to show an end user."""
        return f"{self.provider_name}: {_USER_MESSAGES[self.kind]} ({self.kind.value})"


class ProviderAborted(ProviderError):
    """The consumer closed the stream while a call was in flight."""

    def __init__(self, provider_name: str, message: str = "Stream closed by consumer") -> None:
        super().__init__(provider_name, message, ErrorKind.ABORTED)


class StreamAborted(Exception):
    """Raised by a token callback when its consumer has gone away."""


def kind_for_status(status_code: int | None) -> ErrorKind:
    """Map an HTTP status code onto the retry taxonomy."""
    if status_code is None:
        return ErrorKind.UNKNOWN
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (503, 529):
        return ErrorKind.OVERLOADED
    if status_code >= 500:
        return ErrorKind.SERVER
    if status_code >= 400:
        return ErrorKind.BAD_REQUEST
    return ErrorKind.UNKNOWN


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    supports_prefill: bool = False

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    def name(self) -> str:
        """Return the short backend name (e.g. 'anthropic', 'google')."""
        return self._config.name

    def model_string(self) -> str:
        """Return the default model identifier string for this backend."""
        return self._config.model

    @abstractmethod
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
        """Generate a response.

        Args:
            system: Instruction text, sent through the backend's system channel.
            user: The user-turn content.
            model: Model override; the configured default when None.
            max_tokens: Output token budget.
            temperature: Sampling temperature.
            on_token: When given, the call streams and each text delta is passed
                to it in generation order. The full text is still returned.
            prefill: Continuation prefix for backends with ``supports_prefill``;
                ignored elsewhere. The returned content includes it.

        Returns:
            ModelResponse with content and metadata.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
            ProviderAborted: When ``on_token`` raised StreamAborted.
        """
        ...
