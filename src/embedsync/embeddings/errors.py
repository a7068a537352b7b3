"""Typed error hierarchy for embedding providers."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EmbeddingProviderError",
    "ProviderConfigurationError",
    "ProviderRequestError",
    "ProviderRetryableError",
    "ProviderRateLimitError",
    "ProviderRetryExceededError",
    "ProviderInputTooLargeError",
    "ProviderDimMismatchError",
]


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)

    @property
    def retryable(self) -> bool:
        """Whether a later attempt of the same request may succeed."""

        return False


@dataclass(slots=True)
class ProviderConfigurationError(EmbeddingProviderError):
    """Raised when the provider configuration is invalid (missing key, ...)."""


@dataclass(slots=True)
class ProviderRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class ProviderRetryableError(EmbeddingProviderError):
    """Raised for retryable transport or server-side errors."""

    @property
    def retryable(self) -> bool:
        return True


@dataclass(slots=True)
class ProviderRateLimitError(ProviderRetryableError):
    """Raised when the provider returns a rate limiting response."""


@dataclass(slots=True)
class ProviderRetryExceededError(EmbeddingProviderError):
    """Raised when in-request retry attempts are exhausted.

    The job that issued the request may still succeed on a later run, so the
    sync pipeline treats this error as transient.
    """

    attempts: int = 0

    @property
    def retryable(self) -> bool:
        return True


@dataclass(slots=True)
class ProviderInputTooLargeError(EmbeddingProviderError):
    """Raised when a single input exceeds provider token limits."""

    token_count: int | None = None
    limit: int | None = None


@dataclass(slots=True)
class ProviderDimMismatchError(EmbeddingProviderError):
    """Raised when the provider returns vectors with unexpected dimension."""

    expected: int | None = None
    actual: int | None = None
