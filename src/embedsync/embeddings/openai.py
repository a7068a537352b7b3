"""OpenAI embeddings provider implementation."""

from __future__ import annotations

import os
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from embedsync.core.logging import Logger

from . import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbeddingVector,
    EmbeddingsProvider,
    ProviderInitContext,
)
from .errors import (
    EmbeddingProviderError,
    ProviderConfigurationError,
    ProviderDimMismatchError,
    ProviderInputTooLargeError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderRetryableError,
    ProviderRetryExceededError,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

_PROVIDER = "openai"
_DEFAULT_TIMEOUT = 30.0
_DEFAULT_TOKEN_LIMIT = 8_191
_TOKEN_PAD = 8
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2
_MAX_ATTEMPTS = 5
_DIMENSION_PROBE_TEXT = "__EMBEDSYNC_DIMENSION_PROBE__"


@dataclass(frozen=True, slots=True)
class _OpenAIModelMetadata:
    name: str
    dim: int
    max_batch_size: int
    max_input_tokens: int


_OPENAI_MODELS: Mapping[str, _OpenAIModelMetadata] = {
    "text-embedding-3-small": _OpenAIModelMetadata(
        name="text-embedding-3-small",
        dim=1_536,
        max_batch_size=128,
        max_input_tokens=_DEFAULT_TOKEN_LIMIT,
    ),
    "text-embedding-3-large": _OpenAIModelMetadata(
        name="text-embedding-3-large",
        dim=3_072,
        max_batch_size=64,
        max_input_tokens=_DEFAULT_TOKEN_LIMIT,
    ),
    "text-embedding-ada-002": _OpenAIModelMetadata(
        name="text-embedding-ada-002",
        dim=1_536,
        max_batch_size=128,
        max_input_tokens=_DEFAULT_TOKEN_LIMIT,
    ),
}


def _normalize_model_name(model: str) -> str:
    normalized = model.strip()
    if not normalized:
        raise ValueError("model cannot be blank")
    return normalized


def _resolve_timeout(config: Mapping[str, object]) -> float:
    raw: object = os.environ.get("OPENAI_TIMEOUT_SECONDS") or config.get(
        "timeout"
    )
    if raw is None:
        return _DEFAULT_TIMEOUT
    try:
        parsed = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "OPENAI_TIMEOUT_SECONDS must be a number when provided.",
        ) from exc
    if parsed <= 0:
        raise ValueError("OPENAI_TIMEOUT_SECONDS must be positive.")
    return parsed


@dataclass(slots=True)
class _Batch:
    texts: tuple[str, ...]
    tokens: int


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts via the OpenAI embeddings API.

    Requests are split by the caller's batch size and by the model's token
    budget, then retried in-process on rate limits, timeouts, connection
    errors and 5xx responses with jittered exponential backoff. Once the
    in-process budget is spent the last error is raised as a typed
    :class:`EmbeddingProviderError` so the sync job can be rescheduled.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
        rng: random.Random | None = None,
    ) -> None:
        self.logger = logger
        self._config = dict(config or {})
        self._sleep = sleep
        self._now = now
        self._rng = rng or random.Random()
        self._max_attempts = self._configured_int("max_attempts") or _MAX_ATTEMPTS
        self._token_cache: dict[tuple[str, str], int] = {}
        self._dim_cache: dict[str, int] = {}
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._client = client or self._build_client()

    def _configured_int(self, key: str) -> int | None:
        value = self._config.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        return None

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        return dict(self._stats)

    # ------------------------------------------------------------------#
    # Provider interface
    # ------------------------------------------------------------------#
    def describe_model(self, model: str) -> EmbeddingProviderModel:
        name = _normalize_model_name(model)
        metadata = _OPENAI_MODELS.get(name)
        if metadata is not None:
            return EmbeddingProviderModel(
                provider=_PROVIDER,
                name=metadata.name,
                dim=metadata.dim,
            )

        dimension = self._dim_cache.get(name)
        if dimension is None:
            dimension = self._probe_dimension(model=name)
        return EmbeddingProviderModel(
            provider=_PROVIDER,
            name=name,
            dim=dimension,
        )

    def capabilities(
        self,
        *,
        model: str | None = None,
    ) -> EmbeddingProviderCaps:
        config_limit = self._configured_int("max_input_tokens")

        metadata = None if model is None else _OPENAI_MODELS.get(
            _normalize_model_name(model)
        )
        if metadata is None:
            batch_size = max(m.max_batch_size for m in _OPENAI_MODELS.values())
            token_limit = _DEFAULT_TOKEN_LIMIT
        else:
            batch_size = metadata.max_batch_size
            token_limit = metadata.max_input_tokens

        if config_limit is not None:
            token_limit = min(token_limit, config_limit)

        return EmbeddingProviderCaps(
            max_batch_size=batch_size,
            max_input_tokens=token_limit,
            max_request_tokens=token_limit,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()

        name = _normalize_model_name(model)
        caps = self.capabilities(model=name)
        limit = min(options.max_batch_size, caps.max_batch_size)
        token_limit = (
            caps.max_request_tokens or caps.max_input_tokens or _DEFAULT_TOKEN_LIMIT
        )
        if options.max_input_tokens is not None:
            token_limit = min(token_limit, options.max_input_tokens)

        normalized = [self._normalize_text(text) for text in texts]
        token_counts = [
            self._estimate_tokens(model=name, text=text) for text in normalized
        ]
        batches = self._chunk_batches(
            normalized,
            token_counts,
            limit=limit,
            token_limit=token_limit,
            model=name,
        )

        metadata = _OPENAI_MODELS.get(name)
        expected = metadata.dim if metadata else self._dim_cache.get(name)

        results: list[EmbeddingVector] = []
        for batch in batches:
            embeddings = self._invoke_with_retries(
                model=name,
                batch=batch.texts,
                token_count=batch.tokens,
                timeout=options.timeout,
            )
            if len(embeddings) != len(batch.texts):
                raise ProviderRequestError(
                    (
                        "OpenAI returned "
                        f"{len(embeddings)} embeddings for "
                        f"{len(batch.texts)} inputs."
                    ),
                    provider=_PROVIDER,
                    model=name,
                )
            for vector in embeddings:
                if expected is None:
                    expected = len(vector)
                    self._dim_cache[name] = expected
                elif len(vector) != expected:
                    raise ProviderDimMismatchError(
                        "Embedding dimension mismatch in OpenAI response.",
                        provider=_PROVIDER,
                        model=name,
                        expected=expected,
                        actual=len(vector),
                    )
                results.append(tuple(float(value) for value in vector))

        return tuple(results)

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _build_client(self) -> OpenAI:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ProviderConfigurationError(
                "OPENAI_API_KEY must be set to use the OpenAI provider.",
                provider=_PROVIDER,
                model="*",
            )

        return OpenAI(
            api_key=api_key,
            base_url=os.environ.get("OPENAI_BASE_URL"),
            organization=os.environ.get("OPENAI_ORG_ID"),
            timeout=_resolve_timeout(self._config),
            max_retries=0,
        )

    def _chunk_batches(
        self,
        texts: Sequence[str],
        token_counts: Sequence[int],
        *,
        limit: int,
        token_limit: int,
        model: str,
    ) -> tuple[_Batch, ...]:
        batches: list[_Batch] = []
        current: list[str] = []
        current_tokens = 0

        for text, tokens in zip(texts, token_counts):
            if tokens > token_limit:
                raise ProviderInputTooLargeError(
                    (
                        "Input text exceeds OpenAI token limit "
                        f"({tokens} > {token_limit})."
                    ),
                    provider=_PROVIDER,
                    model=model,
                    token_count=tokens,
                    limit=token_limit,
                )

            full = len(current) >= limit
            over_budget = current_tokens + tokens > token_limit
            if current and (full or over_budget):
                batches.append(_Batch(texts=tuple(current), tokens=current_tokens))
                current = []
                current_tokens = 0

            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(_Batch(texts=tuple(current), tokens=current_tokens))

        return tuple(batches)

    def _probe_dimension(self, *, model: str) -> int | None:
        batch = (_DIMENSION_PROBE_TEXT,)
        embeddings = self._invoke_with_retries(
            model=model,
            batch=batch,
            token_count=self._estimate_tokens(model=model, text=batch[0]),
            is_probe=True,
        )
        if not embeddings:
            return None
        dimension = len(embeddings[0])
        self._dim_cache[model] = dimension
        return dimension

    def _estimate_tokens(self, *, model: str, text: str) -> int:
        key = (model, text)
        cached = self._token_cache.get(key)
        if cached is not None:
            return cached

        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.get_encoding("cl100k_base")
        estimate = _TOKEN_PAD + len(encoding.encode(text, disallowed_special=()))

        self._token_cache[key] = estimate
        return estimate

    @staticmethod
    def _normalize_text(text: str) -> str:
        normalized = text.replace("\r\n", "\n").replace("\r", "\n")
        return normalized.strip()

    def _invoke_with_retries(
        self,
        *,
        model: str,
        batch: Sequence[str],
        token_count: int,
        timeout: float | None = None,
        is_probe: bool = False,
    ) -> list[list[float]]:
        request: dict[str, Any] = {"model": model, "input": list(batch)}
        if timeout is not None:
            request["timeout"] = timeout

        attempts = 0
        while attempts < self._max_attempts:
            attempts += 1
            start = self._now()
            try:
                response = self._client.embeddings.create(**request)
            except Exception as exc:
                status, request_id = self._extract_context(exc)
                if not self._is_retryable(exc) or attempts >= self._max_attempts:
                    self._stats["failures"] += 1
                    raise self._translate_exception(
                        exc,
                        attempts=attempts,
                        model=model,
                        status=status,
                        request_id=request_id,
                    ) from exc

                delay = self._compute_backoff(attempt=attempts)
                self.logger.warning(
                    "openai-embed-retry",
                    provider=_PROVIDER,
                    model=model,
                    attempt=attempts,
                    max_attempts=self._max_attempts,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                    is_probe=is_probe,
                )
                self._stats["retries"] += 1
                self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "openai-embed-request",
                provider=_PROVIDER,
                model=model,
                batch_size=len(batch),
                token_count=token_count,
                latency=self._now() - start,
                attempts=attempts,
                is_probe=is_probe,
                recovered=attempts > 1,
            )
            return [list(item.embedding) for item in response.data]

        raise ProviderRetryExceededError(
            "Failed to embed texts after multiple attempts.",
            provider=_PROVIDER,
            model=model,
            attempts=attempts,
        )

    def _compute_backoff(self, *, attempt: int) -> float:
        base = _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 1))
        base = min(base, _BACKOFF_CAP)
        jitter = 1.0 + self._rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(base * jitter, 2)

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            status, _ = OpenAIEmbeddingsProvider._extract_context(exc)
            return status is not None and status >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None

        status_value = getattr(exc, "status_code", None)
        if status_value is not None:
            try:
                status = int(status_value)
            except (TypeError, ValueError):
                status = None

        value = getattr(exc, "request_id", None)
        if isinstance(value, str):
            request_id = value

        return status, request_id

    @staticmethod
    def _translate_exception(
        exc: Exception,
        *,
        attempts: int,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> EmbeddingProviderError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": _PROVIDER,
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if isinstance(exc, RateLimitError):
            return ProviderRateLimitError(message, **context)
        if isinstance(
            exc,
            (APITimeoutError, APIConnectionError, httpx.HTTPError),
        ):
            return ProviderRetryableError(message, **context)
        if isinstance(exc, APIStatusError) and status and status >= 500:
            return ProviderRetryableError(message, **context)
        if isinstance(exc, APIStatusError) and status in {401, 403}:
            return ProviderConfigurationError(message, **context)
        return ProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
