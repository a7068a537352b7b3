"""Retry delay policy for failed jobs."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from embedsync.core.config import SyncSettings

__all__ = ["BackoffPolicy"]


@dataclass(slots=True)
class BackoffPolicy:
    """Exponential backoff with a cap and multiplicative jitter.

    The delay before retry ``n`` (``n`` = attempts made so far) is
    ``base * 2 ** (n - 1)`` capped at ``cap``, scaled by a factor drawn
    uniformly from ``[1 - jitter, 1 + jitter]``.

    Example:
        >>> policy = BackoffPolicy(base=30.0, cap=900.0, jitter=0.0)
        >>> [policy.delay(n) for n in (1, 2, 3, 10)]
        [30.0, 60.0, 120.0, 900.0]
    """

    base: float
    cap: float
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        rng: random.Random | None = None,
    ) -> "BackoffPolicy":
        return cls(
            base=settings.backoff_base_seconds,
            cap=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
            rng=rng or random.Random(),
        )

    def delay(self, attempts: int) -> float:
        exponent = max(0, attempts - 1)
        capped = min(self.base * (2**exponent), self.cap)
        if not self.jitter:
            return capped
        factor = self.rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return capped * factor
