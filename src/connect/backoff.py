"""Bounded exponential backoff between retry attempts."""

from __future__ import annotations

from dataclasses import dataclass

from src.connect.base import BackoffSpec


@dataclass(frozen=True)
class BackoffPolicy:
    """Map an attempt number to a wait duration.

    Attempt ``n`` (1-based) waits ``base_interval_ms * 2 ** (n - 1)``; at most
    ``max_attempts`` retries are allowed per cycle.
    """

    spec: BackoffSpec

    def delay_for(self, attempt: int) -> int:
        """Return the delay in milliseconds before retry number ``attempt``."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return self.spec.base_interval_ms * 2 ** (attempt - 1)

    def should_retry(self, attempt: int) -> bool:
        return attempt <= self.spec.max_attempts
