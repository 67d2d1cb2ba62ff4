"""Bounded exponential-backoff retry for transaction boundaries."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt limit and delay curve; ``attempts`` counts the first try."""

    attempts: int = 4
    base_delay_seconds: float = 0.025
    max_delay_seconds: float = 0.4

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` and retry listed failures; the last failure propagates."""
    for attempt in range(1, policy.attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            if attempt >= policy.attempts:
                logger.error(
                    "%s.retry_exhausted attempts=%s error=%s", label, attempt, exc
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s.retry attempt=%s delay_s=%.3f error=%s", label, attempt, delay, exc
            )
            sleep(delay)
    raise RuntimeError("Retry policy requires at least one attempt.")
