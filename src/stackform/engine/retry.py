"""Retrying provider calls on transient errors."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from stackform.errors import FatalProviderError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, bounded by ``max_attempts``."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        backoff = self.base_delay * (2 ** (attempt - 1)) + random.random() * self.jitter
        return min(backoff, self.max_delay)


def call_with_retry(fn: Callable[[], T], policy: RetryPolicy, *, label: str) -> tuple[T, int]:
    """Run *fn*, retrying ``TransientProviderError`` per *policy*.

    Returns ``(result, attempts)``. Exhausted retries and any non-provider
    exception surface as ``FatalProviderError`` carrying the attempt count.
    """
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn(), attempt
        except TransientProviderError as e:
            if attempt == attempts:
                raise FatalProviderError(
                    f"{e} (gave up after {attempt} attempts)", attempts=attempt
                ) from e
            wait = policy.delay(attempt)
            logger.warning(
                "%s: transient error (attempt %d/%d): %s. Retrying in %.1fs",
                label,
                attempt,
                attempts,
                e,
                wait,
            )
            policy.sleep(wait)
        except ProviderError as e:
            e.attempts = attempt
            raise
        except Exception as e:
            raise FatalProviderError(f"{type(e).__name__}: {e}", attempts=attempt) from e
    raise AssertionError("unreachable")  # pragma: no cover
