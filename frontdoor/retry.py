"""
Bounded retry with exponential backoff.

One combinator is applied at every transient-failure boundary (DNS provider
calls, proxy transactions) instead of ad-hoc loops at each call site:

  with_retry(fn, max_attempts=3, base_delay=1.0)  — call fn until it succeeds

Delay before attempt n+1 is base_delay * 2**(n-1), capped at max_delay, with
+/-50 % jitter.  When every attempt fails the last exception is wrapped in a
RecoverableInfrastructureError so callers can tell "try again later" apart
from terminal errors.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from frontdoor.errors import RecoverableInfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Return the wait before retry number *attempt* (1-based)."""
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    if jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay


def with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call *fn* up to *max_attempts* times.

    Exceptions not matching *retry_on*, or for which *should_retry* returns
    False, propagate immediately and unchanged.  Exhausting all attempts
    raises RecoverableInfrastructureError chained to the last failure.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exc: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_exc = exc
            if attempt == max_attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                description, attempt, max_attempts, exc, delay,
            )
            sleep(delay)

    logger.error("%s failed after %d attempts: %s", description, max_attempts, last_exc)
    raise RecoverableInfrastructureError(
        f"{description} failed after {max_attempts} attempts: {last_exc}",
        attempts=max_attempts,
    ) from last_exc
