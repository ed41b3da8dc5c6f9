"""Exponential retry with a random 0-4x multiplier.

Every error is retried until the accumulated timeout reaches 64 s; the last
error then escapes unchanged. The wait starts at 1 s and after each failure
becomes ``timeout * 4 * u / 1000`` with ``u`` uniform in ``[0, 1000)``.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)

T = TypeVar("T")

INITIAL_TIMEOUT_SECONDS = 1.0
MAX_TIMEOUT_SECONDS = 64.0
# A zero draw pins the timeout at 0 forever; stop after this many failures.
MAX_ATTEMPTS = 100


def next_timeout(timeout: float, rng: random.Random | None = None) -> float:
    """Apply one jitter step: ``timeout * 4 * u / 1000``."""
    u = (rng or random).randrange(0, 1000)
    return timeout * 4.0 * u / 1000.0


async def exponential_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Await ``operation()`` until it succeeds or the back-off budget is spent."""
    timeout = INITIAL_TIMEOUT_SECONDS
    attempts = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            attempts += 1
            log.debug("aws_call_retry", operation=name, attempt=attempts, timeout=round(timeout, 3), error=str(exc))
            await sleep(timeout)
            timeout = next_timeout(timeout, rng)
            if timeout >= MAX_TIMEOUT_SECONDS or attempts >= MAX_ATTEMPTS:
                raise


__all__ = [
    "INITIAL_TIMEOUT_SECONDS",
    "MAX_ATTEMPTS",
    "MAX_TIMEOUT_SECONDS",
    "exponential_retry",
    "next_timeout",
]
