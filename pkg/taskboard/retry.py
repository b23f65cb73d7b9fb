"""
Retry-with-backoff for async store calls.

The outcome is returned, never raised: callers branch on `outcome.ok`
instead of catching exceptions for control flow.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class RetryOutcome:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    cancelled: bool = False


def exponential_backoff(base: float = 1.0, factor: float = 2.0, max_delay: float = 30.0) -> Callable[[int], float]:
    """Delay before retry n (1-based): base, base*factor, base*factor², … capped at max_delay."""
    def delay(retry_number: int) -> float:
        return min(base * (factor ** (retry_number - 1)), max_delay)
    return delay


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    backoff: Optional[Callable[[int], float]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientStoreError,),
    sleep: Sleep = asyncio.sleep,
    is_cancelled: Optional[Callable[[], bool]] = None,
    label: str = "operation",
) -> RetryOutcome:
    """
    Run `operation` up to `max_attempts` times.

    Only exceptions in `retry_on` are retried; anything else ends the loop
    at once. `is_cancelled` is checked before every attempt and after every
    backoff sleep, so a superseded write stops without another round-trip.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    backoff = backoff or exponential_backoff()

    attempts = 0
    last_error: Optional[BaseException] = None
    while attempts < max_attempts:
        if is_cancelled and is_cancelled():
            return RetryOutcome(ok=False, error=last_error, attempts=attempts, cancelled=True)

        attempts += 1
        try:
            value = await operation()
            return RetryOutcome(ok=True, value=value, attempts=attempts)
        except retry_on as e:
            last_error = e
            logger.warning(f"{label} failed (attempt {attempts}/{max_attempts}): {e}")
            if attempts < max_attempts:
                await sleep(backoff(attempts))
        except Exception as e:
            logger.warning(f"{label} failed permanently: {e}")
            return RetryOutcome(ok=False, error=e, attempts=attempts)

    return RetryOutcome(ok=False, error=last_error, attempts=attempts)
