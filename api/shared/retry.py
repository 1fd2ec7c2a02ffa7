"""
Bounded retry with a fixed delay between attempts.

Used after a training round to re-poll the external service until it
reflects the round that was just dispatched.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, Tuple, Type, TypeVar

from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a bounded retry.

    ``value`` is the last successfully produced value, even when it never
    satisfied the ``until`` predicate. ``succeeded`` is True only when the
    predicate was satisfied.
    """

    succeeded: bool
    attempts: int
    value: Optional[T] = None
    errors: List[Exception] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[Exception]:
        return self.errors[-1] if self.errors else None


async def retry_fixed(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    until: Optional[Callable[[T], bool]] = None,
    retry_on: Tuple[Type[Exception], ...] = (Exception,),
    give_up_on: Tuple[Type[Exception], ...] = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run ``operation`` up to ``attempts`` times, ``delay`` seconds apart.

    Args:
        operation: Zero-argument coroutine function to call
        attempts: Maximum number of calls (at least one call is made)
        delay: Seconds to wait between calls (not after the last one)
        until: Predicate the result must satisfy; None accepts any result
        retry_on: Exception types counted as a failed attempt
        give_up_on: Exception types re-raised immediately
        sleep: Awaitable sleep, injectable for tests

    Returns:
        RetryOutcome describing the last attempt
    """
    attempts = max(attempts, 1)
    outcome: RetryOutcome[T] = RetryOutcome(succeeded=False, attempts=0)

    for attempt in range(1, attempts + 1):
        outcome.attempts = attempt
        try:
            value = await operation()
        except give_up_on:
            raise
        except retry_on as e:
            outcome.errors.append(e)
            logger.debug("Attempt %d/%d failed: %s", attempt, attempts, e)
        else:
            outcome.value = value
            if until is None or until(value):
                outcome.succeeded = True
                return outcome
            logger.debug("Attempt %d/%d did not satisfy condition", attempt, attempts)

        if attempt < attempts and delay > 0:
            await sleep(delay)

    return outcome
