"""
Retry helpers for transient backend failures.

Backoff is linear (``base_delay * attempt``) and non-blocking: the delay is
awaited on the event loop through an injectable ``sleep`` coroutine so
tests can run without real waiting.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from .errors import PersistenceError, QueryFailedError


logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded linear backoff.

    Attributes:
        attempts: Total number of attempts (not retries)
        base_delay_ms: Delay unit; the wait after attempt N is N * base_delay_ms
    """
    attempts: int = 3
    base_delay_ms: int = 50

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.base_delay_ms * attempt / 1000.0


async def retry_async(
    func: Callable[[], Any],
    policy: RetryPolicy,
    operation: str,
    sleep: SleepFunc = asyncio.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (QueryFailedError,)
) -> Any:
    """
    Call ``func`` until it succeeds or the policy is exhausted.

    ``func`` may be a plain callable or return an awaitable.

    Args:
        func: Zero-argument callable performing one attempt
        policy: RetryPolicy
        operation: Label for log lines
        sleep: Coroutine used for backoff
        retry_on: Exception types considered transient

    Returns:
        Whatever ``func`` returns on its first successful attempt

    Raises:
        The last transient exception once attempts are exhausted; any
        non-transient exception immediately.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.attempts + 1):
        try:
            result = func()
            if inspect.isawaitable(result):
                result = await result
            if attempt > 1:
                logger.info(f"{operation} succeeded on attempt {attempt}/{policy.attempts}")
            return result
        except retry_on as e:
            last_error = e
            if attempt >= policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.debug(
                f"{operation} attempt {attempt}/{policy.attempts} failed ({e}); "
                f"retrying in {delay:.3f}s"
            )
            await sleep(delay)

    logger.warning(f"{operation} failed after {policy.attempts} attempts")
    raise last_error


class LookupStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class LookupResult:
    """
    Outcome of a single-row lookup.

    Distinguishes "no such row" from "could not look".
    """
    status: LookupStatus
    row: Optional[Dict[str, Any]] = None
    error: Optional[PersistenceError] = None

    @classmethod
    def found(cls, row: Dict[str, Any]) -> "LookupResult":
        return cls(LookupStatus.FOUND, row=row)

    @classmethod
    def not_found(cls) -> "LookupResult":
        return cls(LookupStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: PersistenceError) -> "LookupResult":
        return cls(LookupStatus.FAILED, error=error)

    @property
    def is_found(self) -> bool:
        return self.status == LookupStatus.FOUND

    @property
    def is_failed(self) -> bool:
        return self.status == LookupStatus.FAILED
