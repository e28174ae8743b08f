"""
Retry primitives for outbound calls.

- ``RetryPolicy``: how many times to retry, how long to wait, and the
  per-attempt timeout.
- ``calculate_backoff``: exponential backoff with proportional jitter.
- ``Attempt`` / ``AttemptOutcome``: the tagged result of one attempt, so the
  forwarding loop branches on an explicit outcome instead of re-deriving it
  from status codes and exception types.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import httpx

# Jitter is +/- this fraction of the exponential delay
JITTER_RATIO = 0.2

# 2**62 seconds already exceeds any configured ceiling
_MAX_EXPONENT = 62

RetryCallback = Callable[[Exception, int], None]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings for one kind of outbound call.

    ``max_retries`` counts retries, not attempts: a policy with
    ``max_retries=3`` makes at most four attempts. Delays and the timeout are
    in seconds. ``on_retry`` is called with the attempt's error and the
    1-based number of the attempt that failed, before the backoff sleep.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 60.0
    on_retry: Optional[RetryCallback] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def with_callback(self, on_retry: Optional[RetryCallback]) -> "RetryPolicy":
        return replace(self, on_retry=on_retry)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=int(values.get("max_retries", cls.max_retries)),
            base_delay=float(values.get("base_delay", cls.base_delay)),
            max_delay=float(values.get("max_delay", cls.max_delay)),
            timeout=float(values.get("timeout", cls.timeout)),
        )


def calculate_backoff(attempt: int, base_delay: float, max_delay: float, *, rng: Any = random) -> float:
    """
    Compute the delay before retrying after the given 0-based attempt.

    Args:
        attempt: 0-based index of the attempt that just failed
        base_delay: Delay in seconds after the first failure, before jitter
        max_delay: Ceiling for the exponential component, before jitter
        rng: Anything with ``uniform(a, b)``; tests pass a seeded ``random.Random``

    Returns:
        Seconds to wait, rounded to whole milliseconds and never negative.
        The value lies within +/-20% of ``min(base_delay * 2**attempt, max_delay)``.
    """
    exponent = min(max(attempt, 0), _MAX_EXPONENT)
    exponential = min(base_delay * (2 ** exponent), max_delay)
    jitter = exponential * JITTER_RATIO * rng.uniform(-1.0, 1.0)
    return max(0.0, round(exponential + jitter, 3))


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


# Transport errors that mean the request itself is malformed; retrying cannot help
_NON_RETRYABLE_TRANSPORT = (httpx.UnsupportedProtocol, httpx.LocalProtocolError)


def classify_status(status_code: int) -> AttemptOutcome:
    if status_code < 400:
        return AttemptOutcome.SUCCESS
    if 500 <= status_code < 600:
        return AttemptOutcome.RETRYABLE
    return AttemptOutcome.TERMINAL


def classify_exception(error: BaseException) -> AttemptOutcome:
    if isinstance(error, _NON_RETRYABLE_TRANSPORT):
        return AttemptOutcome.TERMINAL
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, OSError)):
        return AttemptOutcome.RETRYABLE
    return AttemptOutcome.TERMINAL


@dataclass(frozen=True)
class Attempt:
    index: int
    outcome: AttemptOutcome
    elapsed: float
    response: Optional[httpx.Response] = None
    error: Optional[BaseException] = None

    @property
    def number(self) -> int:
        return self.index + 1

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException))

    @property
    def error_detail(self) -> Optional[str]:
        if self.error is not None:
            if isinstance(self.error, (asyncio.TimeoutError, TimeoutError)) and not str(self.error):
                return "request timed out"
            return str(self.error) or type(self.error).__name__
        if self.response is not None and self.outcome is not AttemptOutcome.SUCCESS:
            return f"HTTP {self.response.status_code}: {self.response.reason_phrase}"
        return None
