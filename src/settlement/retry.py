"""
Bounded Retry

Exponential backoff with jitter around a single dispatch. Only errors typed
as retryable are retried; everything else surfaces on the first attempt.
"""

import random
import time
from typing import Callable, Optional, TypeVar
import structlog

from gateways.base import RetryableGatewayError

logger = structlog.get_logger()

T = TypeVar("T")

# (attempt number, success, latency in ms, error or None)
AttemptHook = Callable[[int, bool, float, Optional[BaseException]], None]


class RetryPolicy:
    """
    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=0.25)
        result = policy.call(lambda: gateway.execute(batch))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.25,
        max_delay: float = 4.0,
        jitter: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.timer = timer

    @classmethod
    def from_config(cls, config, **kwargs) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            **kwargs,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1`: base * 2^(attempt-1) plus jitter, capped."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        delay += self.rng.uniform(0, delay * self.jitter)
        return min(self.max_delay, delay)

    def call(self, fn: Callable[[], T], on_attempt: Optional[AttemptHook] = None) -> T:
        attempt = 0
        while True:
            attempt += 1
            started = self.timer()
            try:
                result = fn()
            except RetryableGatewayError as e:
                latency_ms = (self.timer() - started) * 1000.0
                if on_attempt:
                    on_attempt(attempt, False, latency_ms, e)
                if attempt >= self.max_attempts:
                    logger.error("dispatch_retries_exhausted", attempts=attempt, error=str(e))
                    raise
                delay = self.delay_for(attempt)
                logger.warning("dispatch_retrying", attempt=attempt, delay_seconds=round(delay, 3), error=str(e))
                self.sleep(delay)
                continue
            except Exception as e:
                if on_attempt:
                    on_attempt(attempt, False, (self.timer() - started) * 1000.0, e)
                raise

            if on_attempt:
                on_attempt(attempt, True, (self.timer() - started) * 1000.0, None)
            return result
