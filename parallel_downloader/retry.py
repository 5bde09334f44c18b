"""Bounded retry with linearly escalating delay."""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

from .exceptions import RetryExhausted

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry a callable up to ``max_attempts`` times.

    The delay before attempt ``n + 1`` is ``base_delay * n``, so the default
    store policy waits 0.3s, 0.6s, 0.9s, ... between busy retries. No delay
    follows the final attempt.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.base_delay * attempt

    def call(self, func: Callable[[], T],
             retry_on: Tuple[Type[BaseException], ...] = (Exception,),
             on_retry: Optional[Callable[[int, BaseException], None]] = None) -> T:
        """Call ``func`` until it succeeds or the attempts run out.

        Only exceptions in ``retry_on`` are retried; anything else propagates
        immediately. Raises ``RetryExhausted`` with the last error attached.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except retry_on as e:
                last_error = e
                if on_retry:
                    on_retry(attempt, e)
                if attempt < self.max_attempts:
                    self.sleep(self.delay_for(attempt))
        raise RetryExhausted(self.max_attempts, last_error)
