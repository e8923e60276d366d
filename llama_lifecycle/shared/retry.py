"""
Bounded retry with capped exponential backoff.

Shared by the launch readiness loop, the supervisor's health checks and the
archive downloader so that every blocking wait has the same deadline and
backoff behaviour.
"""
import time
from typing import Any, Callable, Iterator, Optional, Tuple, Type

from llama_lifecycle.shared.errors import LlamaLifecycleError


class RetryExhausted(LlamaLifecycleError):
    """Raised when a Retry runs out of attempts or time."""

    def __init__(self, attempts: int, elapsed: float, last_result: Any = None, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_result = last_result
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s) in {elapsed:.2f}s (last error: {last_error})")


class Retry:
    """
    Retry policy bounded by a deadline and/or an attempt count.

    Attributes:
        deadline: Total time budget in seconds (None for no time limit).
        initial_delay: Delay before the second attempt.
        max_delay: Upper bound for a single backoff delay.
        multiplier: Backoff growth factor.
        max_attempts: Maximum number of attempts (None for no limit).
    """

    def __init__(
        self,
        deadline: Optional[float] = None,
        initial_delay: float = 0.1,
        max_delay: float = 1.0,
        multiplier: float = 2.0,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if deadline is None and max_attempts is None:
            raise ValueError("Retry needs a deadline or max_attempts")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.deadline = deadline
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._clock = clock
        self.elapsed = 0.0

    def attempts(self) -> Iterator[int]:
        """
        Yield attempt numbers starting at 1, sleeping between them.

        The loop ends when the attempt count or the deadline is exhausted;
        breaking out of it early is the success path.
        """
        start = self._clock()
        delay = self.initial_delay
        attempt = 0
        while True:
            attempt += 1
            yield attempt
            self.elapsed = self._clock() - start
            if self.max_attempts is not None and attempt >= self.max_attempts:
                return
            if self.deadline is not None:
                remaining = self.deadline - self.elapsed
                if remaining <= 0:
                    return
                self._sleep(min(delay, self.max_delay, remaining))
            else:
                self._sleep(min(delay, self.max_delay))
            delay *= self.multiplier

    def run(
        self,
        fn: Callable[[], Any],
        is_done: Callable[[Any], bool] = lambda result: True,
        retry_on: Tuple[Type[BaseException], ...] = (),
        on_attempt: Optional[Callable[[int, Any, Optional[BaseException]], None]] = None,
    ) -> Any:
        """
        Call fn until is_done(result) holds.

        Args:
            fn: The operation to attempt
            is_done: Predicate deciding whether a result ends the loop
            retry_on: Exception types treated as a failed attempt; anything else propagates
            on_attempt: Optional callback receiving (attempt, result, error)

        Returns:
            The first result accepted by is_done

        Raises:
            RetryExhausted: When no attempt succeeded within the limits
        """
        last_result = None
        last_error: Optional[BaseException] = None
        attempt = 0
        for attempt in self.attempts():
            try:
                last_result = fn()
                last_error = None
            except retry_on as e:
                last_result = None
                last_error = e
            if on_attempt is not None:
                on_attempt(attempt, last_result, last_error)
            if last_error is None and is_done(last_result):
                return last_result
        raise RetryExhausted(attempt, self.elapsed, last_result, last_error)
