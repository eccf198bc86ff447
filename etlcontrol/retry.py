from collections.abc import Callable
import threading


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, attempts: int, cancelled: bool = False) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cancelled = cancelled


def run_with_retries(
    fn: Callable[[int], object],
    *,
    max_retries: int,
    delay_seconds: float,
    cancel_event: threading.Event | None = None,
    on_attempt_failure: Callable[[int, Exception], None] | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
) -> object:
    """Call ``fn(retry_attempt)`` until it succeeds or the retry budget is spent.

    ``retry_attempt`` is 0 for the initial call. The wait between attempts is an
    ``Event.wait`` so a cancellation ends it early and suppresses the next attempt.
    """
    cancel_event = cancel_event or threading.Event()
    last_error: Exception | None = None
    attempts = 0

    for retry_attempt in range(max_retries + 1):
        attempts += 1
        try:
            return fn(retry_attempt)
        except Exception as exc:
            last_error = exc
            if on_attempt_failure:
                on_attempt_failure(retry_attempt, exc)

            retry_allowed = True if should_retry is None else should_retry(exc)
            if retry_attempt >= max_retries or not retry_allowed:
                break
            if cancel_event.wait(delay_seconds):
                raise RetryExhaustedError(str(last_error), attempts, cancelled=True) from last_error

    raise RetryExhaustedError(str(last_error), attempts) from last_error
