"""Retry with exponential backoff for SpeleoDB requests."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from .exceptions import (
    SpeleoDBAPIError,
    SpeleoDBNetworkError,
    SpeleoDBOperationCancelledError,
)
from .utils import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exception: BaseException) -> bool:
    """Determine if a failed request may be attempted again.

    Network errors, timeouts and 5xx responses are transient. Client errors
    (authentication, validation, not found) and local precondition failures
    are not.
    """
    # Timeouts are a subclass of network errors
    if isinstance(exception, SpeleoDBNetworkError):
        return True

    if isinstance(exception, SpeleoDBAPIError):
        return exception.is_server_error

    return False


class RetryOrchestrator:
    """Runs an operation with bounded retries and exponential backoff.

    The delay before attempt ``k`` (``k >= 2``) is ``base_delay * 2 ** (k - 2)``,
    so with a 1 second base the waits are 1s, 2s, 4s, ...
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            max_attempts: Total number of attempts, including the first one
            base_delay: Delay in seconds before the second attempt
            sleep: Function used to wait between attempts (default: time.sleep)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep or time.sleep

    @staticmethod
    def calculate_delay(attempt: int, base_delay: float) -> float:
        """Delay to wait before a 1-based ``attempt`` number."""
        if attempt < 2:
            return 0.0
        return base_delay * (2 ** (attempt - 2))

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(delay)
            return
        # Event.wait returns True as soon as the event is set
        if cancel_event.wait(delay):
            raise SpeleoDBOperationCancelledError("Operation cancelled")

    def execute(
        self,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        description: str = "request",
    ) -> T:
        """Run ``operation`` until it succeeds or a non-retryable error occurs.

        Args:
            operation: Zero-argument callable performing one attempt
            max_attempts: Overrides the orchestrator default
            base_delay: Overrides the orchestrator default
            cancel_event: When set, no further attempt is started
            description: Label used in log messages

        Returns:
            The operation's return value

        Raises:
            SpeleoDBOperationCancelledError: If cancelled between attempts
            Exception: The error of the last attempt, unchanged
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        delay_base = base_delay if base_delay is not None else self.base_delay
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise SpeleoDBOperationCancelledError(
                    f"{description} cancelled before attempt {attempt}"
                )

            try:
                return operation()
            except Exception as e:
                if not is_retryable(e) or attempt >= attempts:
                    if attempt > 1:
                        logger.warning(
                            f"{description} failed after {attempt} attempt(s): {e}"
                        )
                    raise

                delay = self.calculate_delay(attempt + 1, delay_base)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{attempts}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                self._wait(delay, cancel_event)

        raise SpeleoDBAPIError(f"{description} failed after all retry attempts")
