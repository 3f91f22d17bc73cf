"""
Bounded retry with a fixed delay.

Connection opens and batch submissions both retry a fixed number of times
before giving up.  The policy is a plain value passed in from
``ExecutionConfig``; waiting happens on the shared cancel event so a
cancellation interrupts the delay instead of sleeping through it.

Usage::

    from sheet2sql.utils.retry import RetryPolicy, call_with_retry

    conn = call_with_retry(
        lambda: driver.connect(conn_str),
        RetryPolicy(retries=2, delay_seconds=1.0),
        cancel=cancel_event,
    )
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sheet2sql.configs.exceptions import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Attributes:
        retries:       Extra attempts after the first one fails (0 = no retry).
        delay_seconds: Fixed wait between attempts.
    """

    retries: int = 0
    delay_seconds: float = 0.0

    @property
    def attempts(self) -> int:
        return max(0, self.retries) + 1


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    cancel: threading.Event | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """
    Call ``func`` until it succeeds or ``policy.attempts`` are used up.

    Args:
        func:     Zero-argument callable to attempt.
        policy:   Attempt count and delay.
        cancel:   Checked before every attempt and used for the delay wait.
        retry_on: Exception types that trigger another attempt.  Anything
                  else propagates immediately.
        on_retry: Called with ``(attempt_number, error)`` after a failed
                  attempt that will be retried.

    Returns:
        Whatever ``func`` returns.

    Raises:
        OperationCancelled: If ``cancel`` is set before an attempt or during
                            a delay.
        Exception:          The last error when every attempt failed.
    """
    attempts = policy.attempts
    for attempt in range(1, attempts + 1):
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"Cancelled before attempt {attempt}")
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts or isinstance(e, MemoryError):
                raise
            logger.debug("Attempt %d/%d failed: %s", attempt, attempts, e)
            if on_retry is not None:
                on_retry(attempt, e)
            if policy.delay_seconds > 0:
                if cancel is not None:
                    if cancel.wait(policy.delay_seconds):
                        raise OperationCancelled(
                            f"Cancelled while waiting to retry (attempt {attempt})"
                        ) from e
                else:
                    time.sleep(policy.delay_seconds)
    raise AssertionError("unreachable")  # pragma: no cover
