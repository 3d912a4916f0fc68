"""Retry policy for failed deliveries (two-tier retry).

Interim retries are application-side: the consumer re-publishes the same
body to the same queue after a capped exponential backoff, carrying an
incremented ``retry-count`` header. The terminal step is broker-side: once
retries are exhausted the delivery is rejected without requeue and the
queue's dead-letter arguments route it to the DLQ.

Key entrypoints:
 - ``next_delay_ms``: capped exponential delay for a retry attempt
 - ``decide_retry``: retry (with delay) or dead-letter for a failure

Examples
--------
>>> next_delay_ms(1)
2000
>>> next_delay_ms(10)
60000
>>> d = decide_retry(retry_count=0, max_retries=3, failure=Failure(RuntimeError("boom")))
>>> (d.should_retry, d.delay_ms, d.next_retry_count)
(True, 2000, 1)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from payment_queue.constants import RETRY_BASE_DELAY_MS, RETRY_MAX_DELAY_MS
from payment_queue.results import Failure


# -------------------------
# Basic helpers
# -------------------------

def next_delay_ms(
    retry_count: int,
    base_delay_ms: int = RETRY_BASE_DELAY_MS,
    max_delay_ms: int = RETRY_MAX_DELAY_MS,
) -> int:
    """Return the backoff delay in milliseconds before re-publishing attempt ``retry_count``.

    ``retry_count`` is the value the re-published message will carry (1 for
    the first retry), so the shortest delay is ``2 * base_delay_ms``.

    Parameters
    ----------
    retry_count: int
        One-based retry number.
    base_delay_ms: int
        Base of the exponential sequence.
    max_delay_ms: int
        Cap applied to every delay.

    Returns
    -------
    int
        ``min(base_delay_ms * 2 ** retry_count, max_delay_ms)``.

    Examples
    --------
    >>> [next_delay_ms(k) for k in range(1, 8)]
    [2000, 4000, 8000, 16000, 32000, 60000, 60000]
    """
    exponent = max(int(retry_count), 0)
    if exponent > 32:  # far past the cap
        return int(max_delay_ms)
    return int(min(base_delay_ms * (2 ** exponent), max_delay_ms))


@dataclass
class RetryDecision:
    """Decision computed for a failed delivery.

    Attributes
    ----------
    should_retry: bool
        True to re-publish after ``delay_ms``; False to dead-letter.
    delay_ms: int
        Backoff before the re-publish. 0 when dead-lettering.
    retry_count: int
        The ``retry-count`` the failed delivery carried (0 if absent).
    next_retry_count: int
        ``retry_count + 1``; carried by the re-publish when retrying.
    max_retries: int
        Total handling attempts allowed before dead-lettering.
    strategy: str
        "exponential" for normal failures, "none" for non-retryable ones.
    error_type: str
        Class name of the failure, for logs and metrics.

    Examples
    --------
    >>> RetryDecision(True, 2000, 0, 1, 3, "exponential", "RuntimeError")
    RetryDecision(should_retry=True, delay_ms=2000, retry_count=0, next_retry_count=1, max_retries=3, strategy='exponential', error_type='RuntimeError')
    """
    should_retry: bool
    delay_ms: int
    retry_count: int
    next_retry_count: int
    max_retries: int
    strategy: str
    error_type: str


def decide_retry(retry_count: int, max_retries: int, failure: Optional[Failure] = None) -> RetryDecision:
    """Decide whether a failed delivery is retried or dead-lettered.

    The next retry count is ``retry_count + 1``. The delivery is retried while
    that is below ``max_retries``, so with ``max_retries = n`` a message is
    handled at most ``n`` times and dead-lettered after exactly ``n``
    failures. Non-retryable failures are dead-lettered immediately.

    Examples
    --------
    >>> decide_retry(1, 3).should_retry
    True
    >>> decide_retry(2, 3).should_retry
    False
    >>> decide_retry(0, 3, Failure("bad", retryable=False)).strategy
    'none'
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")
    current = max(int(retry_count), 0)
    next_count = current + 1
    error_type = failure.error_type if failure is not None else "Failure"

    if failure is not None and not failure.retryable:
        return RetryDecision(
            should_retry=False,
            delay_ms=0,
            retry_count=current,
            next_retry_count=next_count,
            max_retries=max_retries,
            strategy="none",
            error_type=error_type,
        )

    if next_count >= max_retries:
        return RetryDecision(
            should_retry=False,
            delay_ms=0,
            retry_count=current,
            next_retry_count=next_count,
            max_retries=max_retries,
            strategy="exponential",
            error_type=error_type,
        )

    return RetryDecision(
        should_retry=True,
        delay_ms=next_delay_ms(next_count),
        retry_count=current,
        next_retry_count=next_count,
        max_retries=max_retries,
        strategy="exponential",
        error_type=error_type,
    )
