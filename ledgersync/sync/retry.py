"""
Backoff and error classification for queued jobs.

The job queue is the only retry mechanism in the sync engine; this module
holds the delay arithmetic it applies between attempts and the labels used
when logging a failure.
"""

import random
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ledgersync.sync.clients.base import APIConnectionError, APIRateLimitError
from ledgersync.sync.ledger import LedgerWriteError


def compute_backoff_delay(
    initial_delay: float,
    exponential_base: float,
    attempts_made: int,
    max_delay: Optional[float] = None,
    jitter: bool = False,
) -> float:
    """
    Delay before the next attempt after `attempts_made` failed attempts.

    The first retry waits `initial_delay`, each later retry multiplies the
    previous delay by `exponential_base`.

    Args:
        initial_delay: Delay after the first failure, in seconds
        exponential_base: Multiplier applied per further failure
        attempts_made: Failed attempts so far (>= 1)
        max_delay: Optional cap
        jitter: Scale the delay into 50-100% of its value

    Returns:
        Delay in seconds
    """
    exponent = max(attempts_made - 1, 0)
    delay = initial_delay * (exponential_base**exponent)
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay = delay * (0.5 + random.random() * 0.5)
    return delay


def classify_error(exc: BaseException) -> str:
    """
    Label an exception for logs and job records.

    Returns one of: rate_limited, source_unavailable, storage, error
    """
    if isinstance(exc, APIRateLimitError):
        return "rate_limited"
    if isinstance(exc, APIConnectionError):
        return "source_unavailable"
    if isinstance(exc, (LedgerWriteError, SQLAlchemyError)):
        return "storage"
    return "error"


def describe_error(exc: BaseException) -> str:
    """Compact one-line description stored on failed jobs."""
    message = str(exc) or exc.__class__.__name__
    return f"[{classify_error(exc)}] {exc.__class__.__name__}: {message}"
