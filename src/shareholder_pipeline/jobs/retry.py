"""Bounded retry with exponential backoff for batch-level storage calls."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from shareholder_pipeline.errors import PersistenceError, TransientStorageError

log = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    action: str,
    max_retries: int = 3,
    backoff_seconds: float = 2.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `fn`, retrying TransientStorageError up to `max_retries` attempts.

    The n-th retry waits ``backoff_seconds * 2 ** (n - 1)``. Any other
    exception propagates immediately.

    Raises:
        PersistenceError: when the last attempt still fails transiently.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except TransientStorageError as e:
            if attempt >= max_retries:
                raise PersistenceError(f"{action} failed after {attempt} attempts: {e}") from e
            delay = backoff_seconds * (2 ** (attempt - 1))
            log.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                action,
                attempt,
                max_retries,
                delay,
                e,
            )
            sleep(delay)
            attempt += 1
