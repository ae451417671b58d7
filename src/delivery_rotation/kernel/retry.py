"""
Retry policies for transient failures

Two things are worth retrying here: SQLite lock contention, and losing an
optimistic-locking race on a request stream. Everything else propagates.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from delivery_rotation.kernel.errors import StreamVersionConflict
from delivery_rotation.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry on ``sqlite3.OperationalError`` ("database is locked")

    Example:
        @retry_on_sqlite_lock()
        def append(...):
            ...
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "SQLite lock detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def retry_on_version_conflict(
    max_attempts: int = 3,
    min_wait_ms: int = 10,
    max_wait_ms: int = 200,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry a read-decide-append cycle that lost a compare-and-swap race

    The wrapped callable must reload state on every attempt, so that the
    decision is re-validated against whatever the winning writer stored.
    """
    return retry(
        retry=retry_if_exception_type(StreamVersionConflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "Stream version conflict, reloading and retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )
