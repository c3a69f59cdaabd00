"""Retry policy for SQLite operations.

``sqlite3.OperationalError`` ("database is locked", "disk I/O error") is
usually transient under concurrent writers and is retried with bounded
exponential backoff. Everything else, and the final failed attempt,
surfaces as :class:`~memtier.protocols.StorageError`.
"""

import functools
import logging
import sqlite3

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from memtier.protocols import MemtierError, StorageError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 4


def with_retry(func):
    """Decorate a storage method with retry-then-StorageError semantics."""

    retrying = retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1.0),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )(func)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except MemtierError:
            raise
        except sqlite3.Error as exc:
            logger.error("SQLite %s failed: %s", func.__name__, exc)
            raise StorageError(f"{func.__name__} failed: {exc}") from exc

    return wrapper
