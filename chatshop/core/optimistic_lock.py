"""
ChatShop - Optimistic locking retry decorator

Uses exponential backoff + jitter to handle write conflicts on versioned records:
  - sqlalchemy StaleDataError: an ingredient's version_id moved between our read and flush
  - redis WatchError: a watched session key changed before EXEC
  - StaleWrite: a session's version stamp no longer matches the one we read
Once the retry budget is spent the conflict surfaces as ConcurrencyConflict.
"""
import asyncio
import random
import functools
import logging

from redis.exceptions import WatchError
from sqlalchemy.orm.exc import StaleDataError

from chatshop.core.config import get_settings
from chatshop.core.errors import ConcurrencyConflict

settings = get_settings()
logger = logging.getLogger(__name__)


class StaleWrite(Exception):
    """The record's version stamp changed between our read and conditional write."""


RETRYABLE_CONFLICTS = (StaleDataError, WatchError, StaleWrite)


def backoff_delay(attempt: int) -> float:
    """Exponential backoff: base * 2^attempt, capped, plus jitter (seconds)."""
    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(max_retries: int | None = None):
    """
    Decorator for async functions that perform optimistic-lock writes.
    The wrapped function must be safe to re-run from scratch: each attempt
    re-reads state and opens its own transaction.

    Usage:
        @with_optimistic_retry()
        async def consume_for_order(...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(*args, **kwargs)
                except RETRYABLE_CONFLICTS as exc:
                    if attempt == _max:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d retries for %s",
                            _max, func.__name__,
                        )
                        raise ConcurrencyConflict(
                            f"{func.__name__} kept conflicting after {_max} attempts"
                        ) from exc
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "%s on attempt %d/%d for %s, retrying in %.3fs",
                        type(exc).__name__, attempt, _max, func.__name__, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
