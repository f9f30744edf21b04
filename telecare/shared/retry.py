"""Bounded retry for optimistic-concurrency conflicts"""

import functools
import logging

from ..config import CONCURRENCY_RETRY_LIMIT
from ..errors import ConcurrentModificationError

logger = logging.getLogger(__name__)


def retry_on_conflict(func=None, *, max_attempts: int = CONCURRENCY_RETRY_LIMIT):
    """
    Re-run a unit of work when it raises ConcurrentModificationError.

    The wrapped callable must be safe to re-run from scratch: it re-reads
    whatever it compares against. The last conflict is re-raised once the
    attempts are used up.
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except ConcurrentModificationError:
                    if attempt == max_attempts:
                        logger.error(f"❌ {fn.__name__} still conflicting after {attempt} attempts")
                        raise
                    logger.warning(f"⚠️ {fn.__name__} lost an update race, retrying ({attempt}/{max_attempts})")

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
