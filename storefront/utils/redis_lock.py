# storefront/utils/redis_lock.py
import logging
from contextlib import contextmanager

import redis

logger = logging.getLogger(__name__)


class LockNotAcquired(RuntimeError):
    """Another worker holds the lock."""


@contextmanager
def redis_lock(client, key: str, ttl: int = 300):
    """
    Non-blocking distributed lock.

    Without a client (tests, Redis down outside production) the body runs
    unlocked; the database compare-and-set is what keeps claims exclusive.
    """
    if client is None:
        yield
        return

    lock = client.lock(key, timeout=ttl)
    acquired = lock.acquire(blocking=False)
    if not acquired:
        raise LockNotAcquired(f"Lock {key} is held by another worker")

    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning(f"Lock {key} expired before release", extra={"lock_key": key})
