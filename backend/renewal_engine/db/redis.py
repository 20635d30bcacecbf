"""Redis client and distributed locks"""
import logging
import secrets
import time
from contextlib import contextmanager
from typing import Optional

import redis

from renewal_engine.core.config import settings
from renewal_engine.core.exceptions import SubscriptionLockedError

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

LOCK_POLL_INTERVAL = 0.05


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def subscription_lock_key(subscription_id: int) -> str:
    return f"lock:subscription:{subscription_id}"


def acquire_lock(client, lock_key: str, timeout: int = 30) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        client: Redis client
        lock_key: The lock key to acquire
        timeout: Lock expiry in seconds, so a crashed holder cannot wedge the key

    Returns:
        Owner token if the lock was acquired, None if it is held elsewhere
    """
    token = secrets.token_hex(16)
    if client.set(lock_key, token, nx=True, ex=timeout):
        return token
    return None


def release_lock(client, lock_key: str, token: str) -> bool:
    """Release a lock we still own.

    The lock may have expired and been taken by another worker, in which
    case the key is left alone.
    """
    current = client.get(lock_key)
    if current != token:
        logger.warning(f"Lock {lock_key} expired before release; not deleting foreign lock")
        return False
    client.delete(lock_key)
    return True


@contextmanager
def hold_lock(client, lock_key: str, timeout: int = 30):
    """Try to hold a lock for the duration of the block

    Yields the owner token, or None when another worker holds the lock.
    """
    token = acquire_lock(client, lock_key, timeout)
    try:
        yield token
    finally:
        if token is not None:
            release_lock(client, lock_key, token)


@contextmanager
def subscription_lock(
    client,
    subscription_id: int,
    timeout: Optional[int] = None,
    blocking_timeout: float = 0.0
):
    """Serialize read-modify-write on one subscription across workers

    Args:
        client: Redis client
        subscription_id: Subscription to lock
        timeout: Lock expiry in seconds (defaults to LOCK_TIMEOUT_SECONDS)
        blocking_timeout: How long to keep trying before giving up

    Raises:
        SubscriptionLockedError: If the subscription is being handled elsewhere
    """
    key = subscription_lock_key(subscription_id)
    expiry = timeout or settings.LOCK_TIMEOUT_SECONDS
    deadline = time.monotonic() + blocking_timeout
    token = acquire_lock(client, key, expiry)
    while token is None and time.monotonic() < deadline:
        time.sleep(LOCK_POLL_INTERVAL)
        token = acquire_lock(client, key, expiry)
    if token is None:
        raise SubscriptionLockedError(subscription_id)
    try:
        yield token
    finally:
        release_lock(client, key, token)
