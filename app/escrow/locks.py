"""
Concurrency control for escrow operations.

Two mechanisms are used together:

1. **Row locks** (lock_row)
   - ``select_for_update`` inside the caller's transaction
   - Linearizes every read-modify-write of a Deal, Milestone or Payout
   - Lock order is always deal -> milestone -> payout

2. **Distributed locks** (DistributedLock)
   - Redis-based mutual exclusion across workers
   - Guards a provider call that runs outside any transaction, so two
     workers never request the same transfer at once

Usage:
    from escrow.locks import DistributedLock, lock_row

    with transaction.atomic():
        deal = lock_row(Deal, deal_id)
        milestone = lock_row(Milestone, milestone_id)

    with DistributedLock(f"payout:{payout_id}", ttl=60, blocking=False):
        request_transfer(payout_id)
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models

from django_redis import get_redis_connection
from redis.exceptions import RedisError

from escrow.exceptions import EntityNotFound, InvalidState, LockAcquisitionError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Row Locks
# =============================================================================


def lock_row(
    model_class: type[T],
    pk: Any,
    expected_version: int | None = None,
) -> T:
    """
    Lock one row for update and return it.

    Must be called inside ``transaction.atomic()``; the lock is held until
    the transaction commits or rolls back.

    Args:
        model_class: Deal, Milestone or Payout
        pk: Primary key
        expected_version: If given, the row's version must match

    Raises:
        EntityNotFound: No such row
        InvalidState: Row was modified since the caller read it
    """
    model_name = model_class.__name__
    instance = model_class.objects.select_for_update().filter(pk=pk).first()
    if instance is None:
        raise EntityNotFound(
            f"{model_name} not found",
            details={"entity": model_name.lower(), "entity_id": str(pk)},
        )

    if expected_version is not None and instance.version != expected_version:
        raise InvalidState(
            f"{model_name} has been modified by another request",
            details={
                "entity": model_name.lower(),
                "entity_id": str(pk),
                "expected_version": expected_version,
                "current_version": instance.version,
            },
        )
    return instance


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Features:
        - TTL prevents deadlocks from crashed workers
        - Token-based ownership: only the holder can release
        - Blocking and non-blocking acquisition
        - Context manager support

    Example:
        lock = DistributedLock("payout:456", ttl=60, blocking=False)
        try:
            with lock:
                request_transfer()
        except LockAcquisitionError:
            # Another worker is requesting this transfer
            ...

    Args:
        key: Lock identifier (prefixed with "lock:escrow:")
        ttl: Lock TTL in seconds
        blocking: If True, acquire() waits until the lock is available
        timeout: Maximum wait in seconds (blocking mode only)

    Note:
        The TTL must exceed the provider call timeout.
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL_SECONDS = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 60,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:escrow:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Raises:
            LockAcquisitionError: Lock held elsewhere (non-blocking) or not
                released within ``timeout`` (blocking)
        """
        token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while time.monotonic() < deadline:
                if self._try_acquire(redis, token):
                    return True
                time.sleep(self.POLL_INTERVAL_SECONDS)

            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"lock_key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis, token):
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"lock_key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis, token: str) -> bool:
        try:
            acquired = redis.set(self.key, token, nx=True, ex=self.ttl)
        except RedisError as e:
            raise LockAcquisitionError(
                f"Lock backend unavailable for '{self.key}'",
                details={"lock_key": self.key},
            ) from e
        if acquired:
            self._token = token
            return True
        return False

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Safe to call more than once.
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """Reset the TTL if we still hold the lock."""
        if self._token is None:
            return False

        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


__all__ = [
    "DistributedLock",
    "lock_row",
]
