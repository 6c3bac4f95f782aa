"""
Concurrency control utilities for recovery operations.

This module provides two complementary concurrency mechanisms:

1. **Distributed Locks** (DistributedLock, obligation_lease)
   - Redis-based mutual exclusion across workers
   - TTL prevents a crashed worker from holding an obligation forever
   - Use for: the per-obligation recovery lease around gateway calls

2. **Optimistic Locking** (check_version)
   - Version-based conflict detection at write time
   - Use for: the final status write after a gateway call, so a lease
     that lapsed mid-call cannot overwrite newer state

Usage:

    from recovery.locks import check_version, obligation_lease

    with obligation_lease(obligation_id):
        obligation = Obligation.objects.get(pk=obligation_id)
        charge = gateway.charge(...)  # outside any DB transaction
        with transaction.atomic():
            locked = check_version(Obligation, obligation.pk, obligation.version)
            ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from recovery.conf import get_policy
from recovery.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

# Type variable for model classes
T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lease with an owner token and a TTL.

    SET NX EX takes the key; release deletes it only while the stored token
    is still ours, so a worker whose lease lapsed cannot free a successor's.

    Example:
        lock = DistributedLock("obligation:recovery:123", ttl=120, blocking=False)
        try:
            with lock:
                charge_obligation()
        except LockAcquisitionError:
            return  # another worker owns the obligation

    Args:
        key: Lease name, stored as "lock:<key>"
        ttl: Seconds before Redis drops an abandoned lease
        blocking: Poll until the lease frees up instead of failing at once
        timeout: Upper bound on polling, in seconds
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    POLL_INTERVAL = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def acquire(self) -> bool:
        """
        Take the lease.

        Raises:
            LockAcquisitionError: The lease is held elsewhere (non-blocking)
                or did not free up within timeout (blocking)
        """
        token = uuid_module.uuid4().hex

        if not self.blocking:
            if self._claim(token):
                return True
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )

        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self._claim(token):
                return True
            time.sleep(self.POLL_INTERVAL)

        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def _claim(self, token: str) -> bool:
        if self.redis.set(self.key, token, nx=True, ex=self.ttl):
            self._token = token
            return True
        return False

    def release(self) -> bool:
        """Drop the lease. False when it was never taken or already lapsed."""
        if self._token is None:
            return False

        token, self._token = self._token, None
        return bool(self.redis.eval(self.RELEASE_SCRIPT, 1, self.key, token))

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


def lease_key(obligation_id: Any) -> str:
    return f"obligation:recovery:{obligation_id}"


def obligation_lease(
    obligation_id: Any,
    blocking: bool = False,
    timeout: float = 5.0,
) -> DistributedLock:
    """
    Build the per-obligation recovery lease.

    Triggers use the non-blocking form: a second concurrent invocation must
    no-op rather than queue behind the first. Session callbacks block for a
    bounded time since they carry an outcome that must be applied.
    """
    return DistributedLock(
        lease_key(obligation_id),
        ttl=get_policy().lease_ttl_seconds,
        blocking=blocking,
        timeout=timeout,
    )


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Atomically check version and lock a record for update.

    Args:
        model_class: Django model class (must have 'version' field)
        pk: Primary key of the record
        expected_version: Version read under the lease

    Returns:
        The locked model instance (within a transaction)

    Raises:
        StaleRecordError: If version doesn't match (concurrent modification)
        NotFoundError: If record doesn't exist

    Note:
        Must be called within a transaction context. The row lock is held
        until the outer transaction commits or rolls back.
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )

        if instance is None:
            model_name = model_class.__name__
            current = model_class.objects.filter(pk=pk).first()
            if current is None:
                raise NotFoundError(
                    f"{model_name} {pk} not found",
                    error_code=f"{model_name.upper()}_NOT_FOUND",
                    details={"pk": str(pk)},
                )

            raise StaleRecordError(
                f"{model_name} {pk} has been modified "
                f"(expected version {expected_version}, current {current.version})",
                details={
                    "pk": str(pk),
                    "expected_version": expected_version,
                    "current_version": current.version,
                },
            )

        return instance


__all__ = [
    "DistributedLock",
    "check_version",
    "lease_key",
    "obligation_lease",
]
