"""
Per-enrollment mutual exclusion.

Rollup updates are read-modify-write cycles over denormalized counters,
so everything that touches an enrollment's aggregates runs inside
``enrollment_lock(student_id, qbank_id)``. The redis backend serializes
across worker processes; the local backend only within one process.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import redis
from redis.exceptions import LockError, RedisError

from qbank_scoring.core.config import settings
from qbank_scoring.core.errors import LockTimeoutError, PersistenceError

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
# key -> [lock, holders and waiters]
_local_locks: Dict[str, List[Any]] = {}
_registry_guard = threading.Lock()


def lock_key(student_id: int, qbank_id: int) -> str:
    return f"qbank:lock:enrollment:{student_id}:{qbank_id}"


def get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL)
    return _redis_client


def _checkout_local(key: str) -> threading.Lock:
    with _registry_guard:
        entry = _local_locks.get(key)
        if entry is None:
            entry = _local_locks[key] = [threading.Lock(), 0]
        entry[1] += 1
        return entry[0]


def _return_local(key: str) -> None:
    # entries live only while some caller holds or waits on the key
    with _registry_guard:
        entry = _local_locks[key]
        entry[1] -= 1
        if entry[1] == 0:
            del _local_locks[key]


@contextmanager
def _hold_local(key: str, blocking_timeout: float) -> Iterator[None]:
    lock = _checkout_local(key)
    try:
        if not lock.acquire(timeout=blocking_timeout):
            raise LockTimeoutError("Enrollment is busy, retry shortly", {"lock": key})
        try:
            yield
        finally:
            lock.release()
    finally:
        _return_local(key)


@contextmanager
def _hold_redis(key: str, timeout: float, blocking_timeout: float) -> Iterator[None]:
    try:
        lock = get_redis().lock(key, timeout=timeout, blocking_timeout=blocking_timeout)
        acquired = lock.acquire()
    except RedisError as e:
        raise PersistenceError("Lock service unavailable", {"lock": key}) from e
    if not acquired:
        raise LockTimeoutError("Enrollment is busy, retry shortly", {"lock": key})
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError:
            # expired under us; the next holder already owns it
            logger.warning(f"Lock {key} expired before release")


@contextmanager
def enrollment_lock(student_id: int, qbank_id: int, backend: Optional[str] = None) -> Iterator[None]:
    key = lock_key(student_id, qbank_id)
    backend = backend or settings.LOCK_BACKEND
    logger.debug(f"Acquiring {backend} lock {key}")
    if backend == "local":
        with _hold_local(key, settings.LOCK_BLOCKING_TIMEOUT_SECONDS):
            yield
    else:
        with _hold_redis(key, settings.LOCK_TIMEOUT_SECONDS, settings.LOCK_BLOCKING_TIMEOUT_SECONDS):
            yield
