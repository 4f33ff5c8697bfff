import threading
import time
from unittest import mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from qbank_scoring.core import locks
from qbank_scoring.core.config import settings
from qbank_scoring.core.errors import LockTimeoutError, PersistenceError


@pytest.fixture
def short_wait(monkeypatch):
    monkeypatch.setattr(settings, "LOCK_BLOCKING_TIMEOUT_SECONDS", 0.05)


def test_lock_key_is_per_enrollment():
    assert locks.lock_key(42, 1) == "qbank:lock:enrollment:42:1"
    assert locks.lock_key(42, 1) != locks.lock_key(42, 2)


def test_local_lock_times_out_when_held(short_wait):
    with locks.enrollment_lock(42, 1, backend="local"):
        with pytest.raises(LockTimeoutError):
            with locks.enrollment_lock(42, 1, backend="local"):
                pass
        # other enrollments do not contend
        with locks.enrollment_lock(42, 2, backend="local"):
            pass
    with locks.enrollment_lock(42, 1, backend="local"):
        pass


def test_local_lock_serializes_threads():
    events = []

    def worker(tag):
        with locks.enrollment_lock(9, 9, backend="local"):
            events.append(f"{tag}-in")
            time.sleep(0.02)
            events.append(f"{tag}-out")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    # every entry is immediately followed by its own exit
    assert all(events[i].split("-")[0] == events[i + 1].split("-")[0] for i in range(0, len(events), 2))
    assert len(events) == 8


def test_local_registry_drops_released_keys(short_wait):
    key = locks.lock_key(5, 6)
    with locks.enrollment_lock(5, 6, backend="local"):
        assert key in locks._local_locks
        with pytest.raises(LockTimeoutError):
            with locks.enrollment_lock(5, 6, backend="local"):
                pass
        assert locks._local_locks[key][1] == 1
    assert key not in locks._local_locks

    for student_id in range(100, 150):
        with locks.enrollment_lock(student_id, 1, backend="local"):
            pass
    assert not [s for s in range(100, 150) if locks.lock_key(s, 1) in locks._local_locks]


def test_local_registry_keeps_lock_while_waiters_remain():
    key = locks.lock_key(8, 8)
    acquired = []

    def waiter():
        with locks.enrollment_lock(8, 8, backend="local"):
            acquired.append(locks._local_locks[key][0])

    with locks.enrollment_lock(8, 8, backend="local"):
        held = locks._local_locks[key][0]
        t = threading.Thread(target=waiter)
        t.start()
        deadline = time.monotonic() + 2
        while locks._local_locks[key][1] < 2 and time.monotonic() < deadline:
            time.sleep(0.005)
        assert locks._local_locks[key][1] == 2
    t.join()
    assert acquired == [held]
    assert key not in locks._local_locks


def test_redis_lock_not_acquired(monkeypatch):
    client = mock.Mock()
    client.lock.return_value.acquire.return_value = False
    monkeypatch.setattr(locks, "get_redis", lambda: client)
    with pytest.raises(LockTimeoutError):
        with locks.enrollment_lock(1, 1, backend="redis"):
            pass


def test_redis_outage_is_retryable(monkeypatch):
    client = mock.Mock()
    client.lock.return_value.acquire.side_effect = RedisConnectionError("down")
    monkeypatch.setattr(locks, "get_redis", lambda: client)
    with pytest.raises(PersistenceError) as exc:
        with locks.enrollment_lock(1, 1, backend="redis"):
            pass
    assert exc.value.retryable


def test_redis_lock_released(monkeypatch):
    client = mock.Mock()
    lock = client.lock.return_value
    lock.acquire.return_value = True
    monkeypatch.setattr(locks, "get_redis", lambda: client)
    with locks.enrollment_lock(3, 4, backend="redis"):
        pass
    client.lock.assert_called_once_with(
        "qbank:lock:enrollment:3:4", timeout=settings.LOCK_TIMEOUT_SECONDS,
        blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT_SECONDS,
    )
    lock.release.assert_called_once()
