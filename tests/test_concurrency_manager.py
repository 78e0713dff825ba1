import threading
import time

import pytest

from registrar.core.exceptions import ConcurrencyConflictError, LockTimeoutError, NotEnrolledError
from registrar.services.concurrency_manager import ConcurrencyManager, LockType


def test_write_lock_times_out_instead_of_blocking():
    cm = ConcurrencyManager(default_timeout=0.1)
    lock_id = cm.acquire_lock("section:a", LockType.WRITE, "holder-1")

    started = time.monotonic()
    with pytest.raises(LockTimeoutError) as exc_info:
        cm.acquire_lock("section:a", LockType.WRITE, "holder-2")
    assert time.monotonic() - started < 1.0
    assert exc_info.value.retryable is True

    cm.release_lock(lock_id)
    assert cm.acquire_lock("section:a", LockType.WRITE, "holder-2")


def test_read_locks_share_and_exclude_writers():
    cm = ConcurrencyManager(default_timeout=0.05)
    cm.acquire_lock("section:a", LockType.READ, "reader-1")
    cm.acquire_lock("section:a", LockType.READ, "reader-2")
    assert len(cm.get_lock_info("section:a")) == 2

    with pytest.raises(LockTimeoutError):
        cm.acquire_lock("section:a", LockType.WRITE, "writer")


def test_same_holder_is_reentrant():
    cm = ConcurrencyManager(default_timeout=0.05)
    with cm.lock("section:a", LockType.WRITE, holder_id="h"):
        with cm.lock("section:a", LockType.WRITE, holder_id="h"):
            assert len(cm.get_holder_locks("h")) == 2
    assert cm.get_lock_info("section:a") == []


def test_different_sections_do_not_contend():
    cm = ConcurrencyManager(default_timeout=0.05)
    with cm.lock("section:a", LockType.WRITE, holder_id="h1"):
        with cm.lock("section:b", LockType.WRITE, holder_id="h2"):
            pass


def test_waiter_wakes_when_lock_is_released():
    cm = ConcurrencyManager(default_timeout=2.0)
    lock_id = cm.acquire_lock("section:a", LockType.WRITE, "first")
    acquired = threading.Event()

    def waiter():
        with cm.lock("section:a", LockType.WRITE, holder_id="second"):
            acquired.set()

    thread = threading.Thread(target=waiter)
    thread.start()
    time.sleep(0.05)
    assert not acquired.is_set()
    cm.release_lock(lock_id)
    thread.join(timeout=2.0)
    assert acquired.is_set()


def test_retry_recovers_from_transient_conflict():
    cm = ConcurrencyManager()
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConcurrencyConflictError("busy")
        return "ok"

    assert cm.execute_with_retry(flaky, max_retries=3, backoff_factor=0) == "ok"
    assert len(calls) == 3


def test_retry_exhaustion_surfaces_conflict():
    cm = ConcurrencyManager()
    calls = []

    def always_busy():
        calls.append(1)
        raise ConcurrencyConflictError("busy")

    with pytest.raises(ConcurrencyConflictError):
        cm.execute_with_retry(always_busy, max_retries=2, backoff_factor=0)
    assert len(calls) == 3


def test_retry_does_not_repeat_lock_timeouts_or_domain_errors():
    cm = ConcurrencyManager()
    calls = []

    def timeout():
        calls.append(1)
        raise LockTimeoutError("timeout")

    with pytest.raises(LockTimeoutError):
        cm.execute_with_retry(timeout, max_retries=3, backoff_factor=0)

    def not_enrolled():
        calls.append(1)
        raise NotEnrolledError("gone")

    with pytest.raises(NotEnrolledError):
        cm.execute_with_retry(not_enrolled, max_retries=3, backoff_factor=0)
    assert len(calls) == 2
