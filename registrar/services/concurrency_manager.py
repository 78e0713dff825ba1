"""
Concurrency management and thread safety components.
"""

import logging
import threading
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from ..core.exceptions import ConcurrencyConflictError, LockTimeoutError

logger = logging.getLogger(__name__)


class LockType(Enum):
    """Types of locks available."""
    READ = "read"
    WRITE = "write"


@dataclass
class LockInfo:
    """Information about a held lock."""
    lock_id: str
    resource_id: str
    lock_type: LockType
    holder_id: str
    acquired_at: float


class ConcurrencyManager:
    """Per-resource reader/writer locks with bounded waits, plus retry helpers.

    A WRITE lock excludes every other holder on the same resource; READ locks
    share with each other. A holder that already owns a lock on a resource may
    take another one on it (re-entrant). Waiting longer than the timeout raises
    :class:`LockTimeoutError` instead of blocking indefinitely.
    """

    def __init__(self, default_timeout: float = 5.0):
        self._default_timeout = default_timeout
        self._locks: Dict[str, Dict[LockType, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self._lock_holders: Dict[str, LockInfo] = {}
        self._lock = threading.RLock()
        self._released = threading.Condition(self._lock)

    def acquire_lock(self, resource_id: str, lock_type: LockType,
                     holder_id: str, timeout: Optional[float] = None) -> str:
        """Acquire a lock on a resource, waiting at most ``timeout`` seconds."""
        timeout = self._default_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        with self._released:
            while not self._can_acquire_lock(resource_id, lock_type, holder_id):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Timed out waiting %.2fs for %s lock on %s",
                                   timeout, lock_type.value, resource_id)
                    raise LockTimeoutError(
                        f"Cannot acquire {lock_type.value} lock on {resource_id} within {timeout}s",
                        details={"resource_id": resource_id, "timeout": timeout},
                    )
                self._released.wait(remaining)

            lock_id = str(uuid.uuid4())
            self._locks[resource_id][lock_type].add(lock_id)
            self._lock_holders[lock_id] = LockInfo(
                lock_id=lock_id,
                resource_id=resource_id,
                lock_type=lock_type,
                holder_id=holder_id,
                acquired_at=time.time(),
            )
            logger.debug("%s acquired %s lock on %s", holder_id, lock_type.value, resource_id)
            return lock_id

    def release_lock(self, lock_id: str) -> bool:
        """Release a lock."""
        with self._released:
            if lock_id not in self._lock_holders:
                return False

            lock_info = self._lock_holders.pop(lock_id)
            resource_id = lock_info.resource_id
            lock_type = lock_info.lock_type

            self._locks[resource_id][lock_type].discard(lock_id)

            # Clean up empty lock types
            if not self._locks[resource_id][lock_type]:
                del self._locks[resource_id][lock_type]

            # Clean up empty resources
            if not self._locks[resource_id]:
                del self._locks[resource_id]

            self._released.notify_all()
            return True

    def _can_acquire_lock(self, resource_id: str, lock_type: LockType,
                          holder_id: str) -> bool:
        """Check if a lock can be acquired."""
        existing_locks = self._locks.get(resource_id)
        if not existing_locks:
            return True

        # Same holder can acquire multiple locks
        for locks in existing_locks.values():
            for lock_id in locks:
                if self._lock_holders[lock_id].holder_id == holder_id:
                    return True

        if lock_type == LockType.READ:
            # Read locks can coexist with other read locks
            return LockType.WRITE not in existing_locks
        # Write locks conflict with all other locks
        return not any(existing_locks.values())

    @contextmanager
    def lock(self, resource_id: str, lock_type: LockType,
             holder_id: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[str]:
        """Context manager for acquiring and releasing locks."""
        holder_id = holder_id or f"thread_{threading.get_ident()}"
        lock_id = self.acquire_lock(resource_id, lock_type, holder_id, timeout)
        try:
            yield lock_id
        finally:
            self.release_lock(lock_id)

    def execute_with_retry(self, func: Callable[[], Any], max_retries: int = 3,
                           backoff_factor: float = 0.05) -> Any:
        """Execute a function, retrying on write conflicts with exponential backoff.

        Lock timeouts are not retried here: they are reported to the caller.
        """
        for attempt in range(max_retries + 1):
            try:
                return func()
            except LockTimeoutError:
                raise
            except ConcurrencyConflictError as e:
                if attempt >= max_retries:
                    logger.warning("Giving up after %d attempts: %s", attempt + 1, e.message)
                    raise
                logger.warning("Write conflict on attempt %d, retrying: %s", attempt + 1, e.message)
                time.sleep(backoff_factor * (2 ** attempt))

    def get_lock_info(self, resource_id: str) -> List[LockInfo]:
        """Get information about all locks on a resource."""
        with self._lock:
            locks = []
            for lock_ids in self._locks.get(resource_id, {}).values():
                for lock_id in lock_ids:
                    if lock_id in self._lock_holders:
                        locks.append(self._lock_holders[lock_id])
            return locks

    def get_holder_locks(self, holder_id: str) -> List[LockInfo]:
        """Get all locks held by a specific holder."""
        with self._lock:
            return [lock_info for lock_info in self._lock_holders.values()
                    if lock_info.holder_id == holder_id]
