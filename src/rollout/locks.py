"""Single-flight guard keyed by deployment target."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Set

from .exceptions import RolloutInProgressError

logger = logging.getLogger(__name__)


class TargetLockRegistry:
    """Tracks which deployment targets have an in-flight rollout.

    Two kinds of locks are handed out per target key: a non-blocking
    single-flight slot for whole runs, and a blocking lock that serializes
    individual transport calls.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Set[str] = set()
        self._transport_locks: Dict[str, threading.Lock] = {}

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._active.discard(key)

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active

    @contextmanager
    def single_flight(self, key: str) -> Iterator[None]:
        """Hold the slot for ``key`` or raise RolloutInProgressError."""
        if not self.try_acquire(key):
            logger.warning("Rejected concurrent rollout for target %s", key)
            raise RolloutInProgressError(key)
        try:
            yield
        finally:
            self.release(key)

    def transport_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._transport_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._transport_locks[key] = lock
            return lock

    def reset(self) -> None:
        """Clear all held slots (for testing)."""
        with self._lock:
            self._active.clear()
            self._transport_locks.clear()


DEFAULT_LOCK_REGISTRY = TargetLockRegistry()
