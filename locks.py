import threading
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Hashable, Iterator, Optional, TypeVar

import structlog

from exceptions import PointErrorCode, PointServiceError

logger = structlog.get_logger()

T = TypeVar("T")


class FairLock:
    """Exclusive lock that grants ownership in arrival order.

    On release the lock is handed directly to the oldest waiter, so a thread
    arriving later can never overtake one already queued.
    """

    def __init__(self):
        self._mutex = threading.Lock()
        self._waiters: Deque[threading.Event] = deque()
        self._locked = False

    def acquire(self, timeout: Optional[float] = None) -> bool:
        with self._mutex:
            if not self._locked and not self._waiters:
                self._locked = True
                return True
            grant = threading.Event()
            self._waiters.append(grant)

        try:
            granted = grant.wait(timeout)
        except BaseException:
            with self._mutex:
                handed_over = grant.is_set()
                if not handed_over:
                    self._waiters.remove(grant)
            if handed_over:
                self.release()
            raise
        if granted:
            return True

        with self._mutex:
            # release() may have handed over between the timeout and here
            if grant.is_set():
                return True
            self._waiters.remove(grant)
            return False

    def release(self) -> None:
        with self._mutex:
            if not self._locked:
                raise RuntimeError("release of unlocked FairLock")
            if self._waiters:
                # Ownership passes to the next waiter; the lock stays held
                self._waiters.popleft().set()
            else:
                self._locked = False

    def locked(self) -> bool:
        with self._mutex:
            return self._locked

    def queue_length(self) -> int:
        """Number of threads waiting for the lock."""
        with self._mutex:
            return len(self._waiters)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class KeyedLockRegistry:
    """Process-wide map of key -> FairLock.

    Locks are created lazily on first use and never removed.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[Hashable, FairLock] = {}
        self._guard = threading.Lock()

    def get_lock(self, key: Hashable) -> FairLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = FairLock()
                self._locks[key] = lock
                logger.debug("Lock created", key=key)
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[FairLock]:
        lock = self.get_lock(key)
        if not lock.acquire(self.timeout):
            logger.warning("Lock acquisition timed out", key=key, timeout=self.timeout)
            raise PointServiceError(PointErrorCode.LOCK_TIMEOUT)
        try:
            yield lock
        finally:
            lock.release()

    def run_exclusive(self, key: Hashable, operation: Callable[..., T], *args, **kwargs) -> T:
        """Run ``operation`` while holding the lock for ``key``."""
        with self.hold(key):
            return operation(*args, **kwargs)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def __contains__(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._locks
