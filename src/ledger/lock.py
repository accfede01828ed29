"""
Exclusive-Access Locks

Every ledger read-modify-write runs while holding one of these. The contract
is what matters, not the mechanism: acquisition is bounded by a timeout and
release is guaranteed once acquired.

FileLock works across OS processes by atomically creating a marker file
(O_CREAT | O_EXCL); ThreadLock is the in-process variant used with in-memory
stores.
"""

import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional
import structlog

logger = structlog.get_logger()


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within its timeout."""

    def __init__(self, resource: str, timeout: float):
        self.resource = resource
        self.timeout = timeout
        super().__init__(f"Could not acquire lock for {resource} within {timeout:.2f}s")


class Lock(ABC):
    """Named exclusive lock with bounded acquisition."""

    def __init__(self, resource: str, default_timeout: float = 5.0):
        self.resource = resource
        self.default_timeout = default_timeout

    @abstractmethod
    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Try to take the lock; False if the timeout elapses first."""
        pass

    @abstractmethod
    def release(self) -> None:
        pass

    @contextmanager
    def held(self, timeout: Optional[float] = None) -> Generator["Lock", None, None]:
        """Hold the lock for the duration of the block or raise LockTimeoutError."""
        wait = self.default_timeout if timeout is None else timeout
        if not self.acquire(wait):
            logger.error("lock_acquire_timeout", resource=self.resource, timeout=wait)
            raise LockTimeoutError(self.resource, wait)
        try:
            yield self
        finally:
            self.release()

    def __enter__(self) -> "Lock":
        if not self.acquire(self.default_timeout):
            logger.error("lock_acquire_timeout", resource=self.resource, timeout=self.default_timeout)
            raise LockTimeoutError(self.resource, self.default_timeout)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


class FileLock(Lock):
    """
    Cross-process lock backed by an atomically created marker file.

    The marker holds the owner's PID for debugging. A crashed owner leaves
    the marker behind; it is never broken automatically, so operators see a
    timeout instead of two writers.
    """

    def __init__(
        self,
        lock_path: Path,
        default_timeout: float = 5.0,
        poll_interval: float = 0.05,
    ):
        self.lock_path = Path(lock_path)
        super().__init__(resource=self.lock_path.stem, default_timeout=default_timeout)
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    def acquire(self, timeout: Optional[float] = None) -> bool:
        wait = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    logger.warning("lock_busy", resource=self.resource, timeout=wait)
                    return False
                time.sleep(self.poll_interval)
                continue

            os.write(fd, str(os.getpid()).encode("ascii"))
            self._fd = fd
            return True

    def release(self) -> None:
        # Only the holder may remove the marker
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    @property
    def is_locked(self) -> bool:
        return self.lock_path.exists()


class ThreadLock(Lock):
    """In-process lock for in-memory stores and tests."""

    def __init__(self, resource: str = "memory", default_timeout: float = 5.0):
        super().__init__(resource=resource, default_timeout=default_timeout)
        self._lock = threading.Lock()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        wait = self.default_timeout if timeout is None else timeout
        return self._lock.acquire(timeout=wait)

    def release(self) -> None:
        self._lock.release()
