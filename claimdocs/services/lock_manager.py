"""
Lock Manager
Named, bounded-wait mutual exclusion for the two shared resources of the
pipeline: the document-ID sequence and the legacy template workbook.

Two backends:
- InProcessLockManager: threading locks, for a single worker process
- PostgresAdvisoryLockManager: session-level advisory locks, for several workers
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ContextManager, Dict, Generator, Optional

from sqlalchemy import text

from claimdocs.config import settings
from claimdocs.services.errors import LockTimeout

logger = logging.getLogger(__name__)


class LockManager(ABC):
    """Interface: hold(name, timeout) is a context manager raising LockTimeout"""

    @abstractmethod
    def hold(self, name: str, timeout: Optional[float] = None) -> ContextManager[None]:
        ...


class InProcessLockManager(LockManager):
    """Named threading locks shared by every caller in this process"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, name: str, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Acquire the named lock, waiting at most timeout seconds.

        Args:
            name: Lock name
            timeout: Seconds to wait (default: settings.lock_timeout_seconds); <= 0 means try once

        Raises:
            LockTimeout: If the lock could not be acquired in time
        """
        timeout = settings.lock_timeout_seconds if timeout is None else timeout
        lock = self._lock_for(name)

        if timeout <= 0:
            acquired = lock.acquire(blocking=False)
        else:
            acquired = lock.acquire(timeout=timeout)
        if not acquired:
            logger.warning(f"Lock timeout: name={name}, waited={timeout}s")
            raise LockTimeout(name, timeout)

        logger.debug(f"Lock acquired: {name}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released: {name}")


class PostgresAdvisoryLockManager(LockManager):
    """
    Session-level PostgreSQL advisory locks keyed by hashtext(name).

    The lock is tied to the session that took it, so the session is held open
    for the whole critical section and closed in finally.
    """

    def __init__(self, session_factory=None, poll_interval: Optional[float] = None):
        if session_factory is None:
            from claimdocs.services.db import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self._poll_interval = poll_interval or settings.lock_poll_interval_seconds

    @contextmanager
    def hold(self, name: str, timeout: Optional[float] = None) -> Generator[None, None, None]:
        timeout = settings.lock_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + max(timeout, 0)
        session = self._session_factory()
        acquired = False
        try:
            while True:
                acquired = bool(
                    session.execute(
                        text("SELECT pg_try_advisory_lock(hashtext(:name))"),
                        {"name": name},
                    ).scalar()
                )
                if acquired or time.monotonic() >= deadline:
                    break
                time.sleep(self._poll_interval)

            if not acquired:
                logger.warning(f"Advisory lock timeout: name={name}, waited={timeout}s")
                raise LockTimeout(name, timeout)

            logger.debug(f"Advisory lock acquired: {name}")
            yield
        finally:
            try:
                if acquired:
                    session.execute(
                        text("SELECT pg_advisory_unlock(hashtext(:name))"),
                        {"name": name},
                    )
                    logger.debug(f"Advisory lock released: {name}")
            finally:
                session.close()


_lock_manager: Optional[LockManager] = None
_lock_manager_guard = threading.Lock()


def get_lock_manager() -> LockManager:
    """Process-wide lock manager for the configured backend"""
    global _lock_manager
    with _lock_manager_guard:
        if _lock_manager is None:
            if settings.lock_backend == "postgres":
                logger.info("Using PostgreSQL advisory locks")
                _lock_manager = PostgresAdvisoryLockManager()
            else:
                logger.info("Using in-process locks")
                _lock_manager = InProcessLockManager()
        return _lock_manager
