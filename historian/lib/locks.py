"""Per-entity mutual exclusion for merge-and-commit critical sections.

Two layers:

- an in-process ``threading.Lock`` per ``(source_system, entity)``, handed out
  by :class:`EntityLockManager`;
- an optional advisory lock file (``O_CREAT | O_EXCL``) so separate processes
  sharing a state directory are serialized too. This is local filesystem
  coordination, not a distributed lock for cloud object stores.
"""

from __future__ import annotations

import errno
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from historian.lib.errors import LockTimeoutError

logger = logging.getLogger(__name__)

__all__ = ["EntityLockManager", "file_lock"]


def _pid_is_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # Only ESRCH means the process is gone; EPERM etc. mean it exists.
        return getattr(exc, "errno", None) != errno.ESRCH
    return True


@contextmanager
def file_lock(
    lock_path: Path,
    timeout: float = 30.0,
    poll_interval: float = 0.2,
) -> Iterator[None]:
    """Hold an advisory lock file for the duration of the block.

    Stale lock files (unreadable, or naming a pid that no longer exists) are
    removed and acquisition retried.

    Args:
        lock_path: Lock file to create.
        timeout: Maximum seconds to wait before raising.
        poll_interval: Poll interval while waiting.

    Raises:
        LockTimeoutError: If the lock is still held after ``timeout`` seconds
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    start = time.time()

    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            try:
                pid: Optional[int] = int(lock_path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError) as exc:
                logger.debug("Lock file %s unreadable, treating as stale: %s", lock_path, exc)
                pid = None

            if pid is None or not _pid_is_running(pid):
                try:
                    lock_path.unlink()
                except FileNotFoundError:
                    pass
                continue

            if time.time() - start >= timeout:
                raise LockTimeoutError(
                    f"Unable to acquire lock {lock_path} after {timeout}s",
                    lock_path=str(lock_path),
                    timeout=timeout,
                    details={"holder_pid": pid},
                )
            time.sleep(poll_interval)
            continue

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        logger.debug("Acquired lock %s by pid %s", lock_path, os.getpid())
        break

    try:
        yield
    finally:
        try:
            lock_path.unlink()
            logger.debug("Released lock %s by pid %s", lock_path, os.getpid())
        except FileNotFoundError:
            logger.debug("Lock file %s already removed during cleanup", lock_path)


class EntityLockManager:
    """Hands out one exclusive lock per ``(source_system, entity)``.

    Locks for different entities are independent, so batches for different
    entities proceed in parallel while batches for the same entity are
    strictly serialized.

    Example:
        locks = EntityLockManager(lock_dir=Path(".state/_locks"))
        with locks.hold("erp", "products"):
            plan = engine.plan(records, table, batch_id)
            table.apply(plan, batch_id)
            committer.commit(token, new_position)
    """

    def __init__(
        self,
        lock_dir: Optional[Path] = None,
        timeout: float = 30.0,
        poll_interval: float = 0.2,
    ) -> None:
        """Initialize the lock manager.

        Args:
            lock_dir: Directory for cross-process lock files (None = in-process only)
            timeout: Seconds to wait for a lock before raising LockTimeoutError
            poll_interval: Poll interval for the lock file
        """
        self.lock_dir = Path(lock_dir) if lock_dir is not None else None
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _lock_for(self, source_system: str, entity: str) -> threading.Lock:
        key = (source_system, entity)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def lock_path(self, source_system: str, entity: str) -> Optional[Path]:
        if self.lock_dir is None:
            return None
        safe = f"{source_system}_{entity}".replace("/", "_").replace(".", "_")
        return self.lock_dir / f"{safe}.lock"

    def is_locked(self, source_system: str, entity: str) -> bool:
        """True if the in-process lock for the entity is currently held."""
        return self._lock_for(source_system, entity).locked()

    @contextmanager
    def hold(self, source_system: str, entity: str) -> Iterator[None]:
        """Hold the exclusive lock for one entity.

        Raises:
            LockTimeoutError: If the lock cannot be acquired within the timeout
        """
        lock = self._lock_for(source_system, entity)
        if not lock.acquire(timeout=self.timeout):
            raise LockTimeoutError(
                f"Entity lock for {source_system}.{entity} not acquired after {self.timeout}s",
                system=source_system,
                entity=entity,
                timeout=self.timeout,
            )
        try:
            path = self.lock_path(source_system, entity)
            if path is None:
                yield
            else:
                with file_lock(path, timeout=self.timeout, poll_interval=self.poll_interval):
                    yield
        finally:
            lock.release()
