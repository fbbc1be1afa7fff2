"""Cross-process directory lock used by knowledge hot-swap.

The lock is a directory: ``mkdir`` is atomic on every filesystem we care
about, so whoever creates it owns it. The owner writes the acquisition time
(epoch seconds) into ``<lock>/ts``. A lock older than the stale threshold is
assumed to belong to a crashed process and is removed by the next waiter.
"""

from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from pathlib import Path
from types import TracebackType

from hindsight.core.constants import (
    HOTSWAP_LOCK_MAX_WAIT_SECONDS,
    HOTSWAP_LOCK_POLL_SECONDS,
    HOTSWAP_LOCK_STALE_SECONDS,
)
from hindsight.core.errors import LockTimeoutError
from hindsight.core.logging import get_logger

_logger = get_logger("lock")

TIMESTAMP_FILE = "ts"


def _acquired_at(lock_path: Path) -> float | None:
    try:
        return float((lock_path / TIMESTAMP_FILE).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        try:
            return lock_path.stat().st_mtime
        except FileNotFoundError:
            return None


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)


def lock_age(lock_path: Path, now: float | None = None) -> float | None:
    """Seconds since the lock at ``lock_path`` was taken.

    Uses the timestamp file when it is readable, otherwise the directory's
    mtime (a holder may not have written the file yet).

    Returns:
        Age in seconds, or None if no lock exists.
    """
    acquired = _acquired_at(lock_path)
    if acquired is None:
        return None
    now = time.time() if now is None else now
    return max(0.0, now - acquired)


def break_stale_lock(
    lock_path: Path,
    stale_after: float = HOTSWAP_LOCK_STALE_SECONDS,
    now: float | None = None,
) -> bool:
    """Remove the lock if it is older than ``stale_after`` seconds.

    The lock is first renamed to a unique tombstone, so a waiter never
    deletes a lock another waiter took in the meantime. If the tombstone
    turns out to hold a different acquisition time it is put back.

    Returns:
        True if a stale lock was removed and the lock path is now free.
    """
    acquired = _acquired_at(lock_path)
    if acquired is None:
        return False
    now = time.time() if now is None else now
    age = max(0.0, now - acquired)
    if age <= stale_after:
        return False

    tombstone = lock_path.with_name(f"{lock_path.name}.stale-{uuid.uuid4().hex[:8]}")
    try:
        lock_path.rename(tombstone)
    except OSError as e:
        _logger.warning("lock.stale_break_failed", path=str(lock_path), error=str(e))
        return False

    if _acquired_at(tombstone) != acquired:
        # Someone took the lock between the age check and the rename.
        try:
            tombstone.rename(lock_path)
        except OSError as e:
            _logger.warning("lock.restore_failed", path=str(lock_path), error=str(e))
            _remove(tombstone)
        return False

    _remove(tombstone)
    _logger.warning("lock.stale_broken", path=str(lock_path), age_seconds=round(age, 1))
    return not lock_path.exists()


class DirectoryLock:
    """Async context manager around an mkdir-based lock.

    Example:
        async with DirectoryLock(paths.hotswap_lock):
            ...  # exclusive across processes
    """

    def __init__(
        self,
        path: Path,
        max_wait: float = HOTSWAP_LOCK_MAX_WAIT_SECONDS,
        stale_after: float = HOTSWAP_LOCK_STALE_SECONDS,
        poll_interval: float = HOTSWAP_LOCK_POLL_SECONDS,
    ) -> None:
        self.path = path
        self.max_wait = max_wait
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        """Whether this instance currently owns the lock."""
        return self._held

    def _try_create(self) -> bool:
        try:
            self.path.mkdir()
        except FileExistsError:
            return False
        (self.path / TIMESTAMP_FILE).write_text(str(time.time()), encoding="utf-8")
        return True

    async def acquire(self) -> None:
        """Wait for the lock, breaking it if stale.

        Raises:
            LockTimeoutError: If the lock is still held after ``max_wait``.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait
        while True:
            if self._try_create():
                self._held = True
                _logger.debug("lock.acquired", path=str(self.path))
                return
            if loop.time() >= deadline:
                raise LockTimeoutError(str(self.path), self.max_wait)
            if break_stale_lock(self.path, self.stale_after):
                await asyncio.sleep(0)
            else:
                await asyncio.sleep(self.poll_interval)

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self._held:
            return
        shutil.rmtree(self.path, ignore_errors=True)
        self._held = False
        _logger.debug("lock.released", path=str(self.path))

    async def __aenter__(self) -> DirectoryLock:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
