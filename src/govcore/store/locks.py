"""
Environment Locks

Per-environment reader/writer locks. Writers to one environment never
block writers to another; a promotion holds the target exclusively and
the source shared.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from govcore.exceptions import LockTimeout

logger = logging.getLogger(__name__)

# Lock key for data that belongs to no environment (shared catalog
# entries, scopes outside every environment).
UNPARTITIONED = "env:-"
# Serialises changes to the environment partition itself.
PARTITION = "partition"


def environment_key(environment_id: Optional[str]) -> str:
    """Lock key for an environment id (``None`` means unpartitioned)."""
    return f"env:{environment_id}" if environment_id else UNPARTITIONED


class ReadWriteLock:
    """Reader/writer lock with bounded reader priority.

    Readers share the lock. While a writer waits, at most
    ``max_reader_streak`` further readers are admitted ahead of it, so a
    steady stream of readers cannot starve writers and a writer cannot
    starve readers for longer than one write.
    """

    def __init__(self, max_reader_streak: int = 32) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._writers_waiting = 0
        self._reader_streak = 0
        self._max_reader_streak = max_reader_streak

    def acquire_read(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._can_read():
                if not self._wait(deadline):
                    return False
            self._readers += 1
            if self._writers_waiting:
                self._reader_streak += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read without a matching acquire")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        me = threading.get_ident()
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._readers or self._writer is not None:
                    if not self._wait(deadline):
                        return False
                self._writer = me
                self._reader_streak = 0
                return True
            finally:
                self._writers_waiting -= 1
                if self._writer != me:
                    self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            if self._writer != threading.get_ident():
                raise RuntimeError("release_write by a thread that does not hold the lock")
            self._writer = None
            self._cond.notify_all()

    def _can_read(self) -> bool:
        if self._writer is not None:
            return False
        if self._writers_waiting and self._reader_streak >= self._max_reader_streak:
            return False
        return True

    def _wait(self, deadline: Optional[float]) -> bool:
        if deadline is None:
            self._cond.wait()
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        self._cond.wait(remaining)
        return True


class LockManager:
    """Hands out named reader/writer locks, created on first use."""

    def __init__(self, timeout_seconds: float = 30.0, max_reader_streak: int = 32):
        self._timeout = timeout_seconds
        self._max_reader_streak = max_reader_streak
        self._locks: dict[str, ReadWriteLock] = {}
        self._guard = threading.Lock()

    def _lock(self, key: str) -> ReadWriteLock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = ReadWriteLock(self._max_reader_streak)
            return self._locks[key]

    @contextmanager
    def hold(
        self,
        exclusive: Iterable[str] = (),
        shared: Iterable[str] = (),
    ) -> Iterator[None]:
        """Hold every lock in *exclusive* and *shared* for the block.

        Keys are acquired in sorted order to rule out lock-order
        deadlocks; a key requested both ways is taken exclusively.
        """
        exclusive_keys = set(exclusive)
        wanted = {k: True for k in exclusive_keys}
        for key in shared:
            wanted.setdefault(key, False)

        held: list[tuple[ReadWriteLock, bool]] = []
        try:
            for key in sorted(wanted):
                lock = self._lock(key)
                write = wanted[key]
                ok = (
                    lock.acquire_write(self._timeout) if write
                    else lock.acquire_read(self._timeout)
                )
                if not ok:
                    raise LockTimeout(
                        f"Timed out after {self._timeout}s waiting for "
                        f"{'exclusive' if write else 'shared'} lock {key}"
                    )
                held.append((lock, write))
            logger.debug("Holding locks %s", sorted(wanted))
            yield
        finally:
            for lock, write in reversed(held):
                if write:
                    lock.release_write()
                else:
                    lock.release_read()
