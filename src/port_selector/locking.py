"""Advisory file locks serializing access to the allocations file."""

import logging
import os
from pathlib import Path
from typing import IO, Protocol

from .errors import StoreIOError

logger = logging.getLogger(__name__)


class Locker(Protocol):
    """Exclusive inter-process lock."""

    def acquire(self) -> None: ...

    def release(self) -> None: ...


class _LockerBase:
    def __init__(self, path: Path):
        self.path = path
        self._file: IO[str] | None = None

    def _open(self) -> IO[str]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return open(self.path, "a+")
        except OSError as e:
            raise StoreIOError(f"failed to open lock file {self.path}: {e}") from e

    def _close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class FlockLocker(_LockerBase):
    """Blocking ``flock(2)`` lock on a sibling lock file (POSIX)."""

    def acquire(self) -> None:
        import fcntl

        lock_file = self._open()
        try:
            # Blocks until every other holder has released the lock
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            lock_file.close()
            raise StoreIOError(f"failed to acquire lock on {self.path}: {e}") from e
        self._file = lock_file
        logger.debug("acquired lock on %s", self.path)

    def release(self) -> None:
        import fcntl

        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning("failed to release lock on %s: %s", self.path, e)
        finally:
            self._close()
        logger.debug("released lock on %s", self.path)


class NullLocker(_LockerBase):
    """Placeholder for platforms without advisory locks; provides no exclusion."""

    _warned = False

    def acquire(self) -> None:
        self._file = self._open()
        if not NullLocker._warned:
            NullLocker._warned = True
            logger.warning(
                "file locking not available on this platform, concurrent access may corrupt allocations"
            )
        logger.debug("opened %s without locking", self.path)

    def release(self) -> None:
        self._close()


def default_locker(path: Path) -> Locker:
    """Return the locker implementation for the running platform."""
    if os.name == "nt":
        return NullLocker(path)
    return FlockLocker(path)
