"""
Cross-process file locks.

Read-modify-write cycles on shared state files (the integrity store, the
auto-saved policy file) are serialized with an exclusive lock on a sidecar
``<file>.lock``. Threads of one process also share an in-memory lock per
file.

- Unix/Linux/macOS: fcntl.flock
- Windows: msvcrt.locking

Usage:
    with locked_file(store_path):
        data = load()
        data[key] = value
        save(data)
"""

import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"

# One lock per target file, shared by every caller in the process
_thread_locks: dict[Path, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def lock_path_for(path: Path) -> Path:
    """Sidecar lock file guarding ``path``."""
    return path.with_name(path.name + LOCK_SUFFIX)


def _thread_lock_for(path: Path) -> threading.Lock:
    key = path.resolve()
    with _thread_locks_guard:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = _thread_locks[key] = threading.Lock()
        return lock


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """
    Hold an exclusive lock on ``path`` across threads and processes.

    The parent directory is created if needed. Blocks until the lock is
    available.

    Raises:
        OSError: If the lock file cannot be created or locked
    """
    path = Path(path)
    with _thread_lock_for(path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path_for(path), "a+b") as handle:
            _acquire(handle)
            logger.debug("Acquired lock on %s", handle.name)
            try:
                yield
            finally:
                _release(handle)
                logger.debug("Released lock on %s", handle.name)


# =============================================================================
# Platform implementations
# =============================================================================


if sys.platform == "win32":
    import msvcrt

    def _acquire(handle) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)

    def _release(handle) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _acquire(handle) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)

    def _release(handle) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
