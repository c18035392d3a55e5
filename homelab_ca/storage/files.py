"""Atomic file replacement and per-directory locking.

Every CA artifact is written to a temporary file in the destination
directory, flushed, and moved into place with os.replace, so a file under
its final name is always complete.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Union

try:
    import fcntl
except ImportError:  # Windows: in-process locking only
    fcntl = None

logger = logging.getLogger(__name__)

LOCK_FILE = ".lock"


def atomic_write(path: Union[str, Path], data: Union[bytes, str], mode: int = 0o644) -> Path:
    """Write `data` to `path` via a temporary file and os.replace."""
    path = Path(path)
    if isinstance(data, str):
        data = data.encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    logger.debug("wrote %s (%d bytes, mode %o)", path, len(data), mode)
    return path


class _DirLockState:
    def __init__(self):
        self.mtx = threading.RLock()
        self.fh = None
        self.depth = 0


class TierLock:
    """Mutual exclusion for one CA directory.

    Combines a process-wide re-entrant lock with an flock on `<dir>/.lock`
    so separate processes touching the same ledger serialize too. All
    TierLock instances for one directory share the same state, so nesting
    them in one thread does not deadlock.
    """

    _states: Dict[Path, _DirLockState] = {}
    _states_guard = threading.Lock()

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        key = self.directory.resolve()
        with TierLock._states_guard:
            self._state = TierLock._states.setdefault(key, _DirLockState())

    def __enter__(self) -> "TierLock":
        state = self._state
        state.mtx.acquire()
        try:
            if state.depth == 0:
                self.directory.mkdir(parents=True, exist_ok=True)
                state.fh = open(self.directory / LOCK_FILE, "a+")
                if fcntl is not None:
                    fcntl.flock(state.fh.fileno(), fcntl.LOCK_EX)
            state.depth += 1
        except BaseException:
            if state.depth == 0 and state.fh is not None:
                state.fh.close()
                state.fh = None
            state.mtx.release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        state = self._state
        try:
            state.depth -= 1
            if state.depth == 0 and state.fh is not None:
                if fcntl is not None:
                    fcntl.flock(state.fh.fileno(), fcntl.LOCK_UN)
                state.fh.close()
                state.fh = None
        finally:
            state.mtx.release()
