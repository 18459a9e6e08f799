"""
Host-wide run lock.

A PID-stamped lock file guarantees at most one pipeline at a time. A lock
left behind by a dead process is stale and is removed; a lock held by a live
process makes the new run abort immediately instead of waiting.
"""

import errno
import logging
import os
import signal
from pathlib import Path

from .exceptions import LockContentionError

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    return True


class RunLock:
    """
    Advisory PID-file lock, usable as a context manager.

    While held, SIGTERM, SIGINT and SIGHUP release the lock before the process
    exits, so an interrupted run does not leave a lock behind for a live PID.
    """

    def __init__(self, path, install_signal_handlers: bool = True):
        self.path = Path(path)
        self.install_signal_handlers = install_signal_handlers
        self.acquired = False
        self._previous_handlers = {}

    def read_pid(self):
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        try:
            return int(content.split()[0])
        except (ValueError, IndexError):
            return 0

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as lock_file:
            lock_file.write(f"{os.getpid()}\n")
        return True

    def acquire(self):
        """
        Take the lock.

        Raises:
            LockContentionError: If a live process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if not self._try_create():
            pid = self.read_pid()
            if pid is not None and pid != os.getpid() and pid_alive(pid):
                logger.error(f"Backup already running (PID: {pid})")
                raise LockContentionError(self.path, pid)

            logger.warning(f"Removing stale lock file {self.path} (PID: {pid})")
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            if not self._try_create():
                # Another run won the race for the stale lock.
                raise LockContentionError(self.path, self.read_pid())

        self.acquired = True
        if self.install_signal_handlers:
            self._install_handlers()
        logger.debug(f"Acquired run lock {self.path}")
        return self

    def release(self):
        if not self.acquired:
            return
        try:
            if self.read_pid() == os.getpid():
                self.path.unlink()
        except OSError as e:
            if e.errno != errno.ENOENT:
                logger.warning(f"Failed to remove lock file {self.path}: {e}")
        self.acquired = False
        self._restore_handlers()
        logger.debug(f"Released run lock {self.path}")

    def _handle_signal(self, signum, frame):
        logger.warning(f"Received signal {signum}, releasing run lock")
        self.release()
        raise SystemExit(128 + signum)

    def _install_handlers(self):
        for signum in HANDLED_SIGNALS:
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # signal handlers can only be installed from the main thread
                break

    def _restore_handlers(self):
        for signum, handler in self._previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except ValueError as e:
                logger.debug(f"Could not restore handler for signal {signum}: {e}")
        self._previous_handlers = {}

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
