"""
Single Instance Lock - One Orchestrator per Account

PID file lock so only one trading loop owns the state file and the
account at a time. Two loops would race on the same position book and
double-submit orders.

Signal handling is left to the runner, which must finish the current
cycle before releasing the lock.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("cycletrader")
        if not lock.acquire():
            sys.exit(1)
        try:
            run()
        finally:
            lock.release()
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # exists, owned by someone else
        return True

    def _holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock, clearing a stale PID file left by a dead process.

        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        for _ in range(2):
            try:
                fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._holder_pid()
                if holder is not None and holder != os.getpid() and self._is_process_running(holder):
                    logger.error(
                        f"Another instance is running (PID={holder}). Lock file: {self.lock_file}"
                    )
                    return False
                logger.warning(f"Removing stale lock file {self.lock_file} (PID={holder})")
                try:
                    self.lock_file.unlink()
                except FileNotFoundError:
                    pass
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self.acquired = True
            logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
            return True

        logger.error(f"Could not acquire lock {self.lock_file}")
        return False

    def release(self) -> None:
        """Release the lock (delete PID file)."""
        if not self.acquired:
            return
        try:
            if self._holder_pid() == os.getpid():
                self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "cycletrader", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """
    Acquire the single instance lock.

    Returns:
        SingleInstanceLock if successful, None if another instance is running
    """
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
