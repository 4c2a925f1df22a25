import os
import fcntl
import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path

from .errors import BusyError


logger = logging.getLogger('backupchain')


class DestinationLock:
    """
    Non-blocking advisory lock on a file, released on exit.

    Exclusive holders exclude everyone; shared holders only exclude exclusive
    ones. A lock that is already held is never waited for: BusyError is raised
    immediately so a second run is rejected rather than queued.
    """

    def __init__(self, lock_path, shared: bool = False, purpose: str = "backup"):
        self.lock_path = Path(lock_path)
        self.shared = shared
        self.purpose = purpose
        self._file = None

    def acquire(self):
        os.makedirs(self.lock_path.parent, exist_ok=True)
        self._file = open(self.lock_path, "a+")
        flags = (fcntl.LOCK_SH if self.shared else fcntl.LOCK_EX) | fcntl.LOCK_NB
        try:
            fcntl.flock(self._file.fileno(), flags)
        except (BlockingIOError, OSError):
            self._file.close()
            self._file = None
            raise BusyError(f"'{self.lock_path}' is locked by another run, {self.purpose} rejected") from None

        if not self.shared:
            self._file.seek(0)
            self._file.truncate()
            self._file.write(f"{self.purpose} in progress since {datetime.now(timezone.utc).isoformat()} (pid {os.getpid()})\n")
            self._file.flush()
        logger.debug(f"Acquired {'shared' if self.shared else 'exclusive'} lock on '{self.lock_path}'")

    def release(self):
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.error(f"Error releasing lock '{self.lock_path}': {e}")
        finally:
            self._file.close()
            self._file = None
        logger.debug(f"Released lock on '{self.lock_path}'")

    @property
    def held(self) -> bool:
        return self._file is not None

    def __enter__(self) -> 'DestinationLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


def store_lock(destination, shared: bool = False, purpose: str = "backup") -> DestinationLock:
    """Lock guarding the lineage and object state of a destination root."""
    return DestinationLock(Path(destination) / "locks" / "store.lock", shared=shared, purpose=purpose)


def restore_target_lock(destination, output_directory) -> DestinationLock:
    """Lock serializing restores into the same output directory."""
    key = hashlib.sha256(str(Path(output_directory).resolve()).encode("utf-8")).hexdigest()[:16]
    return DestinationLock(Path(destination) / "locks" / f"restore-{key}.lock", purpose="restore")
