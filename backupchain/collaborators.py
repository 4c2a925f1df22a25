import os
import shutil
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import CancelledError, TransportError


logger = logging.getLogger('backupchain')


class Clock:
    """Source of node timestamps."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class CancellationToken:
    """
    Cooperative cancellation signal shared by a run and its workers.

    A token is cancelled either explicitly through cancel() or implicitly once
    its timeout (in seconds, measured from creation) has elapsed. Long running
    loops call raise_if_cancelled() between units of work.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.reason = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("timeout expired")
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledError(f"Operation cancelled: {self.reason}")


class Transport:
    """Pushes a local artifact to remote storage."""

    def push(self, local_artifact: Path, remote_locator: str) -> None:
        raise NotImplementedError


class DirectoryTransport(Transport):
    """
    Mirror a destination root into another directory.

    The remote locator is a directory path, typically a mounted network share.
    Objects are immutable so files already present remotely are skipped; the
    metadata database is always copied last so that the mirror never references
    objects it does not have yet.
    """

    def push(self, local_artifact: Path, remote_locator: str) -> None:
        source = Path(local_artifact)
        target = Path(remote_locator)
        try:
            os.makedirs(target, exist_ok=True)
            objects_dir = source / "objects"
            copied = 0
            for root, _, files in os.walk(objects_dir):
                for name in files:
                    src = Path(root) / name
                    dst = target / src.relative_to(source)
                    if dst.exists():
                        continue
                    os.makedirs(dst.parent, exist_ok=True)
                    shutil.copy2(src, dst)
                    copied += 1
            for name in os.listdir(source):
                if name.endswith(".db"):
                    shutil.copy2(source / name, target / name)
            logger.info(f"Pushed {copied} new objects from '{source}' to '{target}'")
        except OSError as e:
            raise TransportError(f"Failed to push '{source}' to '{target}': {str(e)}") from e


class Notifier:
    """Receives the outcome of every run."""

    def notify(self, status: str, details: Dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Write run notifications to the backupchain log."""

    def notify(self, status: str, details: Dict[str, Any]) -> None:
        summary = ", ".join(f"{key}={value}" for key, value in sorted(details.items()))
        if status == "success":
            logger.info(f"Backup notification [{status}]: {summary}")
        else:
            logger.warning(f"Backup notification [{status}]: {summary}")
