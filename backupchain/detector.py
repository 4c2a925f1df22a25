import os
import stat
import fnmatch
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .errors import StaleReferenceError
from .models import BackupNode


logger = logging.getLogger('backupchain')


class ChangeSetDetector:
    """
    Finds the files of a source tree that changed since a reference node.

    The tree is walked in full on every call; symlinks are neither followed
    nor captured. Relative paths always use '/' as separator.
    """

    def __init__(self, exclude: Optional[Iterable[str]] = None, token=None):
        self.exclude = [pattern for pattern in (exclude or []) if pattern]
        self.token = token

    def is_excluded(self, relative_path: str) -> bool:
        name = relative_path.rsplit('/', 1)[-1]
        for pattern in self.exclude:
            if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        return False

    def scan(self, source_root) -> List[str]:
        """
        List every regular file under source_root.

        Returns:
            List[str]: sorted relative paths

        Raises:
            ValueError: If source_root does not exist or is not a directory
        """
        root = Path(source_root)
        if not root.is_dir():
            raise ValueError(f"Source directory '{source_root}' does not exist or is not a directory")

        paths = []
        for dirpath, dirnames, filenames in os.walk(root):
            if self.token is not None:
                self.token.raise_if_cancelled()
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            # prune excluded directories so their content is never visited
            dirnames[:] = [
                d for d in dirnames
                if not self.is_excluded(d if rel_dir == '.' else f"{rel_dir}/{d}")
            ]
            for filename in filenames:
                relative_path = filename if rel_dir == '.' else f"{rel_dir}/{filename}"
                if self.is_excluded(relative_path):
                    continue
                try:
                    mode = os.lstat(os.path.join(dirpath, filename)).st_mode
                except FileNotFoundError:
                    continue
                if stat.S_ISREG(mode):
                    paths.append(relative_path)
        paths.sort()
        return paths

    def changed_since(self, source_root, reference: BackupNode,
                      known_paths: Optional[Set[str]] = None) -> List[str]:
        """
        Return the files modified strictly after the reference node completed.

        Args:
            source_root: Directory to scan
            reference: Node to diff against
            known_paths: Paths present when the reference ran; files missing
                from it are reported as changed whatever their mtime

        Raises:
            StaleReferenceError: If the reference node never completed
        """
        if reference.completed_at is None:
            raise StaleReferenceError(
                f"Reference node {reference.id} has no completion timestamp ({reference.status})"
            )
        threshold = reference.completed_at.timestamp()
        root = Path(source_root)

        changed = []
        for relative_path in self.scan(root):
            try:
                mtime = os.lstat(root / relative_path).st_mtime
            except FileNotFoundError:
                continue
            if mtime > threshold:
                changed.append(relative_path)
            elif known_paths is not None and relative_path not in known_paths:
                changed.append(relative_path)

        logger.info(f"Detected {len(changed)} changed files in '{source_root}' since node {reference.id}")
        return changed
