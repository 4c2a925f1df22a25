import io
import os
import sqlite3
import hashlib
import logging
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from .archiver import Archiver, PlainArchiver
from .database import BackupDatabase
from .errors import CancelledError, IntegrityError, PartialWriteError, ValidationError
from .models import ContentObject


logger = logging.getLogger('backupchain')


class _HashingReader:
    """File-like wrapper that hashes and counts bytes as they are read."""

    def __init__(self, stream: BinaryIO, token=None):
        self._stream = stream
        self._token = token
        self._sha256 = hashlib.sha256()
        self.size = 0
        self.read_error = None

    def read(self, size: int = -1) -> bytes:
        if self._token is not None:
            self._token.raise_if_cancelled()
        try:
            data = self._stream.read(size)
        except OSError as e:
            self.read_error = e
            raise
        self._sha256.update(data)
        self.size += len(data)
        return data

    def hexdigest(self) -> str:
        return self._sha256.hexdigest()


class DedupStore:
    """
    Content-addressable store of whole files.

    Objects live under objects/<first two hex digits>/<rest of the digest> and
    are never modified once published. Bytes are first written into tmp/ while
    being hashed, then renamed into place, so a reader can never observe a
    partially written object. The refcount of an object is the number of file
    entries pointing at it.
    """

    def __init__(self, root, db: BackupDatabase, archiver: Optional[Archiver] = None):
        self.root = Path(root)
        self.db = db
        self.archiver = archiver or PlainArchiver()
        self.objects_dir = self.root / "objects"
        self.tmp_dir = self.root / "tmp"
        os.makedirs(self.objects_dir, exist_ok=True)
        os.makedirs(self.tmp_dir, exist_ok=True)

        self._locks_guard = threading.Lock()
        self._hash_locks: Dict[str, List[Any]] = {}

        self.stats = {"objects_stored": 0, "dedup_hits": 0, "bytes_stored": 0}

    @contextmanager
    def _hash_lock(self, content_hash: str):
        """Serialize the create-vs-reference decision for one hash."""
        with self._locks_guard:
            entry = self._hash_locks.setdefault(content_hash, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._hash_locks[content_hash]

    def _relative_location(self, content_hash: str) -> str:
        return f"objects/{content_hash[:2]}/{content_hash[2:]}"

    def object_path(self, content_hash: str) -> Path:
        return self.root / self._relative_location(content_hash)

    def put(self, content: bytes, token=None) -> str:
        """Store content and return its hash; identical content is stored once."""
        return self._put_stream(io.BytesIO(content), token, "<bytes>")

    def put_file(self, file_path, token=None) -> str:
        """Store the content of a file and return its hash."""
        with open(file_path, 'rb') as f:
            return self._put_stream(f, token, str(file_path))

    def _put_stream(self, stream: BinaryIO, token, label: str) -> str:
        fd, tmp_name = tempfile.mkstemp(dir=str(self.tmp_dir), prefix="obj-", suffix=".tmp")
        os.close(fd)
        tmp_path = Path(tmp_name)
        published = False
        try:
            reader = _HashingReader(stream, token)
            try:
                self.archiver.write(tmp_path, reader)
            except CancelledError:
                logger.warning(f"Write of '{label}' cancelled, discarding temporary object")
                raise
            except Exception as e:
                if reader.read_error is not None:
                    # the source failed, not the store
                    raise reader.read_error
                raise PartialWriteError(f"Interrupted while storing '{label}': {str(e)}") from e

            content_hash = reader.hexdigest()
            final_path = self.object_path(content_hash)
            with self._hash_lock(content_hash):
                existing = self.db.get_object(content_hash)
                if existing is not None:
                    if not final_path.exists():
                        logger.warning(f"Object {content_hash} was missing on disk, republishing it")
                        os.makedirs(final_path.parent, exist_ok=True)
                        os.replace(tmp_path, final_path)
                        published = True
                    self.db.increment_refcount(content_hash)
                    with self._locks_guard:
                        self.stats["dedup_hits"] += 1
                    logger.debug(f"Dedup hit for '{label}': {content_hash}")
                else:
                    os.makedirs(final_path.parent, exist_ok=True)
                    os.replace(tmp_path, final_path)
                    published = True
                    self.db.add_object(content_hash, reader.size, self._relative_location(content_hash))
                    with self._locks_guard:
                        self.stats["objects_stored"] += 1
                        self.stats["bytes_stored"] += reader.size
                    logger.debug(f"Stored new object {content_hash} ({reader.size} bytes) for '{label}'")
            return content_hash
        finally:
            if not published:
                try:
                    tmp_path.unlink()
                except FileNotFoundError:
                    pass

    def link(self, content_hash: str, node_id: int, relative_path: str):
        """Record that a node captured relative_path with the given content."""
        if self.db.get_object(content_hash) is None:
            raise ValidationError(f"Cannot link '{relative_path}' to unknown object {content_hash}")
        try:
            self.db.add_file(node_id, relative_path, content_hash)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Cannot link '{relative_path}' into node {node_id}: {str(e)}") from e

    def release(self, content_hash: str) -> bool:
        """
        Drop one reference to an object.

        Returns:
            bool: True if this was the last reference and the object was deleted
        """
        with self._hash_lock(content_hash):
            refcount = self.db.decrement_refcount(content_hash)
            if refcount is None:
                logger.warning(f"Release of unknown object {content_hash} ignored")
                return False
            if refcount > 0:
                return False
            try:
                self.object_path(content_hash).unlink()
            except FileNotFoundError:
                logger.warning(f"Object file for {content_hash} was already gone")
            self.db.delete_object(content_hash)
            logger.debug(f"Deleted object {content_hash}, no references left")
            return True

    def get_object(self, content_hash: str) -> Optional[ContentObject]:
        row = self.db.get_object(content_hash)
        if row is None:
            return None
        return ContentObject(hash=row['hash'], refcount=row['refcount'], size=row['size'], location=row['location'])

    def open_object(self, content_hash: str) -> BinaryIO:
        """Open a stored object for reading its original bytes."""
        if self.db.get_object(content_hash) is None:
            raise IntegrityError(f"Object {content_hash} is not in the store")
        path = self.object_path(content_hash)
        try:
            return self.archiver.read(path)
        except FileNotFoundError as e:
            raise IntegrityError(f"Object file for {content_hash} is missing") from e

    def get(self, content_hash: str) -> bytes:
        with self.open_object(content_hash) as f:
            return f.read()

    def verify(self, token=None) -> Tuple[bool, List[Dict[str, Any]]]:
        """
        Re-hash every stored object.

        Returns:
            Tuple[bool, List[Dict[str, Any]]]: whether every object matched its
            hash, and one dict per corrupted object with stored_hash,
            calculated_hash and affected_files
        """
        corrupted = []
        for row in self.db.get_objects():
            if token is not None:
                token.raise_if_cancelled()
            stored_hash = row['hash']
            try:
                with self.archiver.read(self.object_path(stored_hash)) as f:
                    sha256 = hashlib.sha256()
                    for chunk in iter(lambda: f.read(65536), b''):
                        sha256.update(chunk)
                calculated_hash = sha256.hexdigest()
            except (OSError, EOFError) as e:
                logger.warning(f"Could not read object {stored_hash}: {str(e)}")
                calculated_hash = None
            if calculated_hash != stored_hash:
                corrupted.append({
                    "stored_hash": stored_hash,
                    "calculated_hash": calculated_hash,
                    "affected_files": self.db.get_files_for_hash(stored_hash),
                })
        return not corrupted, corrupted

    def reconcile(self) -> Dict[str, int]:
        """
        Bring objects back in line with file entries after an interrupted run.

        Removes leftover temporary artifacts, recomputes every refcount from the
        file entries, then deletes unreferenced objects and object files that
        have no row.
        """
        result = {"temp_removed": 0, "refcounts_fixed": 0, "objects_removed": 0, "stray_files_removed": 0}

        for name in os.listdir(self.tmp_dir):
            os.unlink(self.tmp_dir / name)
            result["temp_removed"] += 1

        result["refcounts_fixed"] = self.db.recompute_refcounts()

        for row in self.db.get_unreferenced_objects():
            try:
                self.object_path(row['hash']).unlink()
            except FileNotFoundError:
                pass
            self.db.delete_object(row['hash'])
            result["objects_removed"] += 1

        known = {row['hash'] for row in self.db.get_objects()}
        for shard in os.listdir(self.objects_dir):
            shard_dir = self.objects_dir / shard
            if not shard_dir.is_dir():
                continue
            for name in os.listdir(shard_dir):
                if shard + name not in known:
                    os.unlink(shard_dir / name)
                    result["stray_files_removed"] += 1
            if not os.listdir(shard_dir):
                os.rmdir(shard_dir)

        if any(result.values()):
            logger.info(f"Store reconciled: {result}")
        return result
