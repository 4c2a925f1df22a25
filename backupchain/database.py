import sqlite3
import hashlib
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple


DB_FILENAME = "backupchain.db"


class BackupDatabase:
    """
    Handles all database operations for the backup tool.

    The connection is shared between the worker threads of a run, so every
    statement goes through self.lock. Multi-statement changes use
    transaction(), which commits or rolls back as a unit.
    """

    def __init__(self, db_path="backupchain.db"):
        """Initialize the database connection and create tables if they don't exist."""
        self.db_path = db_path
        self.lock = threading.RLock()
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self):
        """Create the necessary tables if they don't exist."""
        cursor = self.conn.cursor()

        cursor.execute('''
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        ''')

        # Backup nodes; parent_id is only set for incrementals
        cursor.execute('''
        CREATE TABLE IF NOT EXISTS nodes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL CHECK (kind IN ('full', 'incremental')),
            parent_id INTEGER REFERENCES nodes(id),
            reference_id INTEGER,
            created_at TEXT NOT NULL,
            completed_at TEXT,
            status TEXT NOT NULL,
            source_root TEXT,
            manifest_recorded INTEGER NOT NULL DEFAULT 0
        )
        ''')
        columns = {row[1] for row in cursor.execute("PRAGMA table_info(nodes)")}
        if "manifest_recorded" not in columns:
            cursor.execute("ALTER TABLE nodes ADD COLUMN manifest_recorded INTEGER NOT NULL DEFAULT 0")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_nodes_parent ON nodes(parent_id)")

        # Stored content, one row per distinct hash
        cursor.execute('''
        CREATE TABLE IF NOT EXISTS objects (
            hash TEXT PRIMARY KEY,
            refcount INTEGER NOT NULL,
            size INTEGER NOT NULL,
            location TEXT NOT NULL
        )
        ''')

        cursor.execute('''
        CREATE TABLE IF NOT EXISTS file_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            node_id INTEGER NOT NULL REFERENCES nodes(id),
            path TEXT NOT NULL,
            object_hash TEXT NOT NULL,
            UNIQUE (node_id, path)
        )
        ''')
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_entries_hash ON file_entries(object_hash)")

        # Every path present in the source when the node ran
        cursor.execute('''
        CREATE TABLE IF NOT EXISTS manifests (
            node_id INTEGER NOT NULL REFERENCES nodes(id),
            path TEXT NOT NULL,
            PRIMARY KEY (node_id, path)
        )
        ''')

        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run several statements atomically under the connection lock."""
        with self.lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def _fetchone(self, query: str, params: Tuple = ()) -> Optional[Dict]:
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            result = cursor.fetchone()
            return dict(result) if result else None

    def _fetchall(self, query: str, params: Tuple = ()) -> List[Dict]:
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    # ---- settings ----

    def get_setting(self, key: str) -> Optional[str]:
        row = self._fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return row['value'] if row else None

    def set_setting(self, key: str, value: str):
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                (key, value)
            )

    # ---- nodes ----

    def add_node(self, kind: str, parent_id: Optional[int], reference_id: Optional[int],
                 created_at: str, status: str, source_root: Optional[str] = None) -> int:
        """Add a new backup node and return its ID."""
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT INTO nodes (kind, parent_id, reference_id, created_at, status, source_root) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (kind, parent_id, reference_id, created_at, status, source_root)
            )
            return cursor.lastrowid

    def get_node(self, node_id: int) -> Optional[Dict]:
        return self._fetchone("SELECT * FROM nodes WHERE id = ?", (node_id,))

    def get_nodes(self) -> List[Dict]:
        return self._fetchall("SELECT * FROM nodes ORDER BY created_at, id")

    def get_last_created_at(self) -> Optional[str]:
        row = self._fetchone("SELECT MAX(created_at) AS created_at FROM nodes")
        return row['created_at'] if row else None

    def set_node_status(self, node_id: int, status: str, completed_at: Optional[str]):
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE nodes SET status = ?, completed_at = ? WHERE id = ?",
                (status, completed_at, node_id)
            )

    def get_latest_node(self, kind: str, status: str) -> Optional[Dict]:
        return self._fetchone(
            "SELECT * FROM nodes WHERE kind = ? AND status = ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (kind, status)
        )

    def get_children(self, parent_id: int) -> List[Dict]:
        """Get the incrementals of a full node, oldest first."""
        return self._fetchall(
            "SELECT * FROM nodes WHERE parent_id = ? ORDER BY created_at, id",
            (parent_id,)
        )

    def get_nodes_created_before(self, kind: str, cutoff: str) -> List[Dict]:
        return self._fetchall(
            "SELECT * FROM nodes WHERE kind = ? AND created_at < ? ORDER BY created_at, id",
            (kind, cutoff)
        )

    def get_orphaned_incrementals(self) -> List[Dict]:
        """Get incrementals whose parent is missing or is not a full node."""
        return self._fetchall("""
            SELECT n.* FROM nodes n
            LEFT JOIN nodes p ON p.id = n.parent_id AND p.kind = 'full'
            WHERE n.kind = 'incremental' AND p.id IS NULL
            ORDER BY n.created_at, n.id
        """)

    def delete_node(self, node_id: int) -> List[str]:
        """
        Remove a node with its file entries and manifest.

        Returns the object hash of every deleted file entry, one per entry, so
        the caller can release the references.
        """
        with self.transaction() as cursor:
            cursor.execute(
                "SELECT object_hash FROM file_entries WHERE node_id = ?",
                (node_id,)
            )
            hashes = [row['object_hash'] for row in cursor.fetchall()]
            cursor.execute("DELETE FROM file_entries WHERE node_id = ?", (node_id,))
            cursor.execute("DELETE FROM manifests WHERE node_id = ?", (node_id,))
            cursor.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
            return hashes

    # ---- objects ----

    def get_object(self, content_hash: str) -> Optional[Dict]:
        return self._fetchone("SELECT * FROM objects WHERE hash = ?", (content_hash,))

    def get_objects(self) -> List[Dict]:
        return self._fetchall("SELECT * FROM objects ORDER BY hash")

    def add_object(self, content_hash: str, size: int, location: str):
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT INTO objects (hash, refcount, size, location) VALUES (?, 1, ?, ?)",
                (content_hash, size, location)
            )

    def increment_refcount(self, content_hash: str):
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE objects SET refcount = refcount + 1 WHERE hash = ?",
                (content_hash,)
            )

    def decrement_refcount(self, content_hash: str) -> Optional[int]:
        """Decrement a refcount and return the new value, or None if the object is unknown."""
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE objects SET refcount = refcount - 1 WHERE hash = ? AND refcount > 0",
                (content_hash,)
            )
            cursor.execute("SELECT refcount FROM objects WHERE hash = ?", (content_hash,))
            result = cursor.fetchone()
            return result['refcount'] if result else None

    def delete_object(self, content_hash: str):
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM objects WHERE hash = ?", (content_hash,))

    def recompute_refcounts(self) -> int:
        """Reset every refcount to the number of file entries using it; return rows changed."""
        with self.transaction() as cursor:
            cursor.execute("""
                UPDATE objects SET refcount = (
                    SELECT COUNT(*) FROM file_entries f WHERE f.object_hash = objects.hash
                )
                WHERE refcount != (
                    SELECT COUNT(*) FROM file_entries f WHERE f.object_hash = objects.hash
                )
            """)
            return cursor.rowcount

    def get_unreferenced_objects(self) -> List[Dict]:
        return self._fetchall("SELECT * FROM objects WHERE refcount <= 0")

    # ---- file entries and manifests ----

    def add_file(self, node_id: int, file_path: str, content_hash: str):
        """Add a file entry to the database."""
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT INTO file_entries (node_id, path, object_hash) VALUES (?, ?, ?)",
                (node_id, file_path, content_hash)
            )

    def get_node_files(self, node_id: int) -> List[Dict]:
        """Get all file entries for a specific node."""
        return self._fetchall(
            "SELECT node_id, path, object_hash FROM file_entries WHERE node_id = ? ORDER BY path",
            (node_id,)
        )

    def get_files_for_hash(self, content_hash: str) -> List[Dict]:
        return self._fetchall("""
            SELECT f.node_id, f.path, n.created_at
            FROM file_entries f
            JOIN nodes n ON n.id = f.node_id
            WHERE f.object_hash = ?
            ORDER BY n.created_at, f.path
        """, (content_hash,))

    def add_manifest(self, node_id: int, paths: Iterable[str]):
        with self.transaction() as cursor:
            cursor.executemany(
                "INSERT OR IGNORE INTO manifests (node_id, path) VALUES (?, ?)",
                ((node_id, path) for path in paths)
            )
            cursor.execute("UPDATE nodes SET manifest_recorded = 1 WHERE id = ?", (node_id,))

    def get_manifest(self, node_id: int) -> List[str]:
        rows = self._fetchall(
            "SELECT path FROM manifests WHERE node_id = ? ORDER BY path",
            (node_id,)
        )
        return [row['path'] for row in rows]

    # ---- sizes ----

    def get_node_size(self, node_id: int) -> int:
        """
        Get the total size of all files captured by a node.

        Returns:
            Total size in kilobytes
        """
        row = self._fetchone("""
            SELECT SUM(o.size) AS total_size
            FROM file_entries f
            JOIN objects o ON f.object_hash = o.hash
            WHERE f.node_id = ?
        """, (node_id,))
        return int(row['total_size'] / 1024) if row and row['total_size'] else 0

    def get_node_distinct_size(self, node_id: int) -> int:
        """
        Get the size of content referenced by no other node.
        This is how much space deleting the node would free.

        Returns:
            Size of unique content in kilobytes
        """
        row = self._fetchone("""
            SELECT SUM(o.size) AS unique_size
            FROM objects o
            JOIN (
                SELECT object_hash, COUNT(*) AS uses
                FROM file_entries
                WHERE node_id = ?
                GROUP BY object_hash
            ) mine ON mine.object_hash = o.hash
            WHERE o.refcount = mine.uses
        """, (node_id,))
        return int(row['unique_size'] / 1024) if row and row['unique_size'] else 0

    def get_database_size(self) -> int:
        """
        Get the total size of all content in the store.

        Returns:
            Total size in kilobytes
        """
        row = self._fetchone("SELECT SUM(size) AS total_size FROM objects")
        return int(row['total_size'] / 1024) if row and row['total_size'] else 0

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def hash_file_content(file_path: str, token=None) -> str:
    """Generate a SHA-256 hash for a file's content."""
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            if token is not None:
                token.raise_if_cancelled()
            sha256.update(chunk)
    return sha256.hexdigest()
