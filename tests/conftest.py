import os
import pytest
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from backupchain.collaborators import Clock
from backupchain.config import BackupConfig
from backupchain.database import BackupDatabase
from backupchain.dedup import DedupStore
from backupchain.lineage import LineageStore
from backupchain.operations import BackupOperations


class FakeClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


def write_file(path, content, clock):
    """Write a file and stamp its mtime with the fake clock's current time."""
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    with open(path, 'wb' if isinstance(content, bytes) else 'w') as f:
        f.write(content)
    stamp = clock.now().timestamp()
    os.utime(path, (stamp, stamp))


def read_tree(directory):
    """Map every file below directory (relative, '/'-separated) to its bytes."""
    directory = Path(directory)
    tree = {}
    for root, _, files in os.walk(directory):
        for name in files:
            file_path = Path(root) / name
            tree[file_path.relative_to(directory).as_posix()] = file_path.read_bytes()
    return tree


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(temp_dir):
    """Create and return a database connection."""
    db = BackupDatabase(str(temp_dir / "test.db"))
    yield db
    db.close()


@pytest.fixture
def lineage(db, clock):
    return LineageStore(db, clock)


@pytest.fixture
def dedup(db, temp_dir):
    return DedupStore(temp_dir / "store", db)


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for all backup tool tests providing isolation and cleanup."""

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Sets up source, restore and destination directories
        3. Creates test files stamped with the fake clock
        4. Opens the backup operations on the destination
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.source_dir = self.working_dir / "source"
        self.restore_dir = self.working_dir / "restore"
        self.dest_dir = self.working_dir / "destination"
        os.makedirs(self.source_dir)
        os.makedirs(self.restore_dir)

        self.clock = FakeClock()
        self._create_test_files()
        self.clock.advance(minutes=1)

        self.ops = self.open_ops()

    def tearDown(self):
        """Close the operations and remove the temporary directory."""
        self._safe_cleanup()

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def open_ops(self, transport=None, notifier=None, **config):
        config.setdefault("workers", 2)
        return BackupOperations(
            str(self.dest_dir), config=BackupConfig(**config), clock=self.clock,
            transport=transport, notifier=notifier,
        )

    def reopen_ops(self, **kwargs):
        self.ops.close()
        self.ops = self.open_ops(**kwargs)
        return self.ops

    def write(self, relative_path, content):
        write_file(self.source_dir / relative_path, content, self.clock)

    def _create_test_files(self):
        """Create test files in the source directory."""
        for i in range(1, 5):
            self.write(f"file_{i}.txt", f"Content of file {i}")
        self.write("binary.bin", os.urandom(1024))
        self.write("nested/deeper/note.txt", "nested content")

    def _safe_cleanup(self):
        try:
            self.ops.close()
        except Exception:
            pass

        # Wait a moment to ensure all file handles are released
        time.sleep(0.05)

        try:
            self.temp_dir.cleanup()
        except (PermissionError, OSError) as e:
            print(f"Warning: Could not clean up temporary directory: {e}")
