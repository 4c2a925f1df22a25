from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional


FULL = "full"
INCREMENTAL = "incremental"

STATUS_RUNNING = "running"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"


def format_timestamp(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string that sorts chronologically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass
class BackupNode:
    """A Full or Incremental backup in the lineage graph."""
    id: int
    kind: str
    created_at: datetime
    parent_id: Optional[int] = None
    reference_id: Optional[int] = None
    completed_at: Optional[datetime] = None
    status: str = STATUS_RUNNING
    source_root: Optional[str] = None
    manifest_recorded: bool = False

    @property
    def is_full(self) -> bool:
        return self.kind == FULL

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'BackupNode':
        return cls(
            id=row['id'],
            kind=row['kind'],
            created_at=parse_timestamp(row['created_at']),
            parent_id=row['parent_id'],
            reference_id=row['reference_id'],
            completed_at=parse_timestamp(row['completed_at']),
            status=row['status'],
            source_root=row['source_root'],
            manifest_recorded=bool(row.get('manifest_recorded', 0)),
        )


@dataclass
class ContentObject:
    hash: str
    refcount: int
    size: int
    location: str


@dataclass
class FileEntry:
    node_id: int
    path: str
    object_hash: str


@dataclass
class RetentionPolicy:
    """Keep backups for max_age_days; zero or less disables retention."""
    max_age_days: int

    @property
    def enabled(self) -> bool:
        return self.max_age_days > 0

    def cutoff(self, now: datetime) -> datetime:
        return now - timedelta(days=self.max_age_days)


class ExitStatus(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    WARNING = 3


@dataclass
class RunResult:
    """Outcome of a backup run, independent of transport and notification."""
    node_id: Optional[int] = None
    kind: Optional[str] = None
    status: str = STATUS_RUNNING
    files_total: int = 0
    files_captured: int = 0
    bytes_new: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    transport_errors: List[str] = field(default_factory=list)

    @property
    def exit_status(self) -> ExitStatus:
        if self.status != STATUS_COMPLETE:
            return ExitStatus.FAILURE
        if self.warnings:
            return ExitStatus.WARNING
        return ExitStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "kind": self.kind,
            "status": self.status,
            "files_total": self.files_total,
            "files_captured": self.files_captured,
            "bytes_new": self.bytes_new,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "transport_errors": len(self.transport_errors),
        }


@dataclass
class GCReport:
    cutoff: datetime
    deleted: List[int] = field(default_factory=list)
    failed: Dict[int, Exception] = field(default_factory=dict)
    skipped: Dict[int, Exception] = field(default_factory=dict)
    released_objects: int = 0
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped
