import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from .collaborators import Clock, SystemClock
from .database import BackupDatabase
from .errors import DependencyError, NodeNotFoundError, ValidationError
from .models import (
    FULL, INCREMENTAL, STATUS_COMPLETE, STATUS_FAILED, STATUS_RUNNING,
    BackupNode, FileEntry, format_timestamp, parse_timestamp,
)


logger = logging.getLogger('backupchain')


class LineageStore:
    """
    Persists backup nodes and the Full/Incremental relationships between them.

    Incrementals always hang directly off a completed Full node; there are no
    incrementals of incrementals. created_at comes from the clock once, at
    creation, and is kept strictly increasing across the store so that it
    totally orders nodes even if the clock stalls or steps backwards.
    """

    def __init__(self, db: BackupDatabase, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or SystemClock()

    def _next_created_at(self):
        now = self.clock.now()
        last = parse_timestamp(self.db.get_last_created_at())
        if last is not None and now <= last:
            logger.warning(f"Clock returned {now.isoformat()} which is not after the last node ({last.isoformat()}), adjusting")
            now = last + timedelta(microseconds=1)
        return now

    def create_node(self, kind: str, parent_id: Optional[int] = None,
                    reference_id: Optional[int] = None, source_root: Optional[str] = None) -> int:
        """
        Create a running node and return its ID.

        Raises:
            ValidationError: If an incremental's parent is not an existing,
                completed full node, or if a full node is given a parent
        """
        if kind == FULL:
            if parent_id is not None:
                raise ValidationError("A full backup cannot have a parent")
            reference_id = None
        elif kind == INCREMENTAL:
            if parent_id is None:
                raise ValidationError("An incremental backup requires a parent full backup")
            parent = self.db.get_node(parent_id)
            if parent is None:
                raise ValidationError(f"Parent node {parent_id} does not exist")
            if parent['kind'] != FULL:
                raise ValidationError(f"Parent node {parent_id} is not a full backup")
            if parent['completed_at'] is None:
                raise ValidationError(f"Parent node {parent_id} has not completed")
            if reference_id is None:
                reference_id = parent_id
            elif reference_id != parent_id:
                reference = self.db.get_node(reference_id)
                if reference is None or reference['parent_id'] != parent_id:
                    raise ValidationError(f"Reference node {reference_id} is not part of the chain of {parent_id}")
        else:
            raise ValidationError(f"Unknown backup kind '{kind}'")

        created_at = self._next_created_at()
        node_id = self.db.add_node(
            kind, parent_id, reference_id, format_timestamp(created_at), STATUS_RUNNING, source_root
        )
        logger.info(f"Created {kind} node {node_id} (parent={parent_id}, reference={reference_id})")
        return node_id

    def get_node(self, node_id: int) -> BackupNode:
        row = self.db.get_node(node_id)
        if row is None:
            raise NodeNotFoundError(node_id)
        return BackupNode.from_row(row)

    def find_node(self, node_id: int) -> Optional[BackupNode]:
        row = self.db.get_node(node_id)
        return BackupNode.from_row(row) if row else None

    def list_nodes(self) -> List[BackupNode]:
        return [BackupNode.from_row(row) for row in self.db.get_nodes()]

    def mark_complete(self, node_id: int):
        node = self.get_node(node_id)
        if node.status == STATUS_FAILED:
            raise ValidationError(f"Node {node_id} failed and cannot be completed")
        if node.status == STATUS_COMPLETE:
            raise ValidationError(f"Node {node_id} is already complete")
        completed_at = self.clock.now()
        if completed_at < node.created_at:
            completed_at = node.created_at
        self.db.set_node_status(node_id, STATUS_COMPLETE, format_timestamp(completed_at))
        logger.info(f"Node {node_id} marked complete at {completed_at.isoformat()}")

    def mark_failed(self, node_id: int):
        """Flag a node as failed; it keeps no completion timestamp."""
        self.get_node(node_id)
        self.db.set_node_status(node_id, STATUS_FAILED, None)
        logger.warning(f"Node {node_id} marked failed")

    def latest_full(self) -> Optional[int]:
        """Return the most recently created completed full node, if any."""
        row = self.db.get_latest_node(FULL, STATUS_COMPLETE)
        return row['id'] if row else None

    def incrementals_of(self, full_id: int) -> List[int]:
        """Return the IDs of a full node's incrementals, ascending by created_at."""
        return [row['id'] for row in self.db.get_children(full_id)]

    def latest_usable(self, full_id: int) -> int:
        """Return the most recent completed node of a full node's chain."""
        latest = full_id
        for row in self.db.get_children(full_id):
            if row['status'] == STATUS_COMPLETE:
                latest = row['id']
        return latest

    def add_manifest(self, node_id: int, paths: Iterable[str]):
        self.db.add_manifest(node_id, paths)

    def manifest(self, node_id: int) -> List[str]:
        return self.db.get_manifest(node_id)

    def file_entries(self, node_id: int) -> List[FileEntry]:
        return [
            FileEntry(node_id=row['node_id'], path=row['path'], object_hash=row['object_hash'])
            for row in self.db.get_node_files(node_id)
        ]

    def delete_node(self, node_id: int) -> List[str]:
        """
        Delete a node, its file entries and manifest.

        Returns:
            List[str]: the object hash of every removed file entry

        Raises:
            DependencyError: If node_id is a full node that still has incrementals
        """
        node = self.get_node(node_id)
        if node.is_full:
            children = self.incrementals_of(node_id)
            if children:
                raise DependencyError(
                    f"Full node {node_id} still has {len(children)} incremental(s): {children}"
                )
        hashes = self.db.delete_node(node_id)
        logger.info(f"Deleted {node.kind} node {node_id} with {len(hashes)} file entries")
        return hashes
