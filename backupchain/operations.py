import os
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .archiver import get_archiver
from .collaborators import (
    CancellationToken, Clock, DirectoryTransport, LogNotifier, Notifier, SystemClock, Transport,
)
from .config import BackupConfig
from .database import DB_FILENAME, BackupDatabase
from .dedup import DedupStore
from .detector import ChangeSetDetector
from .errors import BackupError, StaleReferenceError, TransportError
from .gc import RetentionGC
from .lineage import LineageStore
from .locking import restore_target_lock, store_lock
from .models import (
    FULL, INCREMENTAL, STATUS_COMPLETE, STATUS_FAILED, BackupNode, GCReport, RetentionPolicy, RunResult,
)
from .planner import RestorePlanner


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('backupchain')


class BackupOperations:
    """Handles core backup operations like backup, restore, list, gc and check."""

    def __init__(self, destination: str, config: Optional[BackupConfig] = None,
                 clock: Optional[Clock] = None, transport: Optional[Transport] = None,
                 notifier: Optional[Notifier] = None):
        """
        Open (or create) the backup store at a destination root.

        Args:
            destination (str): Root directory holding the metadata database and objects
            config (BackupConfig, optional): Run settings, defaults if omitted
            clock (Clock, optional): Source of node timestamps
            transport (Transport, optional): Used when config.remote is set;
                defaults to DirectoryTransport
            notifier (Notifier, optional): Receives run outcomes; defaults to LogNotifier

        Raises:
            sqlite3.Error: If there's an error opening the database
            PermissionError: If there's no permission to create the destination
        """
        self.destination = Path(destination).resolve()
        self.config = (config or BackupConfig()).validate()
        self.clock = clock or SystemClock()
        self.transport = transport or DirectoryTransport()
        self.notifier = notifier or LogNotifier()

        os.makedirs(self.destination, exist_ok=True)
        self.db = BackupDatabase(self.destination / DB_FILENAME)

        archiver = get_archiver(self.config.compression)
        stored = self.db.get_setting("archiver")
        if stored is None:
            self.db.set_setting("archiver", archiver.name)
        elif stored != archiver.name:
            logger.warning(f"Store at '{self.destination}' uses the {stored} archiver, ignoring '{self.config.compression}'")
            archiver = get_archiver(stored)

        self.lineage = LineageStore(self.db, self.clock)
        self.dedup = DedupStore(self.destination, self.db, archiver)
        self.planner = RestorePlanner(self.lineage, self.dedup)
        self.gc_collector = RetentionGC(self.lineage, self.dedup)
        logger.debug(f"Initialized BackupOperations at {self.destination}")

    # ---- backup ----

    def _choose_base(self, force_full: bool) -> Tuple[str, Optional[BackupNode], Optional[BackupNode]]:
        """Decide between a full and an incremental run; return (kind, parent, reference)."""
        if force_full:
            logger.info("Full backup requested")
            return FULL, None, None
        if not self.config.incremental:
            return FULL, None, None

        latest_full = self.lineage.latest_full()
        if latest_full is None:
            logger.info("No previous full backup found. Performing full backup.")
            return FULL, None, None

        parent = self.lineage.get_node(latest_full)
        if self.config.full_interval_days > 0:
            age = self.clock.now() - parent.created_at
            if age >= timedelta(days=self.config.full_interval_days):
                logger.info(f"Last full backup is older than {self.config.full_interval_days} days. Performing full backup.")
                return FULL, None, None

        if self.config.differential:
            reference = parent
        else:
            reference = self.lineage.get_node(self.lineage.latest_usable(parent.id))
        return INCREMENTAL, parent, reference

    def _capture(self, node_id: int, source: Path, relative_path: str, token) -> Optional[int]:
        """Store one file and link it into the node; returns its size, or None if skipped."""
        file_path = source / relative_path
        file_size = file_path.stat().st_size
        if file_size > self.config.max_file_size:
            logger.warning(f"Skipping file larger than {self.config.max_file_size} bytes: '{file_path}' ({file_size / 1_048_576:.2f} MB)")
            return None

        content_hash = self.dedup.put_file(file_path, token)
        try:
            self.dedup.link(content_hash, node_id, relative_path)
        except BackupError:
            self.dedup.release(content_hash)
            raise
        return file_size

    def backup(self, source: Optional[str] = None, full: bool = False,
               token: Optional[CancellationToken] = None) -> RunResult:
        """
        Back up a source directory as a new full or incremental node.

        An incremental captures the files changed since the latest usable node
        of the current full backup (or since the full itself when differential
        is set). Per-file errors are recorded and leave the node failed; errors
        that threaten lineage correctness abort the run.

        Args:
            source (str, optional): Directory to back up, defaults to config.source
            full (bool): Force a full backup
            token (CancellationToken, optional): Cancels the run when triggered

        Returns:
            RunResult: Outcome of the run

        Raises:
            ValueError: If the source directory is missing
            BusyError: If another run holds the destination
            ValidationError, PartialWriteError, CancelledError: The run was aborted;
                any other error raised while capturing a file aborts it too
        """
        source = source or self.config.source
        if not source:
            raise ValueError("No source directory given")
        source_path = Path(source).resolve()
        if not source_path.is_dir():
            raise ValueError(f"Source directory '{source}' does not exist or is not a directory")
        if not os.access(source_path, os.R_OK):
            raise PermissionError(f"No permission to read directory '{source}'")

        token = token or CancellationToken()
        result = RunResult()
        with store_lock(self.destination, purpose="backup"):
            self.dedup.reconcile()
            detector = ChangeSetDetector(self.config.exclude, token)
            kind, parent, reference = self._choose_base(full)

            present = detector.scan(source_path)
            to_capture = present
            if kind == INCREMENTAL:
                try:
                    known = set(self.lineage.manifest(reference.id)) if reference.manifest_recorded else None
                    to_capture = detector.changed_since(source_path, reference, known)
                except StaleReferenceError as e:
                    logger.warning(f"{str(e)}; falling back to a full backup")
                    kind, parent, reference = FULL, None, None

            node_id = self.lineage.create_node(
                kind,
                parent.id if parent else None,
                reference.id if reference else None,
                source_root=str(source_path),
            )
            result.node_id = node_id
            result.kind = kind
            result.files_total = len(to_capture)
            logger.info(f"{kind.capitalize()} backup {node_id} of '{source_path}': {len(to_capture)} of {len(present)} files to capture")

            try:
                skipped = self._capture_all(node_id, source_path, to_capture, token, result)
                self.lineage.add_manifest(node_id, (path for path in present if path not in skipped))
                token.raise_if_cancelled()
            except BaseException:
                self.lineage.mark_failed(node_id)
                result.status = STATUS_FAILED
                self._notify(result)
                raise

            if result.errors:
                logger.warning(f"Backup {node_id} had {len(result.errors)} file errors, marking it failed")
                self.lineage.mark_failed(node_id)
                result.status = STATUS_FAILED
            else:
                self.lineage.mark_complete(node_id)
                result.status = STATUS_COMPLETE
                logger.info(
                    f"Backup {node_id} completed successfully: {result.files_captured} files captured, "
                    f"{result.bytes_new / 1_048_576:.2f} MB of new content added"
                )
                self._push(result)

        self._notify(result)
        return result

    def _capture_all(self, node_id: int, source: Path, paths: List[str], token, result: RunResult) -> set:
        bytes_before = self.dedup.stats["bytes_stored"]
        skipped = set()
        abort = None
        with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
            futures = {
                executor.submit(self._capture, node_id, source, path, token): path
                for path in paths
            }
            for future in as_completed(futures):
                path = futures[future]
                try:
                    size = future.result()
                except OSError as e:
                    logger.warning(f"Could not back up '{path}': {str(e)}")
                    result.errors.append(f"{path}: {str(e)}")
                    continue
                except Exception as e:
                    abort = e
                    break
                if size is None:
                    skipped.add(path)
                    result.warnings.append(f"{path}: skipped, larger than {self.config.max_file_size} bytes")
                    continue
                result.files_captured += 1
                if result.files_captured % 100 == 0:
                    logger.info(f"Processed {result.files_captured}/{len(paths)} files")
            if abort is not None:
                for future in futures:
                    future.cancel()
        result.bytes_new = self.dedup.stats["bytes_stored"] - bytes_before
        if abort is not None:
            logger.error(f"Backup {node_id} aborted: {str(abort)}")
            raise abort
        return skipped

    def _push(self, result: RunResult):
        if not self.config.remote:
            return
        try:
            self.transport.push(self.destination, self.config.remote)
        except TransportError as e:
            logger.error(f"Upload of backup {result.node_id} failed: {str(e)}")
            result.transport_errors.append(str(e))

    def _notify(self, result: RunResult):
        status = "success" if result.exit_status == 0 else ("warning" if result.status == STATUS_COMPLETE else "failure")
        try:
            self.notifier.notify(status, result.to_dict())
        except Exception as e:
            logger.error(f"Notification failed: {str(e)}")

    # ---- restore ----

    def plan(self, node_id: int) -> List[BackupNode]:
        """Return the restore chain of a node, earliest first."""
        return self.planner.plan(node_id)

    def restore(self, node_id: int, output_directory: str, verify: Optional[bool] = None,
                token: Optional[CancellationToken] = None, allow_incomplete: bool = False) -> Dict[str, Any]:
        """
        Restore a node to the specified directory.

        Args:
            node_id (int): ID of the node to restore
            output_directory (str): Directory to restore into (created if missing)
            verify (bool, optional): Re-hash restored files, defaults to config.verify
            token (CancellationToken, optional): Cancels the restore when triggered
            allow_incomplete (bool): Permit restoring a failed or running node

        Returns:
            Dict[str, Any]: node_id, chain, files_restored and bytes_restored

        Raises:
            ValueError: If parameters are invalid
            BusyError: If a backup or gc holds the store, or another restore
                targets the same directory
            BrokenChainError, IntegrityError: If the snapshot cannot be rebuilt
        """
        if not isinstance(node_id, int) or node_id <= 0:
            raise ValueError(f"Invalid node ID: {node_id}")
        if not output_directory:
            raise ValueError("Output directory cannot be empty")

        output_path = Path(output_directory).resolve()
        if output_path.exists() and not output_path.is_dir():
            raise ValueError(f"'{output_directory}' exists but is not a directory")
        if output_path == self.destination or self.destination in output_path.parents:
            raise ValueError("Cannot restore into the backup destination")

        verify = self.config.verify if verify is None else verify
        with store_lock(self.destination, shared=True, purpose="restore"), \
                restore_target_lock(self.destination, output_path):
            return self.planner.restore(
                node_id, output_path, token=token, verify=verify, allow_incomplete=allow_incomplete
            )

    # ---- listing, retention, integrity ----

    def list_nodes(self) -> List[Dict[str, Any]]:
        """
        List all nodes with disk usage metrics.

        Returns:
            List[Dict[str, Any]]: node fields plus files, size and distinct_size
                (both in kilobytes)
        """
        nodes = []
        for node in self.lineage.list_nodes():
            nodes.append({
                "id": node.id,
                "kind": node.kind,
                "parent_id": node.parent_id,
                "created_at": node.created_at,
                "status": node.status,
                "files": len(self.lineage.file_entries(node.id)),
                "size": self.db.get_node_size(node.id),
                "distinct_size": self.db.get_node_distinct_size(node.id),
            })
        logger.debug(f"Retrieved information for {len(nodes)} nodes")
        return nodes

    def gc(self, max_age_days: Optional[int] = None, dry_run: bool = False,
           token: Optional[CancellationToken] = None) -> GCReport:
        """Delete backups older than the retention window."""
        policy = RetentionPolicy(self.config.retention_days if max_age_days is None else max_age_days)
        with store_lock(self.destination, purpose="gc"):
            return self.gc_collector.run(policy, token=token, dry_run=dry_run)

    def check(self, token: Optional[CancellationToken] = None) -> Tuple[bool, List[Dict[str, Any]]]:
        """
        Verify every stored object against its hash.

        Returns:
            Tuple[bool, List[Dict[str, Any]]]: whether all content is valid and
            the corrupted objects with the files they affect
        """
        logger.info("Starting store integrity check")
        with store_lock(self.destination, shared=True, purpose="check"):
            all_valid, corrupted = self.dedup.verify(token)
        if all_valid:
            logger.info("Store integrity check passed. All content is valid.")
        else:
            logger.warning(f"Store integrity check failed. Found {len(corrupted)} corrupted objects.")
        return all_valid, corrupted

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self, 'db') and self.db:
            logger.debug("Closing database connection")
            self.db.close()

    def __enter__(self) -> 'BackupOperations':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
