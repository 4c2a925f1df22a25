import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from .dedup import DedupStore
from .errors import BackupError, CancelledError, DependencyError
from .lineage import LineageStore
from .models import FULL, INCREMENTAL, GCReport, RetentionPolicy, format_timestamp


logger = logging.getLogger('backupchain')


class RetentionGC:
    """
    Deletes backups older than the retention window without breaking lineage.

    Children always go before their parent within a pass. Failures are per
    node: a failed deletion is logged and the pass carries on, but a full node
    is kept whenever one of its incrementals could not be removed.
    """

    def __init__(self, lineage: LineageStore, dedup: DedupStore):
        self.lineage = lineage
        self.dedup = dedup

    def run(self, policy: RetentionPolicy, now: Optional[datetime] = None,
            token=None, dry_run: bool = False) -> GCReport:
        now = now or self.lineage.clock.now()
        cutoff = policy.cutoff(now)
        report = GCReport(cutoff=cutoff, dry_run=dry_run)
        if not policy.enabled:
            logger.info("Retention disabled, nothing to collect")
            return report

        db = self.lineage.db
        cutoff_ts = format_timestamp(cutoff)
        logger.info(f"Collecting backups created before {cutoff.isoformat()}{' (dry run)' if dry_run else ''}")

        for full in db.get_nodes_created_before(FULL, cutoff_ts):
            self._check(token)
            children = self.lineage.incrementals_of(full['id'])
            children_failed = False
            for child_id in children:
                self._check(token)
                if not self._delete(child_id, report, dry_run):
                    children_failed = True
            if children_failed:
                error = DependencyError(
                    f"Full node {full['id']} kept: some of its incrementals could not be deleted"
                )
                logger.error(str(error))
                report.skipped[full['id']] = error
                continue
            self._delete(full['id'], report, dry_run)

        # orphans left behind by a partially failed earlier pass
        for orphan in db.get_orphaned_incrementals():
            self._check(token)
            if orphan['id'] in report.deleted:
                continue
            logger.warning(f"Incremental node {orphan['id']} has no full parent ({orphan['parent_id']}), removing it")
            self._delete(orphan['id'], report, dry_run)

        for incremental in db.get_nodes_created_before(INCREMENTAL, cutoff_ts):
            self._check(token)
            if incremental['id'] in report.deleted or incremental['id'] in report.failed:
                continue
            self._delete(incremental['id'], report, dry_run)

        if not dry_run:
            self.dedup.reconcile()

        logger.info(
            f"Retention pass finished: {len(report.deleted)} deleted, {len(report.failed)} failed, "
            f"{len(report.skipped)} skipped, {report.released_objects} objects freed"
        )
        return report

    def _check(self, token):
        if token is not None:
            token.raise_if_cancelled()

    def _delete(self, node_id: int, report: GCReport, dry_run: bool) -> bool:
        if dry_run:
            logger.info(f"Would delete node {node_id}")
            report.deleted.append(node_id)
            return True
        try:
            hashes = self.lineage.delete_node(node_id)
        except CancelledError:
            raise
        except (BackupError, OSError, sqlite3.Error) as e:
            logger.error(f"Failed to delete node {node_id}: {str(e)}")
            report.failed[node_id] = e
            return False
        report.deleted.append(node_id)
        released = self._release_all(hashes)
        report.released_objects += released
        return True

    def _release_all(self, hashes: List[str]) -> int:
        freed = 0
        for content_hash in hashes:
            try:
                if self.dedup.release(content_hash):
                    freed += 1
            except OSError as e:
                # refcounts are rebuilt by reconcile() at the end of the pass
                logger.error(f"Failed to release object {content_hash}: {str(e)}")
        return freed
