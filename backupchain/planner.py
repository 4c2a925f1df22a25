import os
import hashlib
import logging
import tempfile
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List

from .dedup import DedupStore
from .errors import BrokenChainError, IntegrityError, ValidationError
from .lineage import LineageStore
from .models import BackupNode


logger = logging.getLogger('backupchain')


class RestorePlanner:
    """Computes restore chains and materializes them into a directory."""

    def __init__(self, lineage: LineageStore, dedup: DedupStore):
        self.lineage = lineage
        self.dedup = dedup

    def plan(self, target_node_id: int, allow_incomplete: bool = False) -> List[BackupNode]:
        """
        Compute the ordered chain of nodes needed to rebuild a node, earliest first.

        A full node is its own chain. An incremental is rebuilt from its parent
        full node, then every completed sibling created before it, then the
        incremental itself.

        Raises:
            NodeNotFoundError: If the target does not exist
            ValidationError: If the target has not completed and allow_incomplete is False
            BrokenChainError: If the parent or a node some chain member was
                diffed against no longer exists
        """
        target = self.lineage.get_node(target_node_id)
        if not target.is_complete and not allow_incomplete:
            raise ValidationError(f"Node {target.id} is {target.status}, not complete")

        if target.is_full:
            return [target]

        parent = self.lineage.find_node(target.parent_id)
        if parent is None or not parent.is_full:
            raise BrokenChainError(
                f"Incremental node {target.id} depends on full node {target.parent_id} which no longer exists"
            )

        chain = [parent]
        for sibling_id in self.lineage.incrementals_of(parent.id):
            sibling = self.lineage.get_node(sibling_id)
            if sibling.id == target.id:
                continue
            if sibling.created_at < target.created_at and sibling.is_complete:
                chain.append(sibling)
        chain.append(target)

        present = {node.id for node in chain}
        for node in chain[1:]:
            if node.reference_id is not None and node.reference_id not in present:
                raise BrokenChainError(
                    f"Node {node.id} was diffed against node {node.reference_id} which is no longer available"
                )

        logger.debug(f"Restore plan for node {target.id}: {[node.id for node in chain]}")
        return chain

    def resolve(self, chain: List[BackupNode]) -> Dict[str, str]:
        """
        Overlay the file entries of a chain in order.

        Later nodes win at the same path. The result is limited to the paths in
        the target's manifest, so files deleted before the target ran are not
        brought back. Nodes stored without a manifest are returned unfiltered.

        Returns:
            Dict[str, str]: relative path to object hash
        """
        files = {}
        for node in chain:
            for entry in self.lineage.file_entries(node.id):
                files[entry.path] = entry.object_hash

        target = chain[-1]
        if not target.manifest_recorded:
            return files
        manifest = set(self.lineage.manifest(target.id))

        missing = manifest.difference(files)
        if missing:
            message = f"{len(missing)} file(s) of node {target.id} have no content in its chain, e.g. '{sorted(missing)[0]}'"
            if target.is_complete:
                raise BrokenChainError(message)
            logger.warning(message)
        return {path: object_hash for path, object_hash in files.items() if path in manifest}

    def restore(self, target_node_id: int, output_directory, token=None,
                verify: bool = False, allow_incomplete: bool = False) -> Dict[str, Any]:
        """
        Rebuild a node's file set inside output_directory.

        Each file is written to a temporary sibling and renamed into place.
        Files already in output_directory that are not part of the snapshot are
        left untouched.

        Raises:
            BrokenChainError: If the chain cannot be rebuilt
            IntegrityError: If verify is set and restored content does not
                match its hash, or a stored object is missing
        """
        chain = self.plan(target_node_id, allow_incomplete=allow_incomplete)
        files = self.resolve(chain)
        output_path = Path(output_directory).resolve()
        os.makedirs(output_path, exist_ok=True)

        logger.info(f"Restoring node {target_node_id} via chain {[node.id for node in chain]}: {len(files)} files to '{output_path}'")

        restored_count = 0
        total_size = 0
        for relative_path in sorted(files):
            if token is not None:
                token.raise_if_cancelled()
            destination = self._safe_join(output_path, relative_path)
            total_size += self._write_file(files[relative_path], destination, token, verify)
            restored_count += 1
            if restored_count % 100 == 0:
                logger.info(f"Restored {restored_count}/{len(files)} files")

        logger.info(f"Restored {restored_count} files from node {target_node_id} to '{output_path}' ({total_size / 1_048_576:.2f} MB)")
        return {
            "node_id": target_node_id,
            "chain": [node.id for node in chain],
            "files_restored": restored_count,
            "bytes_restored": total_size,
        }

    def _safe_join(self, output_path: Path, relative_path: str) -> Path:
        parts = PurePosixPath(relative_path).parts
        if not parts or relative_path.startswith('/') or '..' in parts:
            raise ValidationError(f"Refusing to restore unsafe path '{relative_path}'")
        return output_path.joinpath(*parts)

    def _write_file(self, object_hash: str, destination: Path, token, verify: bool) -> int:
        os.makedirs(destination.parent, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.", suffix=".restore")
        size = 0
        sha256 = hashlib.sha256()
        try:
            with os.fdopen(fd, 'wb') as out, self.dedup.open_object(object_hash) as src:
                for chunk in iter(lambda: src.read(65536), b''):
                    if token is not None:
                        token.raise_if_cancelled()
                    out.write(chunk)
                    sha256.update(chunk)
                    size += len(chunk)
            if verify and sha256.hexdigest() != object_hash:
                raise IntegrityError(
                    f"Restored content of '{destination}' hashes to {sha256.hexdigest()}, expected {object_hash}"
                )
            os.replace(tmp_name, destination)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        return size
