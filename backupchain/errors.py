"""
Exception taxonomy for backupchain.

Every error raised on purpose by the package derives from BackupError so that
callers (the CLI in particular) can tell expected failures from bugs.
"""


class BackupError(Exception):
    """Base class for all backupchain errors."""


class ConfigError(BackupError):
    """Invalid or unreadable configuration."""


class ValidationError(BackupError):
    """Bad lineage linkage or an invalid argument to a store operation."""


class NodeNotFoundError(ValidationError):
    """A backup node id does not exist."""

    def __init__(self, node_id):
        super().__init__(f"Backup node {node_id} does not exist")
        self.node_id = node_id


class StaleReferenceError(BackupError):
    """The diff reference node never completed."""


class PartialWriteError(BackupError):
    """An object write was interrupted before it could be published."""


class DependencyError(BackupError):
    """A delete was blocked by surviving dependent nodes."""


class BrokenChainError(BackupError):
    """A node required to rebuild a snapshot is missing."""


class BusyError(BackupError):
    """Another run holds the lock on this destination."""


class TransportError(BackupError):
    """Pushing a completed backup to remote storage failed."""


class IntegrityError(BackupError):
    """Stored or restored content does not match its hash."""


class CancelledError(BackupError):
    """The caller cancelled the operation or its deadline passed."""
