import argparse
import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import NoReturn, Optional

from .config import BackupConfig, load_config
from .errors import BackupError, BusyError, ConfigError
from .models import ExitStatus
from .operations import BackupOperations


logger = logging.getLogger('backupchain')


def configure_logging(log_file: str) -> None:
    """Send log records to a file only, never to stdout."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=log_file,
        filemode='a'
    )


def format_timestamp(timestamp: datetime) -> str:
    """
    Format a node timestamp for display.

    Args:
        timestamp (datetime): UTC timestamp

    Returns:
        str: Human-readable timestamp in format YYYY-MM-DD HH:MM:SS
    """
    return timestamp.strftime("%Y-%m-%d %H:%M:%S")


def print_error_and_exit(error_message: str, exit_code: int = 1) -> NoReturn:
    """
    Print an error message and exit the program with the specified exit code.

    Args:
        error_message (str): The error message to display
        exit_code (int, optional): The exit code to use. Defaults to 1.
    """
    logger.error(error_message)
    print(f"Error: {error_message}", file=sys.stderr)
    sys.exit(exit_code)


def build_config(args: argparse.Namespace) -> BackupConfig:
    """Load the config file, if any, and apply command line overrides."""
    config = load_config(args.config) if args.config else BackupConfig()
    overrides = {
        "destination": args.destination,
        "log_file": args.log_file,
        "source": getattr(args, "source", None),
        "workers": getattr(args, "workers", None),
        "compression": getattr(args, "compression", None),
        "remote": getattr(args, "remote", None),
        "exclude": getattr(args, "exclude", None),
    }
    if getattr(args, "verify", False):
        overrides["verify"] = True
    config = config.merge(**overrides).validate()
    if not config.destination:
        raise ConfigError("No destination given (use --destination or DESTINATION_DIR)")
    return config


def backup_command(args: argparse.Namespace, config: BackupConfig) -> None:
    """
    Execute the backup command.

    Exits with ExitStatus: 0 on success, 3 when the backup completed with
    skipped files, 1 when the node failed. A failed upload is reported but
    does not change the exit status.
    """
    if not config.source:
        print_error_and_exit("No source directory given (use --source or SOURCE_DIR)")
    source = Path(config.source)
    if not source.is_dir():
        print_error_and_exit(f"Source directory '{source}' does not exist or is not a directory")

    try:
        logger.info("Starting backup")
        with BackupOperations(config.destination, config=config) as ops:
            result = ops.backup(str(source), full=args.full)
    except BusyError as e:
        print_error_and_exit(str(e))
    except BackupError as e:
        print_error_and_exit(f"Backup aborted: {str(e)}")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except OSError as e:
        print_error_and_exit(f"OS error: {str(e)}")

    if result.exit_status == ExitStatus.FAILURE:
        print(f"Backup {result.node_id} FAILED: {len(result.errors)} file errors.", file=sys.stderr)
        for error in result.errors:
            print(f"  - {error}", file=sys.stderr)
        sys.exit(int(ExitStatus.FAILURE))

    print(f"{result.kind.capitalize()} backup {result.node_id} created successfully "
          f"({result.files_captured} files captured).")
    for error in result.transport_errors:
        print(f"Upload failed, the local backup is intact: {error}", file=sys.stderr)
    if result.warnings:
        print(f"Completed with {len(result.warnings)} warnings:")
        for warning in result.warnings:
            print(f"  - {warning}")
        sys.exit(int(ExitStatus.WARNING))


def list_command(args: argparse.Namespace, config: BackupConfig) -> None:
    """Execute the list command to display all backup nodes."""
    try:
        logger.info("Listing backups")
        with BackupOperations(config.destination, config=config) as ops:
            nodes = ops.list_nodes()
            total_size = ops.db.get_database_size()

            if not nodes:
                logger.info("No backups found")
                print("No backups found.")
                return

            print(f"{'NODE':<6}{'KIND':<13}{'PARENT':<8}{'CREATED':<21}{'STATUS':<10}{'FILES':<7}{'SIZE':<8}{'DISTINCT_SIZE':<14}")
            for node in nodes:
                parent = node['parent_id'] if node['parent_id'] is not None else '-'
                print(f"{node['id']:<6}{node['kind']:<13}{parent:<8}{format_timestamp(node['created_at']):<21}"
                      f"{node['status']:<10}{node['files']:<7}{node['size']:<8}{node['distinct_size']:<14}")
            print(f"{'total':<65}{total_size:<8}")
    except BackupError as e:
        print_error_and_exit(f"Error listing backups: {str(e)}")
    except OSError as e:
        print_error_and_exit(f"OS error: {str(e)}")


def plan_command(args: argparse.Namespace, config: BackupConfig) -> None:
    """Print the chain of nodes a restore of the given node would apply."""
    try:
        with BackupOperations(config.destination, config=config) as ops:
            chain = ops.plan(args.node)
    except BackupError as e:
        print_error_and_exit(str(e))
    for position, node in enumerate(chain, 1):
        print(f"{position}. node {node.id} ({node.kind}, {format_timestamp(node.created_at)})")


def restore_command(args: argparse.Namespace, config: BackupConfig) -> None:
    """Execute the restore command to rebuild a node into a directory."""
    try:
        logger.info("Starting restore operation")
        with BackupOperations(config.destination, config=config) as ops:
            summary = ops.restore(args.node, args.output_directory, verify=config.verify)
        logger.info(f"Node {args.node} restored to {args.output_directory}")
        print(f"Node {args.node} restored to {args.output_directory} "
              f"({summary['files_restored']} files, chain {summary['chain']})")
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except BackupError as e:
        print_error_and_exit(f"Error restoring node: {str(e)}")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except OSError as e:
        print_error_and_exit(f"OS error: {str(e)}")


def gc_command(args: argparse.Namespace, config: BackupConfig) -> None:
    """Execute the gc command to apply the retention policy."""
    try:
        logger.info("Starting retention pass")
        with BackupOperations(config.destination, config=config) as ops:
            report = ops.gc(args.max_age_days, dry_run=args.dry_run)
    except BackupError as e:
        print_error_and_exit(f"Error collecting backups: {str(e)}")

    verb = "Would delete" if report.dry_run else "Deleted"
    print(f"{verb} {len(report.deleted)} nodes: {report.deleted}")
    for node_id, error in sorted(report.failed.items()):
        print(f"  failed to delete node {node_id}: {error}", file=sys.stderr)
    for node_id, error in sorted(report.skipped.items()):
        print(f"  kept node {node_id}: {error}", file=sys.stderr)
    if not report.ok:
        sys.exit(int(ExitStatus.WARNING))


def check_command(args: argparse.Namespace, config: BackupConfig) -> None:
    """Execute the check command to verify store integrity."""
    try:
        with BackupOperations(config.destination, config=config) as ops:
            all_valid, corrupted_items = ops.check()
    except BackupError as e:
        print_error_and_exit(f"Error checking store integrity: {str(e)}")

    if all_valid:
        print("Store integrity check passed. All content is valid.")
        return

    print("\nStore integrity check FAILED. Corrupted content detected.\n")
    print(f"Found {len(corrupted_items)} corrupted objects:")
    for i, item in enumerate(corrupted_items, 1):
        print(f"\n{i}. Corrupted content:")
        print(f"   Stored hash:     {item['stored_hash']}")
        print(f"   Calculated hash: {item['calculated_hash']}")
        if item['affected_files']:
            print(f"   Affected files ({len(item['affected_files'])}):")
            for file in item['affected_files']:
                print(f"     - Node {file['node_id']}: {file['path']}")
    print("\nRecommendation: Restore affected files from an alternative backup if available.")
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Backup tool with full/incremental lineage and content deduplication",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--destination", help="Backup destination root (overrides DESTINATION_DIR)")
    parser.add_argument("--config", help="Path to a KEY=\"value\" configuration file")
    parser.add_argument("--log-file", default=None, help="Log file (default: backupchain.log)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    backup_parser = subparsers.add_parser("backup", help="Back up a directory")
    backup_parser.add_argument("--source", help="Directory to back up (overrides SOURCE_DIR)")
    backup_parser.add_argument("--full", action="store_true", help="Force a full backup")
    backup_parser.add_argument("--exclude", action="append", help="Glob of paths to skip (repeatable)")
    backup_parser.add_argument("--workers", type=int, help="Parallel file workers")
    backup_parser.add_argument("--compression", choices=["none", "gzip"], help="Object archiver for a new store")
    backup_parser.add_argument("--remote", help="Directory to mirror the store into after success")

    subparsers.add_parser("list", help="List all backups with their sizes")

    plan_parser = subparsers.add_parser("plan", help="Show the restore chain of a backup")
    plan_parser.add_argument("--node", type=int, required=True, help="Backup node ID")

    restore_parser = subparsers.add_parser("restore", help="Restore a backup to a directory")
    restore_parser.add_argument("--node", type=int, required=True, help="Backup node ID to restore")
    restore_parser.add_argument(
        "--output-directory", required=True,
        help="Directory to restore to (will be created if it doesn't exist)"
    )
    restore_parser.add_argument("--verify", action="store_true", help="Re-hash every restored file")

    gc_parser = subparsers.add_parser("gc", help="Delete backups older than the retention window")
    gc_parser.add_argument("--max-age-days", type=int, help="Override BACKUP_RETENTION_DAYS")
    gc_parser.add_argument("--dry-run", action="store_true", help="Only report what would be deleted")

    subparsers.add_parser("check", help="Verify stored content against its hashes")
    return parser


def main(argv: Optional[list] = None) -> None:
    """
    Main entry point for the backup tool command line interface.
    Parses arguments and dispatches to appropriate command handlers.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    command_handlers = {
        "backup": backup_command,
        "list": list_command,
        "plan": plan_command,
        "restore": restore_command,
        "gc": gc_command,
        "check": check_command,
    }
    if args.command not in command_handlers:
        parser.print_help()
        sys.exit(1)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.log_file)
    command_handlers[args.command](args, config)


if __name__ == "__main__":
    main()
