"""
Command-line interface for backup-store.

Every command prints its structured result as JSON on stdout; logs and
errors go to stderr. Uses Python's argparse module.
"""

import argparse
import json
import logging
import socket
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import Settings, get_config_path, load_config, save_config
from .engine import BackupStoreEngine
from .errors import BackupStoreError, FsckFailedError, as_user_error

logger = logging.getLogger(__name__)


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def emit(result) -> None:
    """Print a result object (anything with to_dict, or plain data) as JSON."""
    if hasattr(result, 'to_dict'):
        result = result.to_dict()
    print(json.dumps(result, indent=2, ensure_ascii=False))


def report_error(err: BackupStoreError) -> None:
    print(f"error: {err.message}", file=sys.stderr)
    if err.hint:
        print(f"hint: {err.hint}", file=sys.stderr)
    if err.next_command:
        print(f"next: {err.next_command}", file=sys.stderr)


def _engine(args) -> BackupStoreEngine:
    return BackupStoreEngine.from_settings(_settings(args))


def _settings(args) -> Settings:
    return load_config(args.config)


# ========== Commands ==========

def cmd_init(args) -> int:
    machine_id = args.machine or socket.gethostname()
    engine = BackupStoreEngine(args.dest, machine_id)
    result = engine.initialize()

    config_path = get_config_path(args.config)
    result['config'] = str(config_path)
    result['configWritten'] = False
    if not config_path.exists():
        settings = Settings(
            dest=str(engine.dest),
            source_root=str(Path(args.source).resolve()) if args.source else str(Path.cwd()),
            machine_id=machine_id,
        )
        save_config(settings, config_path)
        result['configWritten'] = True
    emit(result)
    return 0


def cmd_snapshot(args) -> int:
    settings = _settings(args)
    engine = BackupStoreEngine.from_settings(settings)
    result = engine.create_snapshot(
        settings.source_root,
        settings.includes,
        settings.excludes,
        label=args.label,
        dry_run=args.dry_run,
        force_lock=args.force_lock,
    )
    emit(result)
    return 0


def cmd_list(args) -> int:
    emit({'snapshots': _engine(args).list_snapshots()})
    return 0


def cmd_verify(args) -> int:
    report = _engine(args).verify(args.snapshot_id, migrate=args.migrate, force_lock=args.force_lock)
    emit(report)
    return 0 if report.ok else 1


def cmd_diff(args) -> int:
    emit(_engine(args).diff(args.snapshot_a, args.snapshot_b))
    return 0


def cmd_restore(args) -> int:
    emit(_engine(args).restore(args.snapshot_id, target=args.target, dry_run=args.dry_run))
    return 0


def cmd_prune(args) -> int:
    emit(_engine(args).prune(dry_run=args.dry_run, force_lock=args.force_lock))
    return 0


def cmd_gc(args) -> int:
    emit(_engine(args).garbage_collect(dry_run=args.dry_run, force_lock=args.force_lock))
    return 0


def cmd_fsck(args) -> int:
    try:
        report = _engine(args).fsck(verify_hash=args.verify_hash)
    except FsckFailedError as e:
        emit(e.report)
        raise
    emit(report)
    return 0


def cmd_export(args) -> int:
    emit(_engine(args).export_pack(args.snapshot_id, out_path=args.out, force_lock=args.force_lock))
    return 0


def cmd_import(args) -> int:
    emit(_engine(args).import_pack(args.pack, force=args.force, force_lock=args.force_lock))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        prog="backup-store",
        description="Content-addressed snapshot backups for one machine",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log output")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("--config", help="Path to the config file")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("init", help="Initialize a destination")
    p.add_argument("--dest", required=True, help="Destination root")
    p.add_argument("--machine", help="Machine id (default: hostname)")
    p.add_argument("--source", help="Source root written to a new config (default: cwd)")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("snapshot", help="Take a snapshot of the source root")
    p.add_argument("--label", help="Free-text label")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--force-lock", action="store_true", help="Break an existing lock")
    p.set_defaults(func=cmd_snapshot)

    p = sub.add_parser("list", help="List snapshots")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("verify", help="Re-hash a snapshot's objects")
    p.add_argument("snapshot_id")
    p.add_argument("--migrate", action="store_true", help="Migrate a legacy snapshot first")
    p.add_argument("--force-lock", action="store_true", help="Break an existing lock")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("diff", help="Compare two snapshots")
    p.add_argument("snapshot_a")
    p.add_argument("snapshot_b")
    p.set_defaults(func=cmd_diff)

    p = sub.add_parser("restore", help="Restore a snapshot into a directory")
    p.add_argument("snapshot_id")
    p.add_argument("--target", help="Target directory")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_restore)

    p = sub.add_parser("prune", help="Apply the retention policy")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--force-lock", action="store_true", help="Break an existing lock")
    p.set_defaults(func=cmd_prune)

    p = sub.add_parser("gc", help="Remove unreferenced objects")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--force-lock", action="store_true", help="Break an existing lock")
    p.set_defaults(func=cmd_gc)

    p = sub.add_parser("fsck", help="Audit all snapshots against the object store")
    p.add_argument("--verify-hash", action="store_true", help="Re-hash every referenced object")
    p.set_defaults(func=cmd_fsck)

    p = sub.add_parser("export", help="Export a snapshot as a pack")
    p.add_argument("snapshot_id")
    p.add_argument("--out", help="Output path")
    p.add_argument("--force-lock", action="store_true", help="Break an existing lock")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Import a pack")
    p.add_argument("pack")
    p.add_argument("--force", action="store_true", help="Overwrite an existing snapshot")
    p.add_argument("--force-lock", action="store_true", help="Break an existing lock")
    p.set_defaults(func=cmd_import)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the backup-store CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.quiet)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("Operation cancelled.", file=sys.stderr)
        return 130
    except (BackupStoreError, OSError) as e:
        err = as_user_error(e, action=args.command)
        if err is None:
            raise
        report_error(err)
        return err.exit_code


if __name__ == "__main__":
    sys.exit(main())
