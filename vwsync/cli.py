"""
vwsync CLI: entry point for all operations.

Usage:
    vwsync sync [--dry-run]                   # One full pass over every namespace
    vwsync sync-namespace <ns> [--dry-run]    # One pass limited to a namespace
    vwsync cleanup [--dry-run]                # Only delete orphaned Secrets
    vwsync list                               # Vault items that would sync
    vwsync export <secret> [namespace]        # Show the Secret a pass would write
    vwsync status                             # Recent runs and synced Secrets
    vwsync config                             # Show configuration (redacted)
    vwsync migrate                            # Run database migrations
    vwsync daemon                             # Continuous sync
    vwsync version                            # Show version
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vwsync",
        description="vwsync: keep Kubernetes Secrets in sync with a Vaultwarden vault.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # sync / sync-namespace / cleanup
    sync_parser = subparsers.add_parser("sync", help="Run one reconciliation pass")
    sync_parser.add_argument("--dry-run", action="store_true", help="Plan only, write nothing")

    ns_parser = subparsers.add_parser("sync-namespace", help="Run one pass for a single namespace")
    ns_parser.add_argument("namespace", help="Target namespace")
    ns_parser.add_argument("--dry-run", action="store_true", help="Plan only, write nothing")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete orphaned managed Secrets")
    cleanup_parser.add_argument("--dry-run", action="store_true", help="Plan only, write nothing")

    # list
    subparsers.add_parser("list", help="List vault items that would be synced")

    # export
    export_parser = subparsers.add_parser("export", help="Print the Secret a pass would write")
    export_parser.add_argument("secret", help="Secret name")
    export_parser.add_argument("namespace", nargs="?", help="Namespace (default: KUBERNETES__DEFAULTNAMESPACE if targeted, else first target)")
    export_parser.add_argument(
        "--show-values", action="store_true", help="Print secret values instead of ***"
    )

    # status
    status_parser = subparsers.add_parser("status", help="Show recent runs and synced Secrets")
    status_parser.add_argument("--limit", type=int, default=10, help="Number of runs to show")
    status_parser.add_argument("--secret", metavar="NAMESPACE/NAME", help="Show one synced Secret in detail")

    # config
    subparsers.add_parser("config", help="Show configuration (secrets redacted)")

    # migrate
    migrate_parser = subparsers.add_parser("migrate", help="Run database migrations")
    migrate_parser.add_argument(
        "--dry-run", action="store_true", help="Print SQL without executing"
    )
    migrate_parser.add_argument(
        "--check", action="store_true", help="Check if required tables exist"
    )

    # daemon
    subparsers.add_parser("daemon", help="Run continuously at the configured interval")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from vwsync import __version__

        print(f"vwsync {__version__}")
        return 0

    if args.command in ("sync", "sync-namespace", "cleanup"):
        return _cmd_sync(args)
    elif args.command == "list":
        return _cmd_list(args)
    elif args.command == "export":
        return _cmd_export(args)
    elif args.command == "status":
        return _cmd_status(args)
    elif args.command == "config":
        return _cmd_config(args)
    elif args.command == "migrate":
        return _cmd_migrate(args)
    elif args.command == "daemon":
        return _cmd_daemon(args)
    else:
        parser.print_help()
        return 0


def _setup(require_valid: bool = True):
    """Load config and configure logging. Returns None if config is unusable."""
    from vwsync.config import get_config
    from vwsync.sync.daemon import setup_logging

    cfg = get_config()
    setup_logging(cfg.log_level_value)
    if require_valid:
        problems = cfg.validate()
        if problems:
            print("Error: configuration incomplete:")
            for p in problems:
                print(f"  - {p}")
            return None
    return cfg


def _coordinator(cfg):
    from vwsync.sync.daemon import build_coordinator

    return build_coordinator(cfg)


def _vault(cfg):
    from vwsync.sync.vault import BitwardenCli

    return BitwardenCli(cfg.vault, timeout=cfg.sync.timeout_seconds)


def _desired(cfg):
    """Parse and merge the current vault contents. Returns (desired, warnings, items)."""
    from vwsync.sync.merger import merge, pass_order
    from vwsync.sync.parser import FieldParser, parse_items

    items = pass_order(_vault(cfg).list_items())
    fragments, warnings, _ = parse_items(items, FieldParser(cfg.sync.fields))
    return merge(fragments), warnings, items


def _cmd_sync(args: argparse.Namespace) -> int:
    from vwsync.sync.lock import SyncAlreadyRunningError
    from vwsync.sync.models import Command

    cfg = _setup()
    if cfg is None:
        return 2

    coordinator = _coordinator(cfg)
    dry_run = True if args.dry_run else None
    try:
        coordinator.recover()
        result = coordinator.run_once(
            command=Command(args.command),
            namespace=getattr(args, "namespace", None),
            dry_run=dry_run,
        )
    except SyncAlreadyRunningError as e:
        print(f"Error: {e}")
        return 3
    except ConnectionError as e:
        print(f"Error: {e}")
        return 1

    print(f"Sync {result.status_text}" + (" (dry run)" if result.dry_run else ""))
    print(
        f"  {result.total_items} items: {result.created} created, {result.updated} updated, "
        f"{result.skipped} skipped, {result.failed} failed, {result.deleted} deleted"
    )
    for ns, s in result.namespaces().items():
        line = f"  {ns}: +{s.created} ~{s.updated} ={s.skipped} !{s.failed} -{s.deleted}"
        if s.orphans_kept:
            line += f" (orphaned-but-kept: {s.orphans_kept})"
        if s.retired:
            line += f" (already absent: {s.retired})"
        print(line)
    for w in result.warnings:
        print(f"  warning: {w}")
    for e in result.errors:
        print(f"  error: {e}")
    return result.exit_code


def _cmd_list(args: argparse.Namespace) -> int:
    from vwsync.sync.parser import FieldParser
    from vwsync.sync.vault import VaultError

    cfg = _setup()
    if cfg is None:
        return 2

    parser = FieldParser(cfg.sync.fields)
    try:
        items = _vault(cfg).list_items()
    except VaultError as e:
        print(f"Error: {e}")
        return 1

    rows = []
    for item in sorted(items, key=lambda i: i.name.lower()):
        parsed = parser.parse(item)
        for frag in parsed.fragments:
            rows.append((item.name, frag.secret_name, ",".join(frag.namespaces), len(frag.data)))
    if not rows:
        print("No vault items are configured for sync.")
        return 0

    width = max(len(r[0]) for r in rows)
    print(f"{'ITEM':<{width}}  SECRET / NAMESPACES (KEYS)")
    for name, secret, namespaces, keys in rows:
        print(f"{name:<{width}}  {secret} -> {namespaces} ({keys})")
    print(f"\n{len(rows)} of {len(items)} items will be synced.")
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    import yaml

    from vwsync.sync.models import HASH_ANNOTATION, OWNERSHIP_LABELS
    from vwsync.sync.vault import VaultError

    cfg = _setup()
    if cfg is None:
        return 2

    try:
        desired, _, _ = _desired(cfg)
    except VaultError as e:
        print(f"Error: {e}")
        return 1

    matches = [d for (ns, name), d in desired.items() if name == args.secret]
    if args.namespace:
        matches = [d for d in matches if d.namespace == args.namespace]
    if not matches:
        where = f" in namespace {args.namespace}" if args.namespace else ""
        print(f"Error: no vault items produce secret {args.secret!r}{where}")
        return 1
    preferred = args.namespace or cfg.kubernetes.default_namespace
    d = next((m for m in matches if m.namespace == preferred), matches[0])

    print(f"# {d.namespace}/{d.name}: {len(d.data)} keys from {len(d.item_ids)} item(s)")
    for key in sorted(d.data):
        print(f"#   {key}")
    manifest = {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {
            "name": d.name,
            "namespace": d.namespace,
            "labels": {**d.labels, **OWNERSHIP_LABELS},
            "annotations": {**d.annotations, HASH_ANNOTATION: d.content_hash},
        },
        "stringData": {
            k: (v if args.show_values else "***") for k, v in sorted(d.data.items())
        },
    }
    print(yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False), end="")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    from vwsync.sync.store import PostgresStateStore

    cfg = _setup(require_valid=False)
    store = PostgresStateStore()
    if args.secret:
        return _show_record(store, args.secret)
    try:
        runs = store.list_runs(limit=args.limit)
        records = store.list_records()
    except Exception as e:
        print(f"Error: cannot read state store: {e}")
        return 1

    print(f"State store: {cfg.db.host or 'local socket'}:{cfg.db.port}/{cfg.db.name}")
    print()
    print("Recent runs:")
    if not runs:
        print("  (none)")
    for run in runs:
        started = run.started_at.strftime("%Y-%m-%d %H:%M:%S")
        dry = " dry-run" if run.dry_run else ""
        print(
            f"  {started}  {run.status:<10} {run.command}{dry}: "
            f"+{run.created} ~{run.updated} ={run.skipped} !{run.failed} -{run.deleted}"
        )
        if run.error_message:
            print(f"      {run.error_message}")
    print()
    print("Secrets:")
    if not records:
        print("  (none)")
    for r in records:
        line = f"  {r.namespace}/{r.secret_name}  {r.status}  keys={r.key_count}"
        if r.last_error:
            line += f"  ({r.last_error})"
        print(line)
    return 0


def _show_record(store, target: str) -> int:
    namespace, _, name = target.partition("/")
    if not namespace or not name:
        print(f"Error: expected NAMESPACE/NAME, got {target!r}")
        return 2
    try:
        record = store.get_record(namespace, name)
    except Exception as e:
        print(f"Error: cannot read state store: {e}")
        return 1
    if record is None:
        print(f"No sync record for {namespace}/{name}")
        return 1
    synced = record.last_synced_at.strftime("%Y-%m-%d %H:%M:%S") if record.last_synced_at else "never"
    print(f"{record.namespace}/{record.secret_name}")
    print(f"  status:       {record.status}")
    print(f"  keys:         {record.key_count}")
    print(f"  content hash: {record.content_hash or '-'}")
    print(f"  items:        {', '.join(record.source_item_ids) or '-'}")
    print(f"  last synced:  {synced}")
    if record.last_error:
        print(f"  last error:   {record.last_error}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    import yaml

    cfg = _setup(require_valid=False)
    print(yaml.safe_dump(cfg.redacted(), sort_keys=False, default_flow_style=False), end="")
    problems = cfg.validate()
    if problems:
        print()
        print("Problems:")
        for p in problems:
            print(f"  - {p}")
        return 1
    return 0


MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Tables a working installation needs
REQUIRED_TABLES = ("sync_records", "run_states")


def migration_files() -> list[Path]:
    """Bundled migration scripts in apply order."""
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def missing_tables() -> list[str]:
    """Required tables absent from the configured database."""
    from vwsync.db.connection import get_connection

    with get_connection() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT table_name FROM information_schema.tables"
            " WHERE table_schema = current_schema() AND table_name = ANY(%s)",
            (list(REQUIRED_TABLES),),
        )
        present = {row[0] for row in cur.fetchall()}
    return [t for t in REQUIRED_TABLES if t not in present]


def _cmd_migrate(args: argparse.Namespace) -> int:
    files = migration_files()
    if not files:
        print(f"Error: no migration scripts in {MIGRATIONS_DIR}")
        return 1

    if args.dry_run:
        for path in files:
            print(f"-- {path.name}")
            print(path.read_text())
        return 0

    import psycopg2

    from vwsync.db.connection import get_connection

    _setup(require_valid=False)
    try:
        if not args.check:
            # One transaction: a failing script leaves the schema untouched
            with get_connection() as conn, conn.cursor() as cur:
                for path in files:
                    cur.execute(path.read_text())
                    print(f"Applied {path.name}")
        missing = missing_tables()
    except (ConnectionError, psycopg2.Error) as e:
        print(f"Error: {e}")
        return 1

    if missing:
        print(f"Missing tables: {', '.join(missing)}")
        print("Run 'vwsync migrate' to create them.")
        return 1
    print(f"All {len(REQUIRED_TABLES)} required tables present.")
    return 0


def _cmd_daemon(args: argparse.Namespace) -> int:
    from vwsync.sync.daemon import run

    run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
