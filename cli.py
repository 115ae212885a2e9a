"""
Data tools for the deals file.

    coursespeak-tools sync-live [--url URL] [--pages N]
    coursespeak-tools sync-database
    coursespeak-tools import-database [--batch-size N]
    coursespeak-tools check
    coursespeak-tools restore [--confirm]
    coursespeak-tools cleanup [--keep N] [--confirm]

Every command that overwrites the active file snapshots it first.
Exit codes: 0 ok, 1 failure or invalid data, 2 duplicates found (check).
"""

import argparse
import asyncio
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from backups import (
    latest_snapshot,
    plan_cleanup,
    read_records,
    save_sync,
    snapshot_file,
    timestamp,
    write_json_atomic,
)
from database import MongoDealStore, next_updated_at
from errors import BackendUnavailable
from logger import setup_logging
from query import MAX_PAGE_SIZE, sort_deals
from remote import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE, dedupe_records, fetch_all_deals, normalize_base_url, validate_records
from settings import Settings, load_settings

logger = logging.getLogger("coursespeak.tools")


def _load(path: str) -> Optional[List[Dict[str, Any]]]:
    try:
        return [r for r in read_records(path) if isinstance(r, dict)]
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as e:
        logger.error("Failed to read deals from %s: %s", path, e)
        return None


def _print_summary(records: List[Dict[str, Any]]) -> None:
    providers = Counter(str(r.get("provider") or "unknown").lower() for r in records)
    categories = Counter(str(r.get("category") or "uncategorized").lower() for r in records)
    print("Top providers:")
    for name, count in providers.most_common(5):
        print(f"  {name}: {count}")
    print("Top categories:")
    for name, count in categories.most_common(5):
        print(f"  {name}: {count}")


def _report_problems(problems: List[str]) -> None:
    for problem in problems[:10]:
        logger.error("Invalid deal at %s", problem)
    if len(problems) > 10:
        logger.error("... and %d more invalid deals", len(problems) - 10)


# -------------------------------
# Commands
# -------------------------------

def _cmd_sync_live(args: argparse.Namespace, settings: Settings) -> int:
    base_url = normalize_base_url(args.url or settings.live_site_url)
    stamp = timestamp()
    previous = _load(settings.deals_path) or []

    snapshot = snapshot_file(settings.deals_path, settings.backup_dir, "local_before_sync", stamp)
    if snapshot:
        print(f"Backed up current local data ({len(previous)} deals) to {snapshot}")

    print(f"Fetching deals from {base_url} ...")
    page_size = max(1, min(args.page_size, MAX_PAGE_SIZE))
    if page_size != args.page_size:
        logger.warning("--page-size %d out of range; using %d", args.page_size, page_size)
    records = fetch_all_deals(base_url, max_pages=args.pages, page_size=page_size)
    if not records:
        logger.error("No deals found at %s", base_url)
        return 1

    records, dropped = dedupe_records(records)
    if dropped:
        logger.warning("Dropped %d duplicate deals returned across pages", dropped)

    problems = validate_records(records)
    if problems:
        _report_problems(problems)
        logger.error("Invalid deals data, aborting sync")
        return 1

    saved = save_sync(records, settings.deals_path, settings.backup_dir, "sync", stamp)
    print(f"Saved {len(records)} deals to {settings.deals_path} (snapshot {saved})")
    print(f"Previous local: {len(previous)}  Difference: {len(records) - len(previous)}")
    _print_summary(records)
    return 0


async def _read_database(settings: Settings) -> List[Dict[str, Any]]:
    store = MongoDealStore.from_url(settings.database_url, settings.database_name, settings.deals_collection)
    deals = await store.read_all()
    return [d.to_record() for d in sort_deals(deals, "updated")]


def _cmd_sync_database(args: argparse.Namespace, settings: Settings) -> int:
    try:
        records = asyncio.run(_read_database(settings))
    except BackendUnavailable as e:
        logger.error("Could not read from the database: %s", e)
        return 1
    if not records:
        print("No deals found in the database; local file left untouched")
        return 0

    problems = validate_records(records)
    if problems:
        _report_problems(problems)
        return 1

    stamp = timestamp()
    snapshot = snapshot_file(settings.deals_path, settings.backup_dir, "local_before_database", stamp)
    if snapshot:
        print(f"Backed up current local data to {snapshot}")
    save_sync(records, settings.deals_path, settings.backup_dir, "database", stamp)
    print(f"Synced {len(records)} deals from the database to {settings.deals_path}")
    _print_summary(records)
    return 0


async def _import(settings: Settings, records: List[Dict[str, Any]], batch_size: int) -> int:
    store = MongoDealStore.from_url(settings.database_url, settings.database_name, settings.deals_collection)
    await store.ensure_indexes()
    done = 0
    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        done += await store.upsert_many(batch)
        print(f"Imported {done}/{len(records)} deals")
    return done


def _cmd_import_database(args: argparse.Namespace, settings: Settings) -> int:
    records = _load(settings.deals_path)
    if not records:
        logger.error("No deals found in %s", settings.deals_path)
        return 1

    problems = validate_records(records)
    if problems:
        _report_problems(problems)
        return 1

    prepared = []
    for record in records:
        record = dict(record, id=str(record.get("id") or record.get("slug")))
        if not record.get("createdAt"):
            record["createdAt"] = next_updated_at()
        if not record.get("updatedAt"):
            record["updatedAt"] = record["createdAt"]
        prepared.append(record)

    try:
        asyncio.run(_import(settings, prepared, max(1, args.batch_size)))
    except BackendUnavailable as e:
        logger.error("Import stopped: %s", e)
        return 1
    print("Import completed successfully.")
    return 0


def _cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    records = _load(settings.deals_path)
    if records is None:
        return 1
    if not records:
        logger.warning("No deals found. Check data source.")
        return 1

    print(f"Loaded {len(records)} deals.")
    _print_summary(records)

    ids = Counter(str(r.get("id") or r.get("slug") or "") for r in records)
    duplicates = {k: n for k, n in ids.items() if k and n > 1}
    if duplicates:
        for key in sorted(duplicates):
            logger.warning("Duplicate deal detected: %s", key)
        logger.warning("Found %d duplicate deal entries.", sum(n - 1 for n in duplicates.values()))
        return 2

    print("Deal check completed successfully.")
    return 0


def _cmd_restore(args: argparse.Namespace, settings: Settings) -> int:
    source = latest_snapshot(settings.backup_dir)
    if source is None:
        logger.error("No backup files found in %s", settings.backup_dir)
        return 1

    records = _load(str(source))
    if not records:
        logger.error("Backup %s is empty or unreadable", source)
        return 1

    print(f"Latest backup: {source.name} ({len(records)} deals)")
    if not args.confirm:
        print("Dry run; re-run with --confirm to restore it.")
        return 0

    snapshot = snapshot_file(settings.deals_path, settings.backup_dir, "before_restore", timestamp())
    if snapshot:
        print(f"Backed up current local data to {snapshot}")
    write_json_atomic(settings.deals_path, records)
    print(f"Restored {len(records)} deals to {settings.deals_path}")
    for i, record in enumerate(records[:5], 1):
        print(f"{i}. {record.get('title')} ({record.get('provider')})")
    return 0


def _cmd_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    kept, removable = plan_cleanup(settings.backup_dir, max(0, args.keep))
    for path in kept:
        print(f"KEEP    {path.name}")
    for path in removable:
        print(f"REMOVE  {path.name}")
    if not removable:
        print("Nothing to clean up.")
        return 0
    if not args.confirm:
        print(f"Dry run; re-run with --confirm to delete {len(removable)} file(s).")
        return 0
    for path in removable:
        path.unlink()
    print(f"Deleted {len(removable)} backup file(s).")
    return 0


# -------------------------------
# Entry point
# -------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="coursespeak-tools", description="Coursespeak deal data tools")
    parser.add_argument("--data", help="Deals JSON file (default: DEALS_PATH or data/deals.json)")
    parser.add_argument("--backup-dir", help="Snapshot directory (default: BACKUP_DIR or backup)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync-live", help="Fetch all deals from a live site's public API")
    p.add_argument("--url", help="Live site URL (default: LIVE_SITE_URL)")
    p.add_argument("--pages", type=int, default=DEFAULT_MAX_PAGES, help="Maximum pages to fetch")
    p.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE, help=f"Deals per page (1-{MAX_PAGE_SIZE})")
    p.set_defaults(func=_cmd_sync_live)

    p = sub.add_parser("sync-database", help="Copy every deal from the database into the local file")
    p.set_defaults(func=_cmd_sync_database)

    p = sub.add_parser("import-database", help="Upsert the local file into the database")
    p.add_argument("--batch-size", type=int, default=10)
    p.set_defaults(func=_cmd_import_database)

    p = sub.add_parser("check", help="Summarise the local file and look for duplicate ids")
    p.set_defaults(func=_cmd_check)

    p = sub.add_parser("restore", help="Restore the newest snapshot")
    p.add_argument("--confirm", action="store_true", help="Actually overwrite the active file")
    p.set_defaults(func=_cmd_restore)

    p = sub.add_parser("cleanup", help="Delete old snapshots")
    p.add_argument("--keep", type=int, default=1, help="Timestamped snapshots to keep")
    p.add_argument("--confirm", action="store_true", help="Actually delete files")
    p.set_defaults(func=_cmd_cleanup)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(require_admin_token=False)
    if args.data:
        settings.deals_path = args.data
    if args.backup_dir:
        settings.backup_dir = args.backup_dir
    setup_logging(settings.log_level, settings.log_dir)
    return args.func(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
