#!/usr/bin/env python3
"""
Storage Controller Script

This script helps manage the MongoDB primary store and the local JSON
fallback files. It provides commands to:
1. Check current storage status
2. Copy records written to the local fallback into MongoDB
3. Verify that both backends hold the same records
4. Recalculate every book's aggregate rating

Usage:
    python storage_controller.py status
    python storage_controller.py sync [--dry-run]
    python storage_controller.py verify
    python storage_controller.py recalc-ratings
"""

import argparse
import sys
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import data
from local_storage import COLLECTIONS


REFERENCE_FIELDS = ("_id", "addedBy", "book", "user")
TIMESTAMP_FIELDS = ("createdAt", "updatedAt")


def to_mongo_document(record):
    """Convert a local JSON record to the types MongoDB stores."""
    doc = dict(record)
    for field in REFERENCE_FIELDS:
        value = doc.get(field)
        if isinstance(value, str) and ObjectId.is_valid(value):
            doc[field] = ObjectId(value)
    for field in TIMESTAMP_FIELDS:
        value = doc.get(field)
        if isinstance(value, str):
            doc[field] = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return doc


def sync_local_to_mongo(store, db, dry_run=False):
    """
    Copy local records missing from MongoDB.

    Records whose id already exists in MongoDB are skipped, as are users whose
    email is already registered there.

    Returns:
        Tuple of (summary dict per collection, set of book ids whose
        reviews changed)
    """
    summary = {}
    touched_books = set()

    for name in COLLECTIONS:
        collection = db[name]
        existing = {str(doc["_id"]) for doc in collection.find({}, {"_id": 1})}
        copied = skipped = 0

        for record in store.read(name):
            if record.get("_id") in existing:
                skipped += 1
                continue
            if dry_run:
                copied += 1
                continue
            try:
                collection.insert_one(to_mongo_document(record))
            except DuplicateKeyError as e:
                print(f"  ✗ Skipped {name} {record.get('_id')}: {e}")
                skipped += 1
                continue
            copied += 1
            if name == "reviews":
                touched_books.add(record.get("book"))

        summary[name] = {"copied": copied, "skipped": skipped}

    return summary, touched_books


def compare_backends(store, db):
    """Return, per collection, the ids present in only one backend."""
    report = {}
    for name in COLLECTIONS:
        local_ids = {r.get("_id") for r in store.read(name)}
        mongo_ids = {str(doc["_id"]) for doc in db[name].find({}, {"_id": 1})}
        report[name] = {
            "local_count": len(local_ids),
            "mongodb_count": len(mongo_ids),
            "missing_in_mongodb": sorted(local_ids - mongo_ids),
            "missing_in_local": sorted(mongo_ids - local_ids),
        }
    return report


def _require_both_backends():
    data.connect(mode=data.StorageMode.AUTO)
    db = data.get_mongo_db()
    if db is None:
        print("✗ MongoDB is not reachable. Check MONGODB_URI.")
        sys.exit(1)
    return data.get_local_store(), db


def cmd_status(args):
    """Show current storage status."""
    print("\n" + "=" * 60)
    print("STORAGE STATUS")
    print("=" * 60)

    data.connect()
    status = data.get_storage_status()
    print(f"\nMode: {status['mode']}")

    print("\n--- MongoDB ---")
    if status["mongodb_connected"]:
        print("✓ Connected")
        counts = status.get("mongodb_counts")
        if isinstance(counts, dict):
            for name, count in counts.items():
                print(f"  {name:8} {count}")
        else:
            print(f"  Counts: {counts}")
    else:
        print("✗ Not connected")

    print("\n--- Local files ---")
    if status.get("local_counts") is not None:
        print(f"  Directory: {status['local_data_dir']}")
        for name, count in status["local_counts"].items():
            print(f"  {name:8} {count}")
    else:
        print("  Disabled (mongo_only mode)")
    print("=" * 60 + "\n")


def cmd_sync(args):
    """Copy records from the local fallback files into MongoDB."""
    print("\n" + "=" * 60)
    print("SYNCING DATA: Local files → MongoDB")
    print("=" * 60)

    store, db = _require_both_backends()
    try:
        summary, touched_books = sync_local_to_mongo(store, db, dry_run=args.dry_run)
    except PyMongoError as e:
        print(f"\n✗ Sync failed: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] Would copy" if args.dry_run else "Copied"
    for name, counts in summary.items():
        print(f"  {prefix} {counts['copied']} {name} ({counts['skipped']} already present)")

    for book_id in touched_books:
        data.update_book_stats(book_id)
    if touched_books:
        print(f"\n✓ Recalculated ratings for {len(touched_books)} books")
    print("=" * 60 + "\n")


def cmd_verify(args):
    """Verify that MongoDB and the local files hold the same records."""
    print("\n" + "=" * 60)
    print("VERIFYING BACKENDS")
    print("=" * 60)

    store, db = _require_both_backends()
    report = compare_backends(store, db)

    mismatches = 0
    for name, result in report.items():
        print(f"\n--- {name} ---")
        print(f"Local:   {result['local_count']}")
        print(f"MongoDB: {result['mongodb_count']}")
        for record_id in result["missing_in_mongodb"]:
            print(f"  ✗ {record_id}: Missing in MongoDB")
        for record_id in result["missing_in_local"]:
            print(f"  ✗ {record_id}: Missing in local files")
        mismatches += len(result["missing_in_mongodb"]) + len(result["missing_in_local"])

    if mismatches == 0:
        print("\n✓ Both backends hold the same records!")
    else:
        print(f"\n✗ {mismatches} records differ. Run 'sync' to copy local records.")


def cmd_recalc_ratings(args):
    """Recalculate every book's average rating in the active backend."""
    data.connect()
    count = data.recalculate_all_ratings()
    print(f"✓ Recalculated ratings for {count} books")


def main():
    parser = argparse.ArgumentParser(
        description="Book Review Storage Controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Recovery Workflow:
  1. Run 'status' to check which backends are reachable
  2. Run 'verify' to list records only present in one backend
  3. Run 'sync' to copy records written during an outage into MongoDB
  4. Run 'recalc-ratings' if aggregate ratings look stale
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    subparsers.add_parser('status', help='Show storage status')

    sync_parser = subparsers.add_parser('sync', help='Copy local records into MongoDB')
    sync_parser.add_argument('--dry-run', action='store_true',
                             help='Show what would be copied without writing')

    subparsers.add_parser('verify', help='Compare MongoDB and local records')

    subparsers.add_parser('recalc-ratings', help='Recalculate aggregate ratings')

    args = parser.parse_args()

    if args.command == 'status':
        cmd_status(args)
    elif args.command == 'sync':
        cmd_sync(args)
    elif args.command == 'verify':
        cmd_verify(args)
    elif args.command == 'recalc-ratings':
        cmd_recalc_ratings(args)
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
