"""
Flat-file JSON storage used when MongoDB is unreachable.

Each collection lives in its own ``<name>.json`` file holding a list of
records. Writes are atomic (unique temp file + ``os.replace``). Every
read-modify-write runs under a process-wide lock, so concurrent request
threads never overwrite each other's changes.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone

from bson import ObjectId


logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "books", "reviews")

_lock = threading.RLock()


def utc_timestamp(dt=None):
    """Format a datetime as ISO-8601 UTC with millisecond precision."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


def new_id():
    return str(ObjectId())


class JSONStore:
    """CRUD over JSON files in ``data_dir``."""

    def __init__(self, data_dir, collections=COLLECTIONS):
        self.data_dir = str(data_dir)
        os.makedirs(self.data_dir, exist_ok=True)
        with _lock:
            for name in collections:
                if not os.path.exists(self._path(name)):
                    self.write(name, [])

    def _path(self, name):
        return os.path.join(self.data_dir, f"{name}.json")

    def read(self, name):
        path = self._path(name)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error("[Local] Error reading from %s: %s", path, e)
            return []

    def write(self, name, records):
        path = self._path(name)
        with _lock:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.data_dir,
                prefix=f".{name}.", suffix=".tmp", delete=False,
            ) as f:
                json.dump(records, f, indent=2, ensure_ascii=False)
                temp = f.name
            try:
                os.replace(temp, path)
            except OSError:
                os.unlink(temp)
                raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, name, predicate=None):
        records = self.read(name)
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    def find_one(self, name, predicate):
        for record in self.read(name):
            if predicate(record):
                return record
        return None

    def find_by_id(self, name, record_id):
        return self.find_one(name, lambda r: r.get("_id") == record_id)

    def count(self, name):
        return len(self.read(name))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, name, record):
        with _lock:
            records = self.read(name)
            new_record = self._new_record(record)
            records.append(new_record)
            self.write(name, records)
        return new_record

    def insert_unless(self, name, record, predicate):
        """Insert ``record`` unless a stored record matches ``predicate``.

        Returns the new record, or None when a match already exists.
        """
        with _lock:
            records = self.read(name)
            if any(predicate(r) for r in records):
                return None
            new_record = self._new_record(record)
            records.append(new_record)
            self.write(name, records)
        return new_record

    def _new_record(self, record):
        now = utc_timestamp()
        new_record = {"_id": record.get("_id") or new_id()}
        new_record.update(record)
        new_record.setdefault("createdAt", now)
        new_record.setdefault("updatedAt", now)
        return new_record

    def update(self, name, record_id, changes):
        with _lock:
            records = self.read(name)
            for index, record in enumerate(records):
                if record.get("_id") == record_id:
                    updated = dict(record)
                    updated.update(changes)
                    updated["updatedAt"] = utc_timestamp()
                    records[index] = updated
                    self.write(name, records)
                    return updated
        return None

    def delete(self, name, record_id):
        return self.delete_where(name, lambda r: r.get("_id") == record_id) > 0

    def delete_where(self, name, predicate):
        with _lock:
            records = self.read(name)
            kept = [r for r in records if not predicate(r)]
            removed = len(records) - len(kept)
            if removed:
                self.write(name, kept)
        return removed

    def clear(self, name):
        with _lock:
            self.write(name, [])
