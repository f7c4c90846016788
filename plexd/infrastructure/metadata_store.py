"""Durable map of file id -> FileRecord persisted as one JSON document.

Every mutation rewrites the whole document (write to a temporary file in the
same directory, fsync, then atomic rename). All reads and writes go through one
re-entrant lock, so callers that need a read-decide-write sequence can hold
``locked()`` across several calls.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from plexd.domain.models import FileRecord


class MetadataStore:
    """Thread-safe persistent record store (single-writer discipline)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: Dict[str, FileRecord] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store mutex across a multi-step read/modify sequence."""
        with self._lock:
            yield

    def load(self) -> int:
        """Loads the persisted document. Missing or corrupt documents yield an empty store."""
        with self._lock:
            self._records = {}
            if not self.path.exists():
                self.logger.info(f"Metadata document not found, starting empty: {self.path}")
                return 0
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                if not isinstance(raw, dict):
                    raise ValueError("top-level JSON value is not an object")
            except (OSError, ValueError) as e:
                self.logger.warning(f"Metadata document unreadable, starting empty: {self.path} ({e})")
                return 0

            skipped = 0
            for file_id, fields in raw.items():
                try:
                    self._records[file_id] = FileRecord(id=file_id, **fields)
                except (TypeError, ValidationError) as e:
                    skipped += 1
                    self.logger.warning(f"Skipping malformed metadata entry {file_id}: {e}")
            if skipped:
                self.logger.warning(f"Metadata load skipped {skipped} malformed entries")
            self.logger.info(f"Metadata loaded: {len(self._records)} records from {self.path}")
            return len(self._records)

    def _save(self) -> None:
        document = {file_id: rec.to_document() for file_id, rec in self._records.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _commit(self, previous: Dict[str, FileRecord]) -> None:
        """Persists the current map; restores previous if the write fails."""
        try:
            self._save()
        except BaseException:
            self._records = previous
            raise

    def get(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            rec = self._records.get(file_id)
            return rec.model_copy() if rec else None

    def contains(self, file_id: str) -> bool:
        with self._lock:
            return file_id in self._records

    def all(self) -> List[FileRecord]:
        with self._lock:
            return [rec.model_copy() for rec in self._records.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def find_by_dedupe_key(self, key: Tuple[str, int], ready_only: bool = True) -> Optional[FileRecord]:
        with self._lock:
            for rec in self._records.values():
                if tuple(rec.dedupe_key) == tuple(key) and (rec.derived_ready or not ready_only):
                    return rec.model_copy()
            return None

    def insert(self, record: FileRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise KeyError(f"Duplicate file id: {record.id}")
            previous = dict(self._records)
            self._records[record.id] = record.model_copy()
            self._commit(previous)

    def update(self, file_id: str, **changes) -> Optional[FileRecord]:
        """Applies field changes to one record. Returns the updated copy, or None if unknown."""
        with self._lock:
            rec = self._records.get(file_id)
            if rec is None:
                return None
            updated = rec.model_copy(update=changes)
            previous = dict(self._records)
            self._records[file_id] = updated
            self._commit(previous)
            return updated.model_copy()

    def update_many(self, file_ids: Iterable[str], **changes) -> int:
        """Applies the same changes to every known id with a single rewrite."""
        with self._lock:
            previous = dict(self._records)
            count = 0
            for file_id in file_ids:
                rec = self._records.get(file_id)
                if rec is None:
                    continue
                self._records[file_id] = rec.model_copy(update=changes)
                count += 1
            if count:
                self._commit(previous)
            return count

    def delete(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            previous = dict(self._records)
            rec = self._records.pop(file_id, None)
            if rec is not None:
                self._commit(previous)
            return rec

    def delete_many(self, file_ids: Iterable[str]) -> List[FileRecord]:
        with self._lock:
            previous = dict(self._records)
            removed = [self._records.pop(fid) for fid in list(file_ids) if fid in self._records]
            if removed:
                self._commit(previous)
            return removed

    def select(self, predicate: Callable[[FileRecord], bool]) -> List[FileRecord]:
        with self._lock:
            return [rec.model_copy() for rec in self._records.values() if predicate(rec)]
