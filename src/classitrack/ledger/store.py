"""Detection ledger: the durable, newest-first collection of records.

The persisted form is a JSON array of strings, each string one
JSON-encoded record, so a single bad entry can be skipped without
losing its neighbours. Every mutation rewrites the whole file through a
temp file and ``os.replace``; the in-memory list only changes after the
write succeeded.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from classitrack.errors import DuplicateRecordError, LedgerCorruptError, StorageUnavailableError
from classitrack.ledger.records import DetectionRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


def _newest_first(records: list[DetectionRecord]) -> list[DetectionRecord]:
    return sorted(records, key=lambda r: r.timestamp, reverse=True)


class DetectionLedger:
    """Owns the canonical record list and its persisted snapshot.

    Construct once at startup and call ``load()``; mutators also load on
    first use. The design assumes one logical writer; the internal lock
    only keeps concurrent callers from interleaving a read-modify-write.
    """

    def __init__(self, path: Path | str, *, skip_corrupt: bool = True) -> None:
        self._path = Path(path)
        self._skip_corrupt = skip_corrupt
        self._lock = threading.RLock()
        self._records: list[DetectionRecord] = []
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def records(self) -> tuple[DetectionRecord, ...]:
        """Immutable snapshot, newest first."""
        with self._lock:
            return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    # -- Loading ------------------------------------------------------------

    def load(self) -> None:
        """Read the persisted snapshot. No-op once loaded.

        Raises:
            StorageUnavailableError: If the file cannot be read.
            LedgerCorruptError: If the file is not a list of strings, or an
                entry is corrupt and skipping is disabled.
        """
        with self._lock:
            if self._loaded:
                return
            self._records = self._read()
            self._loaded = True
            logger.info("Loaded %d detection records from %s", len(self._records), self._path)

    def reload(self) -> None:
        """Discard the in-memory list and read the snapshot again."""
        with self._lock:
            self._loaded = False
            self.load()

    # -- Queries ------------------------------------------------------------

    def get(self, record_id: str) -> DetectionRecord | None:
        with self._lock:
            self._ensure_loaded()
            return next((r for r in self._records if r.id == record_id), None)

    # -- Mutations ----------------------------------------------------------

    def insert(self, record: DetectionRecord) -> None:
        """Add a record, keeping newest-first order.

        Raises:
            DuplicateRecordError: If a record with the same id exists.
        """
        with self._lock:
            self._ensure_loaded()
            if any(r.id == record.id for r in self._records):
                raise DuplicateRecordError(f"Record {record.id} already exists")
            updated = [record, *self._records]
            if self._records and record.timestamp < self._records[0].timestamp:
                updated = _newest_first(updated)
            self._commit(updated)
            logger.debug("Inserted record %s", record.id)

    def delete(self, record_id: str) -> bool:
        """Remove one record. Returns False (and writes nothing) if absent."""
        return self.delete_many([record_id]) > 0

    def delete_many(self, record_ids: Iterable[str]) -> int:
        """Remove every record whose id is in ``record_ids``; return how many went."""
        targets = set(record_ids)
        with self._lock:
            self._ensure_loaded()
            updated = [r for r in self._records if r.id not in targets]
            removed = len(self._records) - len(updated)
            if removed:
                self._commit(updated)
                logger.debug("Deleted %d records", removed)
            return removed

    def verify(self, record_id: str) -> bool:
        """Mark a record verified. Returns False if no record has this id."""
        with self._lock:
            self._ensure_loaded()
            for index, record in enumerate(self._records):
                if record.id == record_id:
                    break
            else:
                return False
            if not record.is_verified:
                updated = list(self._records)
                updated[index] = record.with_verified()
                self._commit(updated)
            return True

    def clear(self) -> None:
        """Drop every record and delete the persisted snapshot."""
        with self._lock:
            try:
                self._path.unlink(missing_ok=True)
            except OSError as exc:
                raise StorageUnavailableError(f"Cannot remove {self._path}: {exc}") from exc
            self._records = []
            self._loaded = True
            logger.info("Cleared detection ledger at %s", self._path)

    # -- Internal -----------------------------------------------------------

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _commit(self, records: list[DetectionRecord]) -> None:
        self._write(records)
        self._records = records

    def _read(self) -> list[DetectionRecord]:
        if not self._path.exists():
            return []
        try:
            text = self._path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise LedgerCorruptError(f"{self._path} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot read {self._path}: {exc}") from exc
        if not text.strip():
            return []

        try:
            entries = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LedgerCorruptError(f"{self._path} is not valid JSON: {exc}") from exc
        if not isinstance(entries, list):
            raise LedgerCorruptError(f"{self._path} must hold a JSON array")

        records: list[DetectionRecord] = []
        for position, entry in enumerate(entries):
            try:
                if not isinstance(entry, str):
                    raise ValueError(f"expected a string, got {type(entry).__name__}")
                records.append(DetectionRecord.decode(entry))
            except ValueError as exc:
                if not self._skip_corrupt:
                    raise LedgerCorruptError(f"Entry {position} in {self._path}: {exc}") from exc
                logger.warning("Skipping corrupt entry %d in %s: %s", position, self._path, exc)
        return _newest_first(records)

    def _write(self, records: list[DetectionRecord]) -> None:
        payload = json.dumps([r.encode() for r in records])
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageUnavailableError(f"Cannot write {self._path}: {exc}") from exc
