"""Persistence collaborators for daily health records.

The reconciler only needs two calls, read a record and write a record, so any
store that offers read-your-writes consistency for a single caller works.
Two implementations are provided:

- InMemoryRecordStore: dict-backed, for tests and dry runs
- JsonDirectoryRecordStore: one JSON file per user and date
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import date
from pathlib import Path
from typing import Protocol

from healthreconcile.exceptions import InvalidInputError, StorageUnavailableError
from healthreconcile.models import DailyHealthRecord

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """What the reconciler expects from storage."""

    def read_record(self, user_id: str, record_date: date) -> DailyHealthRecord | None: ...

    def write_record(self, user_id: str, record_date: date, record: DailyHealthRecord) -> None: ...


class InMemoryRecordStore:
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, date], DailyHealthRecord] = {}
        self._lock = threading.Lock()
        self.writes = 0

    def read_record(self, user_id: str, record_date: date) -> DailyHealthRecord | None:
        with self._lock:
            record = self._records.get((user_id, record_date))
            return record.copy() if record is not None else None

    def write_record(self, user_id: str, record_date: date, record: DailyHealthRecord) -> None:
        with self._lock:
            self._records[(user_id, record_date)] = record.copy()
            self.writes += 1

    def keys(self) -> list[tuple[str, date]]:
        with self._lock:
            return sorted(self._records)


class JsonDirectoryRecordStore:
    """Stores each record at ``<root>/<user_id>/<YYYY-MM-DD>.json``.

    Writes go to a temp file in the same directory and are then renamed over
    the target, so a reader never sees a half-written record.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, user_id: str, record_date: date) -> Path:
        safe_user = user_id.replace(os.sep, "_")
        return self.root / safe_user / f"{record_date.isoformat()}.json"

    def read_record(self, user_id: str, record_date: date) -> DailyHealthRecord | None:
        path = self._path(user_id, record_date)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return DailyHealthRecord.from_dict(data)
        except (OSError, ValueError, KeyError, InvalidInputError) as e:
            raise StorageUnavailableError(
                f"Could not read record {path}: {e}",
                user_id=user_id,
                date=record_date,
                cause=e,
            ) from e

    def write_record(self, user_id: str, record_date: date, record: DailyHealthRecord) -> None:
        path = self._path(user_id, record_date)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True, default=str)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageUnavailableError(
                f"Could not write record {path}: {e}",
                user_id=user_id,
                date=record_date,
                cause=e,
            ) from e
        logger.debug("Wrote %s", path)
