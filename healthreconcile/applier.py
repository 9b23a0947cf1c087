"""Reconciliation applier: read, decide, write, audit.

For each incoming sample the applier reads a fresh snapshot of the day's
record, asks the decision engine about the one field the sample touches,
and, on acceptance, writes back a record with only that field replaced.

Serialization:
- A (user, date, field) lock is held from the read through the write, so two
  importers can never both decide against the same stale provenance.
- Writing replaces the whole day record, so the write itself re-reads and
  merges under a short (user, date) lock. Other fields of the same day keep
  being decided in parallel.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from tqdm import tqdm

from healthreconcile.attribution import sleep_session_samples
from healthreconcile.audit import AuditSink, safe_record
from healthreconcile.engine import decide, validate_sample
from healthreconcile.exceptions import InvalidInputError, ReconciliationError, StorageUnavailableError
from healthreconcile.locks import KeyedLocks
from healthreconcile.models import (
    ApplyResult,
    AuditEntry,
    DailyHealthRecord,
    IncomingSample,
    SleepSession,
    check_measured_within,
)
from healthreconcile.sources import PriorityOverrides, SourceId, validate_overrides
from healthreconcile.storage import RecordStore

logger = logging.getLogger(__name__)

# (date bucket, sample)
DatedSample = tuple[date, IncomingSample]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ImportSummary:
    """Counts and per-sample outcomes for one batch."""

    label: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[ApplyResult] = field(default_factory=list)
    failures: list[tuple[DatedSample, ReconciliationError]] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return sum(1 for r in self.results if r.accepted)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if not r.accepted)

    @property
    def errors(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return len(self.results) + len(self.failures)

    @property
    def storage_failures(self) -> int:
        return sum(1 for _s, err in self.failures if isinstance(err, StorageUnavailableError))

    def describe(self) -> str:
        return (
            f"{self.label}: {self.total} processed, {self.imported} imported, "
            f"{self.skipped} skipped, {self.errors} errors"
        )


class Reconciler:
    """Applies incoming samples to stored daily records."""

    def __init__(
        self,
        store: RecordStore,
        audit_sink: AuditSink | None = None,
        *,
        overrides: PriorityOverrides | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if overrides:
            validate_overrides(overrides)
        self.store = store
        self.audit_sink = audit_sink
        self.overrides = dict(overrides or {})
        self.clock = clock
        self.locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Storage access
    # ------------------------------------------------------------------

    def _read(self, user_id: str, record_date: date) -> DailyHealthRecord:
        try:
            record = self.store.read_record(user_id, record_date)
        except StorageUnavailableError:
            raise
        except OSError as e:
            raise StorageUnavailableError(
                f"Reading {user_id}/{record_date} failed: {e}",
                user_id=user_id,
                date=record_date,
                cause=e,
            ) from e
        return record if record is not None else DailyHealthRecord.empty(user_id, record_date)

    def _write(self, user_id: str, record_date: date, record: DailyHealthRecord) -> None:
        try:
            self.store.write_record(user_id, record_date, record)
        except StorageUnavailableError:
            raise
        except OSError as e:
            raise StorageUnavailableError(
                f"Writing {user_id}/{record_date} failed: {e}",
                user_id=user_id,
                date=record_date,
                cause=e,
            ) from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(
        self,
        user_id: str,
        record_date: date,
        incoming: IncomingSample,
        *,
        dry_run: bool = False,
    ) -> ApplyResult:
        """Reconcile one sample against the stored record for ``user_id`` on ``record_date``.

        Raises:
            InvalidInputError: The sample cannot be compared (no write happens).
            StorageUnavailableError: Read or write failed; nothing was written
                and the caller may retry the whole sample.
        """
        validate_sample(incoming)
        if incoming.user_id != user_id:
            raise InvalidInputError(
                f"Sample belongs to user '{incoming.user_id}', not '{user_id}'",
                field_name=incoming.field_name,
            )
        check_measured_within(record_date, incoming.measured_at, incoming.field_name)

        field_name = incoming.field_name
        with self.locks.hold(("field", user_id, record_date, field_name)):
            snapshot = self._read(user_id, record_date)
            existing = snapshot.provenance_of(field_name)
            previous_value = snapshot.value_of(field_name)

            decision = decide(
                incoming,
                existing,
                imported_at=self.clock(),
                overrides=self.overrides,
            )

            written = False
            if decision.accept and not dry_run:
                with self.locks.hold(("record", user_id, record_date)):
                    # Other fields may have changed since the snapshot; this one cannot
                    current = self._read(user_id, record_date)
                    updated = current.with_field(field_name, incoming.value, decision.incoming_provenance)
                    self._write(user_id, record_date, updated)
                written = True

        safe_record(
            self.audit_sink,
            AuditEntry(
                user_id=user_id,
                date=record_date,
                field_name=field_name,
                decision=decision,
                previous_value=previous_value,
                attempted_value=incoming.value,
                written=written,
                recorded_at=self.clock(),
            ),
        )

        return ApplyResult(
            user_id=user_id,
            date=record_date,
            field_name=field_name,
            decision=decision,
            written=written,
            previous_value=previous_value,
            new_value=incoming.value if decision.accept else previous_value,
        )

    def apply_sleep_session(
        self,
        user_id: str,
        session: SleepSession,
        source: SourceId,
        values: Mapping[str, Any] | None = None,
        *,
        device_id: str | None = None,
        dry_run: bool = False,
    ) -> list[ApplyResult]:
        """Attribute ``session`` to its sleep date and apply every derived field."""
        sleep_date, samples = sleep_session_samples(user_id, session, source, values, device_id)
        return [self.apply(user_id, sleep_date, s, dry_run=dry_run) for s in samples]

    def apply_many(
        self,
        samples: Iterable[DatedSample],
        *,
        max_workers: int = 4,
        label: str = "import",
        dry_run: bool = False,
        progress: bool = True,
    ) -> ImportSummary:
        """Apply a batch concurrently. A failing sample never stops the others."""
        items = list(samples)
        summary = ImportSummary(label=label, started_at=self.clock())

        def run(item: DatedSample) -> ApplyResult:
            record_date, sample = item
            return self.apply(sample.user_id, record_date, sample, dry_run=dry_run)

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as ex, tqdm(
            total=len(items), desc=label, disable=not progress
        ) as bar:
            futures = {ex.submit(run, item): item for item in items}
            for fut in as_completed(futures):
                item = futures[fut]
                try:
                    summary.results.append(fut.result())
                except ReconciliationError as e:
                    record_date, sample = item
                    logger.error(
                        "ERROR %s for %s (%s) from %s: %s",
                        sample.field_name,
                        record_date,
                        sample.user_id,
                        getattr(sample.source, "value", sample.source),
                        e,
                    )
                    summary.failures.append((item, e))
                bar.update(1)

        summary.finished_at = self.clock()
        logger.info(summary.describe())
        return summary
