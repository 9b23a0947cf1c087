"""Audit sinks: an append-only trail of every reconciliation decision.

A sink that fails must never fail the reconciliation it is describing, so
callers go through ``safe_record``.
"""

from __future__ import annotations

import csv
import logging
import threading
from pathlib import Path
from typing import Final, Protocol

import pandas as pd

from healthreconcile.models import AuditEntry

logger = logging.getLogger(__name__)

AUDIT_COLUMNS: Final[list[str]] = [
    "recorded_at",
    "user_id",
    "date",
    "field",
    "status",
    "reason",
    "written",
    "previous_value",
    "attempted_value",
    "incoming_source",
    "incoming_measured_at",
    "incoming_device",
    "existing_source",
    "existing_measured_at",
]


class AuditSink(Protocol):
    def record(self, entry: AuditEntry) -> None: ...


def safe_record(sink: AuditSink | None, entry: AuditEntry) -> None:
    """Record ``entry``; sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        sink.record(entry)
    except Exception:  # noqa: BLE001
        logger.exception(
            "Audit sink %s failed for %s %s/%s",
            type(sink).__name__,
            entry.user_id,
            entry.date,
            entry.field_name,
        )


class LoggingAuditSink:
    """Writes one log line per decision."""

    def __init__(self, name: str = "healthreconcile.audit") -> None:
        self.logger = logging.getLogger(name)

    def record(self, entry: AuditEntry) -> None:
        decision = entry.decision
        incoming = decision.incoming_provenance
        existing = decision.existing_provenance
        if decision.accept:
            self.logger.info(
                "IMPORTED %s for %s (%s) | %s -> %s | %s @ %s | %s",
                entry.field_name,
                entry.date,
                entry.user_id,
                entry.previous_value,
                entry.attempted_value,
                incoming.source.value,
                incoming.measured_at.isoformat(),
                decision.reason,
            )
            return

        protected = (
            f"{existing.source.value} @ {existing.measured_at.isoformat()}" if existing else "none"
        )
        self.logger.info(
            "SKIPPED %s for %s (%s) | %s | keeping %s from %s, attempted %s from %s @ %s",
            entry.field_name,
            entry.date,
            entry.user_id,
            decision.reason,
            entry.previous_value,
            protected,
            entry.attempted_value,
            incoming.source.value,
            incoming.measured_at.isoformat(),
        )


class MemoryAuditSink:
    """Keeps entries in memory; handy for tests and dry runs."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def to_frame(self) -> pd.DataFrame:
        with self._lock:
            rows = [e.to_row() for e in self.entries]
        return pd.DataFrame(rows, columns=AUDIT_COLUMNS)


class CsvAuditSink:
    """Appends decisions to a CSV history file, writing the header once."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not self.path.exists() or self.path.stat().st_size == 0
            with open(self.path, "a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=AUDIT_COLUMNS)
                if new_file:
                    writer.writeheader()
                writer.writerow(entry.to_row())


class CompositeAuditSink:
    """Fans each entry out to several sinks; one failing sink does not starve the rest."""

    def __init__(self, *sinks: AuditSink) -> None:
        self.sinks = list(sinks)

    def record(self, entry: AuditEntry) -> None:
        for sink in self.sinks:
            safe_record(sink, entry)


def read_audit_history(path: Path) -> pd.DataFrame:
    """Load a CSV audit history written by ``CsvAuditSink``."""
    return pd.read_csv(path, dtype={"previous_value": str, "attempted_value": str})
