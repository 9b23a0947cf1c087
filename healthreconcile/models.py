"""Data models shared by the decision engine, the applier and the stores.

This module defines:
- FieldProvenance: which source produced a stored field value, and when
- DailyHealthRecord: all metric fields for one user and calendar date
- IncomingSample: one field value fetched by an importer
- SleepSession: a sleep interval fed to the sleep-night attributor
- FreshnessDecision / ApplyResult / AuditEntry: decision outcomes
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Final

from dateutil.parser import isoparse

from healthreconcile.exceptions import InvalidInputError
from healthreconcile.sources import SourceId, parse_source

# A measurement may fall at most this far past the end of its record's day
# (sleep sessions attributed to day D can end on D+1)
ATTRIBUTION_TOLERANCE: Final = timedelta(days=1)


def is_aware(ts: datetime) -> bool:
    """True when ``ts`` carries an explicit UTC offset."""
    return ts.tzinfo is not None and ts.tzinfo.utcoffset(ts) is not None


def check_measured_within(record_date: date, measured_at: datetime, field_name: str | None = None) -> None:
    """Raise ``InvalidInputError`` if ``measured_at`` is too late for ``record_date``."""
    if measured_at.date() > record_date + ATTRIBUTION_TOLERANCE:
        raise InvalidInputError(
            f"Measurement at {measured_at.isoformat()} is later than "
            f"{record_date.isoformat()} allows",
            field_name=field_name,
        )


@dataclass(frozen=True, slots=True)
class FieldProvenance:
    """Where a stored field value came from."""

    source: SourceId
    measured_at: datetime  # when the physical measurement happened
    imported_at: datetime  # when we stored it
    device_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "measuredAt": self.measured_at.isoformat(),
            "importedAt": self.imported_at.isoformat(),
            "deviceId": self.device_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldProvenance":
        measured_at = isoparse(data["measuredAt"])
        imported_at = isoparse(data["importedAt"])
        if not (is_aware(measured_at) and is_aware(imported_at)):
            raise ValueError(
                f"Provenance timestamps must carry a UTC offset: "
                f"measuredAt={data['measuredAt']!r}, importedAt={data['importedAt']!r}"
            )
        return cls(
            source=parse_source(data["source"]),
            measured_at=measured_at,
            imported_at=imported_at,
            device_id=data.get("deviceId"),
        )


@dataclass(slots=True)
class DailyHealthRecord:
    """Metric values for one (user, calendar date), each with its own provenance.

    Records are treated as snapshots: ``with_field`` returns a new record and
    leaves the original untouched.
    """

    user_id: str
    date: date
    values: dict[str, Any] = field(default_factory=dict)
    provenance: dict[str, FieldProvenance] = field(default_factory=dict)

    @classmethod
    def empty(cls, user_id: str, record_date: date) -> "DailyHealthRecord":
        return cls(user_id=user_id, date=record_date)

    def value_of(self, field_name: str) -> Any:
        return self.values.get(field_name)

    def provenance_of(self, field_name: str) -> FieldProvenance | None:
        return self.provenance.get(field_name)

    @property
    def fields(self) -> list[str]:
        return sorted(self.values)

    def copy(self) -> "DailyHealthRecord":
        """Independent copy; provenance entries are immutable and shared."""
        return DailyHealthRecord(
            user_id=self.user_id,
            date=self.date,
            values=copy.deepcopy(self.values),
            provenance=dict(self.provenance),
        )

    def with_field(self, field_name: str, value: Any, provenance: FieldProvenance) -> "DailyHealthRecord":
        """Return a copy of this record with a single field and its provenance replaced."""
        check_measured_within(self.date, provenance.measured_at, field_name)
        values = dict(self.values)
        values[field_name] = value
        provenance_map = dict(self.provenance)
        provenance_map[field_name] = provenance
        return DailyHealthRecord(
            user_id=self.user_id,
            date=self.date,
            values=values,
            provenance=provenance_map,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "date": self.date.isoformat(),
            "values": dict(self.values),
            "fieldMetadata": {name: prov.to_dict() for name, prov in self.provenance.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyHealthRecord":
        values = dict(data.get("values") or {})
        metadata = data.get("fieldMetadata") or {}
        provenance = {name: FieldProvenance.from_dict(meta) for name, meta in metadata.items()}

        orphaned = sorted(set(values) - set(provenance))
        if orphaned:
            raise ValueError(f"Fields without provenance: {', '.join(orphaned)}")

        return cls(
            user_id=str(data["userId"]),
            date=date.fromisoformat(data["date"]),
            values=values,
            provenance=provenance,
        )


@dataclass(frozen=True, slots=True)
class IncomingSample:
    """One observed field value, as supplied by an import orchestrator.

    ``measured_at`` must be the provider's measurement time, never the time
    the sample was fetched.
    """

    user_id: str
    field_name: str
    value: Any
    source: SourceId
    measured_at: datetime | None
    device_id: str | None = None


@dataclass(frozen=True, slots=True)
class SleepSession:
    """A sleep interval. Callers guarantee ``end > start``; see ``validate``."""

    start: datetime
    end: datetime

    def validate(self) -> None:
        if not (is_aware(self.start) and is_aware(self.end)):
            raise InvalidInputError("Sleep session timestamps must carry a UTC offset")
        if self.end <= self.start:
            raise InvalidInputError(
                f"Sleep session end {self.end.isoformat()} is not after start {self.start.isoformat()}"
            )

    @property
    def duration_minutes(self) -> int:
        return round((self.end - self.start).total_seconds() / 60)


@dataclass(frozen=True, slots=True)
class FreshnessDecision:
    """Outcome of comparing an incoming sample against the stored field."""

    accept: bool
    reason: str
    incoming_provenance: FieldProvenance
    existing_provenance: FieldProvenance | None = None


@dataclass(frozen=True, slots=True)
class ApplyResult:
    """What the applier did with one sample."""

    user_id: str
    date: date
    field_name: str
    decision: FreshnessDecision
    written: bool
    previous_value: Any = None
    new_value: Any = None

    @property
    def accepted(self) -> bool:
        return self.decision.accept


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """A single reconciliation decision with its context."""

    user_id: str
    date: date
    field_name: str
    decision: FreshnessDecision
    previous_value: Any
    attempted_value: Any
    written: bool
    recorded_at: datetime

    def to_row(self) -> dict[str, Any]:
        """Flatten into a single row for tabular sinks."""
        incoming = self.decision.incoming_provenance
        existing = self.decision.existing_provenance
        return {
            "recorded_at": self.recorded_at.isoformat(),
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "field": self.field_name,
            "status": "imported" if self.decision.accept else "skipped",
            "reason": self.decision.reason,
            "written": self.written,
            "previous_value": self.previous_value,
            "attempted_value": self.attempted_value,
            "incoming_source": incoming.source.value,
            "incoming_measured_at": incoming.measured_at.isoformat(),
            "incoming_device": incoming.device_id or "",
            "existing_source": existing.source.value if existing else "",
            "existing_measured_at": existing.measured_at.isoformat() if existing else "",
        }
