"""Freshness decision engine.

Decides, for one field of one day's record, whether an incoming sample should
replace the stored value. Rules are evaluated in order and the first match
wins:

1. nothing stored                      -> accept
2. incoming source ranks higher        -> accept (timestamps ignored)
3. incoming source ranks lower         -> reject (timestamps ignored)
4. same rank, strictly newer measured  -> accept, otherwise reject

Ties on rule 4 reject so that re-importing the same sample is a no-op.
The engine is pure: it never reads or writes storage.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Final

from healthreconcile.exceptions import InvalidInputError
from healthreconcile.models import FieldProvenance, FreshnessDecision, IncomingSample, is_aware
from healthreconcile.sources import PriorityOverrides, SourceId, priority_of

REASON_NO_EXISTING: Final = "no existing data"
REASON_HIGHER_PRIORITY: Final = "higher-priority source"
REASON_LOWER_PRIORITY: Final = "lower-priority source"
REASON_NEWER: Final = "newer timestamp, same-priority source"
REASON_NOT_NEWER: Final = "existing data is newer or same age"

DECISION_REASONS: Final[frozenset[str]] = frozenset(
    {
        REASON_NO_EXISTING,
        REASON_HIGHER_PRIORITY,
        REASON_LOWER_PRIORITY,
        REASON_NEWER,
        REASON_NOT_NEWER,
    }
)


def validate_sample(incoming: IncomingSample) -> None:
    """Raise ``InvalidInputError`` unless ``incoming`` can be compared at all."""
    if not isinstance(incoming.source, SourceId):
        raise InvalidInputError(
            f"Unregistered source {incoming.source!r} for field '{incoming.field_name}'",
            field_name=incoming.field_name,
        )
    if incoming.measured_at is None:
        raise InvalidInputError(
            f"Sample for field '{incoming.field_name}' has no measurement timestamp",
            field_name=incoming.field_name,
        )
    if not is_aware(incoming.measured_at):
        raise InvalidInputError(
            f"Measurement timestamp for field '{incoming.field_name}' has no UTC offset",
            field_name=incoming.field_name,
        )


def provenance_for(incoming: IncomingSample, imported_at: datetime) -> FieldProvenance:
    return FieldProvenance(
        source=incoming.source,
        measured_at=incoming.measured_at,
        imported_at=imported_at,
        device_id=incoming.device_id,
    )


def decide(
    incoming: IncomingSample,
    existing: FieldProvenance | None,
    *,
    imported_at: datetime | None = None,
    overrides: PriorityOverrides | None = None,
) -> FreshnessDecision:
    """Decide whether ``incoming`` should overwrite the field described by ``existing``.

    Args:
        incoming: The freshly fetched sample.
        existing: Provenance of the stored value, or None if the field is empty.
        imported_at: Import time recorded on the incoming provenance (defaults to now).
        overrides: Optional field-level priority overrides.

    Returns:
        FreshnessDecision. Rejection is a normal result, not an error.

    Raises:
        InvalidInputError: Unregistered source, or missing/naive ``measured_at``.
    """
    validate_sample(incoming)
    incoming_prov = provenance_for(incoming, imported_at or datetime.now(timezone.utc))

    def result(accept: bool, reason: str) -> FreshnessDecision:
        return FreshnessDecision(
            accept=accept,
            reason=reason,
            incoming_provenance=incoming_prov,
            existing_provenance=existing,
        )

    if existing is None:
        return result(True, REASON_NO_EXISTING)

    field_name = incoming.field_name
    incoming_rank = priority_of(incoming.source, field_name, overrides)
    existing_rank = priority_of(existing.source, field_name, overrides)

    if incoming_rank > existing_rank:
        return result(True, REASON_HIGHER_PRIORITY)
    if incoming_rank < existing_rank:
        return result(False, REASON_LOWER_PRIORITY)

    if incoming.measured_at > existing.measured_at:
        return result(True, REASON_NEWER)
    return result(False, REASON_NOT_NEWER)
