"""Data sources and their priority ranking.

The ranking is a lookup table so that registering a provider is a one-line
change. Higher rank wins. Manual entry is uniquely maximal.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Final

from healthreconcile.exceptions import ConfigurationError, InvalidInputError


class SourceId(str, Enum):
    """Closed set of origins a health-metric sample can come from."""

    MANUAL = "manual"
    HEALTH_CONNECT = "health_connect"
    RENPHO = "renpho"
    GOOGLE_FIT = "google_fit"
    MI_FITNESS = "mi_fitness"


SOURCE_PRIORITY: Final[Mapping[SourceId, int]] = {
    SourceId.MANUAL: 100,
    # Primary syncs share a rank; between them the newer measurement wins
    SourceId.HEALTH_CONNECT: 80,
    SourceId.RENPHO: 80,
    SourceId.GOOGLE_FIT: 60,  # gap filler
    SourceId.MI_FITNESS: 40,  # exported app data
}

# (field_name, source) -> rank
PriorityOverrides = Mapping[tuple[str, SourceId], int]


def priority_of(
    source: SourceId,
    field_name: str | None = None,
    overrides: PriorityOverrides | None = None,
) -> int:
    """Return the rank of ``source``, honouring any field-level override.

    An unregistered source raises ``KeyError``: the source set is closed, so
    that is a programming error rather than bad input.
    """
    if overrides and field_name is not None:
        rank = overrides.get((field_name, source))
        if rank is not None:
            return rank
    return SOURCE_PRIORITY[source]


def validate_overrides(overrides: PriorityOverrides) -> None:
    """Reject overrides that would let an automatic source tie or beat manual entry."""
    manual_rank = SOURCE_PRIORITY[SourceId.MANUAL]
    for (field_name, source), rank in overrides.items():
        if not isinstance(source, SourceId):
            raise ConfigurationError(f"Override for '{field_name}' names unknown source {source!r}")
        if source is SourceId.MANUAL:
            raise ConfigurationError("Manual entry priority cannot be overridden")
        if not isinstance(rank, int) or isinstance(rank, bool):
            raise ConfigurationError(
                f"Override rank for {source.value}/{field_name} must be an integer, got {rank!r}"
            )
        if rank >= manual_rank:
            raise ConfigurationError(
                f"Override rank {rank} for {source.value}/{field_name} "
                f"must stay below manual entry ({manual_rank})"
            )


def parse_source(value: str | SourceId) -> SourceId:
    """Convert an external source identifier into a ``SourceId``.

    Accepts the canonical values plus case and separator variants
    ("Health Connect", "google-fit").
    """
    if isinstance(value, SourceId):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"Source identifier must be a non-empty string, got {value!r}")

    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return SourceId(normalized)
    except ValueError:
        known = ", ".join(s.value for s in SourceId)
        raise InvalidInputError(f"Unregistered source '{value}'. Known sources: {known}") from None
