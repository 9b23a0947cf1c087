"""Sleep-night attribution.

A sleep session belongs to the morning it ends in, "how did I sleep last
night": sessions starting at or after 18:00 local time count toward the
following calendar day, everything earlier (naps, early-morning sleep) stays
on its start date. Only the start time decides the bucket.

Local time means the offset carried by the start timestamp itself. Naive
timestamps are rejected instead of being read in the machine's timezone.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, timedelta
from typing import Any, Final

from healthreconcile.models import IncomingSample, SleepSession
from healthreconcile.sources import SourceId

ROLLOVER_HOUR: Final[int] = 18
SLEEP_DURATION_FIELD: Final[str] = "sleepDurationMinutes"


def attribute_sleep_date(session: SleepSession) -> date:
    """Return the canonical sleep date for ``session``.

    Raises:
        InvalidInputError: If the session is naive or ``end <= start``.
    """
    session.validate()
    start = session.start
    if start.hour >= ROLLOVER_HOUR:
        return start.date() + timedelta(days=1)
    return start.date()


def sleep_session_samples(
    user_id: str,
    session: SleepSession,
    source: SourceId,
    values: Mapping[str, Any] | None = None,
    device_id: str | None = None,
) -> tuple[date, list[IncomingSample]]:
    """Derive per-field samples for a sleep session.

    The session duration is always emitted as ``sleepDurationMinutes``; any
    extra ``values`` (scores, stage minutes) are emitted alongside it. All
    samples are stamped with the session end, the time the provider reports
    the night as measured.

    Returns:
        Tuple of (sleep_date, samples).
    """
    sleep_date = attribute_sleep_date(session)

    derived: dict[str, Any] = {SLEEP_DURATION_FIELD: session.duration_minutes}
    if values:
        derived.update(values)

    samples = [
        IncomingSample(
            user_id=user_id,
            field_name=name,
            value=value,
            source=source,
            measured_at=session.end,
            device_id=device_id,
        )
        for name, value in derived.items()
    ]
    return sleep_date, samples
