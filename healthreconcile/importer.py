"""Load provider export batches into dated samples.

This module handles:
- Reading sample batches from CSV or JSON (via pandas)
- Parsing measurement timestamps (offset required, via dateutil)
- Mapping provider names to SourceId
- Expanding sleep sessions into per-field samples on their sleep date
- Skipping invalid rows with a warning instead of failing the whole batch

A row without a measurement time is skipped. The fetch time is never used as
a stand-in, since freshness is judged on measurement time alone.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Final

import pandas as pd
from dateutil.parser import isoparse

from healthreconcile.applier import DatedSample
from healthreconcile.attribution import sleep_session_samples
from healthreconcile.exceptions import InvalidInputError
from healthreconcile.models import IncomingSample, SleepSession, is_aware
from healthreconcile.sources import parse_source

logger = logging.getLogger(__name__)

SAMPLE_REQUIRED_COLUMNS: Final[set[str]] = {"field_name", "value", "source", "measured_at"}
SLEEP_REQUIRED_COLUMNS: Final[set[str]] = {"source", "start", "end"}
SLEEP_RESERVED_COLUMNS: Final[set[str]] = {"user_id", "source", "start", "end", "device_id", "date"}

Skipped = list[tuple[int, str]]


def _read_frame(path: Path, records_key: str) -> pd.DataFrame:
    """Read CSV or JSON into a string-typed frame with blanks as ''."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Batch file not found: {path}")

    if path.suffix.lower() == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            if records_key not in data:
                raise KeyError(f"JSON batch must contain '{records_key}' key")
            data = data[records_key]
        if not isinstance(data, list):
            raise TypeError(f"'{records_key}' must be a list, got {type(data).__name__}")
        df = pd.DataFrame(data)
    else:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)

    df = df.astype(object).where(pd.notna(df), "")
    df.columns = [str(c).strip() for c in df.columns]
    return df


def _check_columns(df: pd.DataFrame, required: set[str], path: Path) -> None:
    missing = required - set(df.columns)
    if missing:
        raise KeyError(
            f"{path}: missing required columns: {', '.join(sorted(missing))}. "
            f"Required: {', '.join(sorted(required))}"
        )


def _text(row: dict[str, Any], key: str) -> str:
    val = row.get(key, "")
    return "" if val is None else str(val).strip()


def parse_timestamp(raw: str, column: str = "measured_at") -> datetime:
    """Parse an ISO-8601 timestamp that must carry an offset."""
    if not raw:
        raise InvalidInputError(f"'{column}' is required")
    try:
        ts = isoparse(raw)
    except ValueError as e:
        raise InvalidInputError(f"Invalid '{column}' timestamp {raw!r}: {e}") from e
    if not is_aware(ts):
        raise InvalidInputError(f"'{column}' timestamp {raw!r} has no UTC offset")
    return ts


def coerce_value(raw: Any) -> Any:
    """Turn CSV text into int/float where it looks numeric."""
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    if text == "":
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _user_for(row: dict[str, Any], default_user: str | None) -> str:
    user_id = _text(row, "user_id") or default_user
    if not user_id:
        raise InvalidInputError("'user_id' is required (no default user configured)")
    return user_id


def _warn_skipped(kind: str, path: Path, skipped: Skipped) -> None:
    if not skipped:
        return
    logger.warning("Skipped %d invalid %s row(s) in %s", len(skipped), kind, path)
    for idx, error in skipped:
        logger.warning("  - Row %d: %s", idx, error)


def load_samples(path: Path, *, default_user: str | None = None) -> tuple[list[DatedSample], Skipped]:
    """Load metric samples from a CSV or JSON batch.

    Columns: ``user_id`` (optional with ``default_user``), ``field_name``,
    ``value``, ``source``, ``measured_at``, optional ``device_id`` and
    ``date`` (day bucket; defaults to the measurement's local date).

    Returns:
        Tuple of (samples, skipped) where skipped holds (row index, error).
    """
    path = Path(path)
    df = _read_frame(path, "samples")
    _check_columns(df, SAMPLE_REQUIRED_COLUMNS, path)

    samples: list[DatedSample] = []
    skipped: Skipped = []
    for idx, row in enumerate(df.to_dict(orient="records")):
        try:
            field_name = _text(row, "field_name")
            if not field_name:
                raise InvalidInputError("'field_name' is required")
            measured_at = parse_timestamp(_text(row, "measured_at"))
            bucket_raw = _text(row, "date")
            try:
                bucket = date.fromisoformat(bucket_raw) if bucket_raw else measured_at.date()
            except ValueError as e:
                raise InvalidInputError(f"Invalid 'date' {bucket_raw!r}: {e}") from e
            value = coerce_value(row.get("value"))
            if value is None:
                raise InvalidInputError("'value' is required", field_name=field_name)

            sample = IncomingSample(
                user_id=_user_for(row, default_user),
                field_name=field_name,
                value=value,
                source=parse_source(_text(row, "source")),
                measured_at=measured_at,
                device_id=_text(row, "device_id") or None,
            )
            samples.append((bucket, sample))
        except InvalidInputError as e:
            skipped.append((idx, str(e)))

    _warn_skipped("sample", path, skipped)
    return samples, skipped


def load_sleep_sessions(path: Path, *, default_user: str | None = None) -> tuple[list[DatedSample], Skipped]:
    """Load sleep sessions and expand them into samples on their sleep date.

    Columns: ``user_id`` (optional with ``default_user``), ``source``,
    ``start``, ``end``, optional ``device_id`` and ``date`` (ignored; the date
    comes from the session). Every other non-empty column
    (e.g. ``sleepScore``, ``deepSleepMinutes``) becomes a field sample.
    """
    path = Path(path)
    df = _read_frame(path, "sessions")
    _check_columns(df, SLEEP_REQUIRED_COLUMNS, path)

    samples: list[DatedSample] = []
    skipped: Skipped = []
    for idx, row in enumerate(df.to_dict(orient="records")):
        try:
            session = SleepSession(
                start=parse_timestamp(_text(row, "start"), "start"),
                end=parse_timestamp(_text(row, "end"), "end"),
            )
            extra = {
                key: coerce_value(val)
                for key, val in row.items()
                if key not in SLEEP_RESERVED_COLUMNS and _text(row, key)
            }
            sleep_date, session_samples = sleep_session_samples(
                _user_for(row, default_user),
                session,
                parse_source(_text(row, "source")),
                extra,
                device_id=_text(row, "device_id") or None,
            )
            samples.extend((sleep_date, s) for s in session_samples)
        except InvalidInputError as e:
            skipped.append((idx, str(e)))

    _warn_skipped("sleep session", path, skipped)
    return samples, skipped
