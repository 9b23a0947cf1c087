"""Tests for sleep-night attribution."""

from datetime import date, datetime, timedelta, timezone

import pytest

from healthreconcile.attribution import (
    ROLLOVER_HOUR,
    SLEEP_DURATION_FIELD,
    attribute_sleep_date,
    sleep_session_samples,
)
from healthreconcile.exceptions import InvalidInputError
from healthreconcile.models import SleepSession
from healthreconcile.sources import SourceId

EDT = timezone(timedelta(hours=-4))
JST = timezone(timedelta(hours=9))


def _session(start: datetime, hours: float = 8) -> SleepSession:
    return SleepSession(start=start, end=start + timedelta(hours=hours))


class TestAttributeSleepDate:
    """Tests for attribute_sleep_date()."""

    def test_late_evening_rolls_forward(self):
        """22:30 on day D belongs to D+1."""
        session = _session(datetime(2025, 8, 7, 22, 30, tzinfo=EDT))
        assert attribute_sleep_date(session) == date(2025, 8, 8)

    def test_early_morning_stays(self):
        """05:00 on day D belongs to D."""
        session = _session(datetime(2025, 8, 8, 5, 0, tzinfo=EDT), hours=2)
        assert attribute_sleep_date(session) == date(2025, 8, 8)

    def test_exactly_six_pm_rolls_forward(self):
        """The 18:00 boundary is inclusive on the 'next day' side."""
        session = _session(datetime(2025, 8, 7, ROLLOVER_HOUR, 0, tzinfo=EDT))
        assert attribute_sleep_date(session) == date(2025, 8, 8)

    def test_one_second_before_six_pm_stays(self):
        session = _session(datetime(2025, 8, 7, 17, 59, 59, tzinfo=EDT), hours=1)
        assert attribute_sleep_date(session) == date(2025, 8, 7)

    def test_afternoon_nap_stays(self):
        session = _session(datetime(2025, 8, 7, 14, 0, tzinfo=EDT), hours=0.5)
        assert attribute_sleep_date(session) == date(2025, 8, 7)

    def test_uses_local_hour_not_utc(self):
        """22:30 EDT is 02:30 UTC the next day, but the local evening decides."""
        start = datetime(2025, 8, 7, 22, 30, tzinfo=EDT)
        assert start.astimezone(timezone.utc).hour == 2
        assert attribute_sleep_date(_session(start)) == date(2025, 8, 8)

    def test_local_afternoon_with_evening_utc_hour(self):
        """17:00 JST is 08:00 UTC; attribution follows the 17:00 local hour."""
        start = datetime(2025, 8, 7, 17, 0, tzinfo=JST)
        assert attribute_sleep_date(_session(start, hours=1)) == date(2025, 8, 7)

    def test_end_time_never_matters(self):
        """A very long session crossing two midnights is still bucketed by its start."""
        start = datetime(2025, 8, 7, 23, 0, tzinfo=EDT)
        session = SleepSession(start=start, end=start + timedelta(hours=30))
        assert attribute_sleep_date(session) == date(2025, 8, 8)

    def test_month_and_year_rollover(self):
        session = _session(datetime(2025, 12, 31, 21, 0, tzinfo=timezone.utc))
        assert attribute_sleep_date(session) == date(2026, 1, 1)

    def test_end_not_after_start_raises(self):
        start = datetime(2025, 8, 7, 22, 0, tzinfo=EDT)
        with pytest.raises(InvalidInputError, match="not after start"):
            attribute_sleep_date(SleepSession(start=start, end=start))

    def test_naive_timestamps_raise(self):
        with pytest.raises(InvalidInputError, match="UTC offset"):
            attribute_sleep_date(
                SleepSession(start=datetime(2025, 8, 7, 22, 0), end=datetime(2025, 8, 8, 6, 0))
            )


class TestSleepSessionSamples:
    """Tests for sleep_session_samples()."""

    def test_duration_sample_on_sleep_date(self):
        start = datetime(2025, 8, 7, 22, 30, tzinfo=EDT)
        end = datetime(2025, 8, 8, 6, 45, tzinfo=EDT)
        sleep_date, samples = sleep_session_samples("u1", SleepSession(start, end), SourceId.GOOGLE_FIT)

        assert sleep_date == date(2025, 8, 8)
        assert len(samples) == 1
        sample = samples[0]
        assert sample.field_name == SLEEP_DURATION_FIELD
        assert sample.value == 495
        assert sample.measured_at == end
        assert sample.source is SourceId.GOOGLE_FIT

    def test_extra_values_share_session_metadata(self):
        start = datetime(2025, 8, 7, 23, 0, tzinfo=EDT)
        session = SleepSession(start, start + timedelta(hours=7))
        _date, samples = sleep_session_samples(
            "u1",
            session,
            SourceId.HEALTH_CONNECT,
            {"sleepScore": 82, "deepSleepMinutes": 95},
            device_id="ring-1",
        )
        by_field = {s.field_name: s for s in samples}
        assert set(by_field) == {SLEEP_DURATION_FIELD, "sleepScore", "deepSleepMinutes"}
        assert by_field["sleepScore"].value == 82
        assert all(s.device_id == "ring-1" and s.measured_at == session.end for s in samples)

    def test_invalid_session_raises(self):
        start = datetime(2025, 8, 7, 23, 0, tzinfo=EDT)
        with pytest.raises(InvalidInputError):
            sleep_session_samples("u1", SleepSession(start, start - timedelta(minutes=5)), SourceId.MANUAL)
