"""Tests for the freshness decision engine."""

from datetime import datetime, timedelta, timezone
from itertools import product

import pytest

from healthreconcile.engine import (
    DECISION_REASONS,
    REASON_HIGHER_PRIORITY,
    REASON_LOWER_PRIORITY,
    REASON_NEWER,
    REASON_NO_EXISTING,
    REASON_NOT_NEWER,
    decide,
)
from healthreconcile.exceptions import InvalidInputError
from healthreconcile.models import FieldProvenance, IncomingSample
from healthreconcile.sources import SourceId, priority_of

T0 = datetime(2025, 8, 14, 22, 0, tzinfo=timezone.utc)
IMPORTED = datetime(2025, 8, 15, 9, 0, tzinfo=timezone.utc)


def _sample(source=SourceId.HEALTH_CONNECT, measured_at=T0, value=7768, field_name="steps"):
    return IncomingSample(
        user_id="u1",
        field_name=field_name,
        value=value,
        source=source,
        measured_at=measured_at,
    )


def _prov(source=SourceId.HEALTH_CONNECT, measured_at=T0):
    return FieldProvenance(source=source, measured_at=measured_at, imported_at=IMPORTED)


class TestNoExistingData:
    """Rule 1: an empty field always accepts."""

    @pytest.mark.parametrize("source", list(SourceId))
    def test_accepts_any_source(self, source):
        decision = decide(_sample(source=source), None, imported_at=IMPORTED)
        assert decision.accept
        assert decision.reason == REASON_NO_EXISTING
        assert decision.existing_provenance is None


class TestPriority:
    """Rules 2 and 3: rank beats timestamps."""

    def test_higher_priority_wins_even_when_older(self):
        """Every strictly higher-ranked source overwrites a lower one with an earlier timestamp."""
        for high, low in product(SourceId, SourceId):
            if priority_of(high) <= priority_of(low):
                continue
            decision = decide(
                _sample(source=high, measured_at=T0 - timedelta(hours=5)),
                _prov(source=low, measured_at=T0),
            )
            assert decision.accept, (high, low)
            assert decision.reason == REASON_HIGHER_PRIORITY

    def test_lower_priority_loses_even_when_newer(self):
        for high, low in product(SourceId, SourceId):
            if priority_of(high) <= priority_of(low):
                continue
            decision = decide(
                _sample(source=low, measured_at=T0 + timedelta(hours=5)),
                _prov(source=high, measured_at=T0),
            )
            assert not decision.accept, (high, low)
            assert decision.reason == REASON_LOWER_PRIORITY

    def test_health_connect_overrides_google_fit_with_earlier_timestamp(self):
        existing = _prov(SourceId.GOOGLE_FIT, datetime(2025, 8, 14, 23, 0, tzinfo=timezone.utc))
        incoming = _sample(SourceId.HEALTH_CONNECT, datetime(2025, 8, 14, 22, 0, tzinfo=timezone.utc))
        decision = decide(incoming, existing)
        assert decision.accept
        assert decision.reason == REASON_HIGHER_PRIORITY

    def test_manual_never_overwritten_by_import(self):
        for source in SourceId:
            if source is SourceId.MANUAL:
                continue
            decision = decide(
                _sample(source=source, measured_at=T0 + timedelta(hours=1)),
                _prov(source=SourceId.MANUAL, measured_at=T0),
            )
            assert not decision.accept
            assert decision.reason == REASON_LOWER_PRIORITY

    def test_field_override_changes_outcome(self):
        """Google Fit can be ranked above Health Connect for one field."""
        overrides = {("sleepDurationMinutes", SourceId.GOOGLE_FIT): 90}
        incoming = _sample(SourceId.GOOGLE_FIT, field_name="sleepDurationMinutes")
        existing = _prov(SourceId.HEALTH_CONNECT, T0 + timedelta(hours=1))
        assert decide(incoming, existing, overrides=overrides).accept
        assert not decide(incoming, existing).accept


class TestSamePriority:
    """Rule 4: equal rank compares measurement time strictly."""

    @pytest.mark.parametrize(
        "offset,accept,reason",
        [
            (timedelta(minutes=1), True, REASON_NEWER),
            (timedelta(0), False, REASON_NOT_NEWER),
            (timedelta(minutes=-1), False, REASON_NOT_NEWER),
        ],
    )
    def test_same_source(self, offset, accept, reason):
        decision = decide(_sample(measured_at=T0 + offset), _prov(measured_at=T0))
        assert decision.accept is accept
        assert decision.reason == reason

    def test_peer_primary_sources_compare_timestamps(self):
        """Health Connect and RENPHO share a rank, so the newer one wins."""
        existing = _prov(SourceId.RENPHO, T0)
        assert decide(_sample(SourceId.HEALTH_CONNECT, T0 + timedelta(hours=1)), existing).accept
        assert not decide(_sample(SourceId.HEALTH_CONNECT, T0 - timedelta(hours=1)), existing).accept

    def test_offsets_compare_by_instant(self):
        """22:00+02:00 is earlier than 21:00Z regardless of wall-clock hour."""
        plus_two = timezone(timedelta(hours=2))
        existing = _prov(measured_at=datetime(2025, 8, 14, 21, 0, tzinfo=timezone.utc))
        incoming = _sample(measured_at=datetime(2025, 8, 14, 22, 0, tzinfo=plus_two))
        assert not decide(incoming, existing).accept


class TestDecisionRecord:
    """Tests for the decision payload."""

    def test_carries_both_provenances(self):
        existing = _prov(SourceId.GOOGLE_FIT)
        incoming = IncomingSample("u1", "steps", 100, SourceId.HEALTH_CONNECT, T0, device_id="pixel-8")
        decision = decide(incoming, existing, imported_at=IMPORTED)
        assert decision.existing_provenance is existing
        assert decision.incoming_provenance.source is SourceId.HEALTH_CONNECT
        assert decision.incoming_provenance.measured_at == T0
        assert decision.incoming_provenance.imported_at == IMPORTED
        assert decision.incoming_provenance.device_id == "pixel-8"

    def test_reasons_come_from_fixed_set(self):
        for existing in (None, _prov(SourceId.MANUAL), _prov(SourceId.MI_FITNESS), _prov()):
            assert decide(_sample(), existing).reason in DECISION_REASONS

    def test_imported_at_defaults_to_now(self):
        before = datetime.now(timezone.utc)
        decision = decide(_sample(), None)
        assert decision.incoming_provenance.imported_at >= before


class TestInvalidInput:
    """Samples the engine refuses to compare."""

    def test_unregistered_source(self):
        with pytest.raises(InvalidInputError, match="Unregistered source"):
            decide(_sample(source="fitbit"), None)

    def test_missing_measured_at(self):
        with pytest.raises(InvalidInputError, match="no measurement timestamp") as exc_info:
            decide(_sample(measured_at=None), None)
        assert exc_info.value.field_name == "steps"

    def test_naive_measured_at(self):
        with pytest.raises(InvalidInputError, match="UTC offset"):
            decide(_sample(measured_at=datetime(2025, 8, 14, 22, 0)), None)

    def test_rejection_is_not_an_error(self):
        decision = decide(_sample(source=SourceId.MI_FITNESS), _prov(SourceId.MANUAL))
        assert decision.accept is False
