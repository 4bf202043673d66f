"""Shared fixtures for the KPI engine tests."""

from datetime import date, datetime

import pytest

from canonical_schema import CanonicalFact, MasterRecord, ShiftSegment, ShiftWindow


DAY = date(2021, 2, 19)


@pytest.fixture
def day():
    return DAY


@pytest.fixture
def make_fact():
    """Build a CanonicalFact; observed_at defaults to 08:00 on DAY."""

    def _make(entity_id, observed_at=None, source="test", sequence=0, period_date=None, **payload):
        return CanonicalFact(
            entity_id=entity_id,
            observed_at=observed_at or datetime(2021, 2, 19, 8, 0),
            source_system=source,
            payload=payload,
            period_date=period_date,
            sequence=sequence,
        )

    return _make


@pytest.fixture
def make_master():
    def _make(entity_id, active=True, terminated_at=None, valid_from=None, **attributes):
        return MasterRecord(
            entity_id=entity_id,
            attributes=attributes,
            active=active,
            terminated_at=terminated_at,
            valid_from=valid_from,
        )

    return _make


@pytest.fixture
def two_segment_schedule():
    """Line L1: 07:30-11:30 work, 11:30-12:30 break, 12:30-16:30 work (8h)."""
    window = ShiftWindow(
        line="L1",
        work_date=DAY,
        segments=[
            ShiftSegment(datetime(2021, 2, 19, 7, 30), datetime(2021, 2, 19, 11, 30)),
            ShiftSegment(datetime(2021, 2, 19, 12, 30), datetime(2021, 2, 19, 16, 30)),
        ],
    )
    return {("L1", DAY): window}
