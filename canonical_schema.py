"""Canonical record shapes shared by every stage of the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from shared import UNDEFINED, has_value, is_undefined


@dataclass(frozen=True)
class CanonicalFact:
    """One timestamped observation about an entity from one source."""

    entity_id: str
    observed_at: datetime
    source_system: str
    payload: dict = field(default_factory=dict)
    period_date: Optional[date] = None
    sequence: int = 0

    def __post_init__(self):
        if self.period_date is None:
            object.__setattr__(self, "period_date", self.observed_at.date())

    def get(self, key, default=None):
        value = self.payload.get(key, default)
        return value if has_value(value) else default


@dataclass(frozen=True)
class MasterRecord:
    """Slowly-changing reference data about an entity."""

    entity_id: str
    attributes: dict = field(default_factory=dict)
    active: bool = True
    terminated_at: Optional[datetime] = None
    valid_from: Optional[date] = None

    def get(self, key, default=None):
        value = self.attributes.get(key, default)
        return value if has_value(value) else default

    def termination_date(self) -> Optional[date]:
        if self.terminated_at is None:
            return None
        if isinstance(self.terminated_at, datetime):
            return self.terminated_at.date()
        return self.terminated_at


@dataclass(frozen=True)
class ShiftSegment:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> float:
        return max((self.end - self.start).total_seconds() / 60.0, 0.0)


@dataclass
class ShiftWindow:
    """Ordered work segments for one line on one work date.

    Gaps between consecutive segments are breaks.
    """

    line: str
    work_date: date
    segments: list[ShiftSegment] = field(default_factory=list)

    def __post_init__(self):
        self.segments = sorted(self.segments, key=lambda s: s.start)
        for seg in self.segments:
            if seg.end <= seg.start:
                raise ValueError(f"Segment {seg.start:%H:%M}-{seg.end:%H:%M} on line {self.line} has no duration")
        for prev, nxt in zip(self.segments, self.segments[1:]):
            if nxt.start < prev.end:
                raise ValueError(
                    f"Overlapping segments on line {self.line} {self.work_date}: "
                    f"{prev.start:%H:%M}-{prev.end:%H:%M} and {nxt.start:%H:%M}-{nxt.end:%H:%M}"
                )

    @property
    def start(self) -> Optional[datetime]:
        return self.segments[0].start if self.segments else None

    @property
    def end(self) -> Optional[datetime]:
        return self.segments[-1].end if self.segments else None


@dataclass(frozen=True)
class ResolvedState:
    """One row per (eligible entity, analysis date)."""

    entity_id: str
    analysis_date: date
    category: str
    master: MasterRecord
    fact: Optional[CanonicalFact] = None

    @property
    def has_fact(self) -> bool:
        return self.fact is not None


@dataclass(frozen=True)
class MetricResult:
    category: str
    analysis_date: date
    metric: str
    value: Any = UNDEFINED
    numerator: Any = None
    denominator: Any = None

    @property
    def key(self):
        return (self.category, self.analysis_date, self.metric)

    @property
    def is_defined(self) -> bool:
        return not is_undefined(self.value)

    def to_record(self) -> dict:
        return {
            "category": self.category,
            "analysis_date": self.analysis_date.isoformat(),
            "metric": self.metric,
            "value": None if is_undefined(self.value) else self.value,
            "numerator": None if is_undefined(self.numerator) else self.numerator,
            "denominator": None if is_undefined(self.denominator) else self.denominator,
            "undefined": is_undefined(self.value),
        }


def results_to_frame(results) -> pd.DataFrame:
    """Flatten MetricResults for display / export. Undefined shows as 'no data'."""
    rows = []
    for r in results:
        rows.append({
            "Category": r.category,
            "Date": r.analysis_date.isoformat(),
            "Metric": r.metric,
            "Value": "no data" if is_undefined(r.value) else r.value,
            "Numerator": "" if r.numerator is None or is_undefined(r.numerator) else r.numerator,
            "Denominator": "" if r.denominator is None or is_undefined(r.denominator) else r.denominator,
        })
    return pd.DataFrame(rows, columns=["Category", "Date", "Metric", "Value", "Numerator", "Denominator"])


def facts_to_frame(facts) -> pd.DataFrame:
    """One row per fact with payload fields spread into columns."""
    rows = []
    for f in facts:
        row = {
            "entity_id": f.entity_id,
            "observed_at": f.observed_at,
            "period_date": f.period_date,
            "source_system": f.source_system,
            "sequence": f.sequence,
        }
        for k, v in f.payload.items():
            row[k] = v if has_value(v) else None
        rows.append(row)
    return pd.DataFrame(rows)
