"""
Shared constants and utilities for the Operational KPI Engine
==============================================================
Single source of truth for run configuration, the error taxonomy, the
Undefined / NoValue markers, and the category classifiers used across
parse_feeds.py, identity_resolver.py, metrics.py and analyze.py.
"""

import os

import pandas as pd

# ---------------------------------------------------------------------------
# Run configuration. Override any of these through the environment
# ---------------------------------------------------------------------------
_DIR = os.path.dirname(os.path.abspath(__file__))

# Standard labor content baseline for efficiency %
EFFICIENCY_BASELINE = float(os.environ.get("KPI_EFFICIENCY_BASELINE", "233"))

# Attendance statuses starting with this prefix count as present (PRS, PRS-LATE...)
PRESENT_STATUS_PREFIX = os.environ.get("KPI_PRESENT_STATUS_PREFIX", "PRS")

# Final inspection result that means the order passed AQL
PASS_RESULT = os.environ.get("KPI_PASS_RESULT", "Y")

# Production scans only count once they reach this status (Assembly End)
PRODUCTION_STATUS = os.environ.get("KPI_PRODUCTION_STATUS", "AE")

# Defect master rows outside this code group are not quality defects
DEFECT_CODE_GROUP = os.environ.get("KPI_DEFECT_CODE_GROUP", "QCODE")

TOP_N = int(os.environ.get("KPI_TOP_N", "3"))
TREND_WINDOW = int(os.environ.get("KPI_TREND_WINDOW", "7"))

HISTORY_FILE = os.environ.get("KPI_HISTORY_FILE", os.path.join(_DIR, "kpi_history.jsonl"))

# Departments tracked by the attendance report
TRACKED_DEPARTMENTS = tuple(
    d.strip().upper()
    for d in os.environ.get("KPI_TRACKED_DEPARTMENTS", "SEWING,ASSEMBLY").split(",")
    if d.strip()
)


# ---------------------------------------------------------------------------
# Markers: values, not errors
# ---------------------------------------------------------------------------
class Sentinel:
    """Named falsy marker. Compares equal only to itself."""

    __slots__ = ("name",)

    def __init__(self, name):
        self.name = name

    def __repr__(self):
        return self.name

    def __bool__(self):
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


# Metric with a zero denominator
UNDEFINED = Sentinel("Undefined")

# Optional raw field that was not supplied
NO_VALUE = Sentinel("NoValue")


def is_undefined(value):
    return value is UNDEFINED


def has_value(value):
    """True unless the value is missing (NoValue, None, NaN)."""
    if value is NO_VALUE or value is UNDEFINED or value is None:
        return False
    if isinstance(value, (list, tuple, set, dict)):
        return True
    try:
        return not pd.isna(value)
    except (TypeError, ValueError):
        return True


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------
class KpiError(Exception):
    """Base class for engine errors."""


class SchemaError(KpiError):
    """A raw record could not be mapped to the canonical shape.

    Record-level: the record is dropped and the batch continues.
    """

    def __init__(self, message, *, source=None, row_number=None, reason="invalid"):
        super().__init__(message)
        self.source = source
        self.row_number = row_number
        self.reason = reason

    def to_record(self):
        return {
            "source": self.source,
            "row_number": self.row_number,
            "reason": self.reason,
            "message": str(self),
        }


class OrphanReferenceError(KpiError):
    """A fact references an entity that is not in the master set."""

    def __init__(self, fact):
        super().__init__(
            f"{fact.source_system}: entity {fact.entity_id!r} not found in master data"
        )
        self.fact = fact
        self.entity_id = fact.entity_id


class StaleScheduleError(KpiError):
    """No shift schedule exists for a line on a work date."""

    def __init__(self, line, work_date):
        super().__init__(f"No shift schedule for line {line!r} on {work_date}")
        self.line = line
        self.work_date = work_date


class EmptyMasterSetError(KpiError):
    """Master data is unavailable for the run. Fatal: the whole run aborts."""


# ---------------------------------------------------------------------------
# Category classifiers: MasterRecord -> category string, or None when the
# entity is out of scope for the report
# ---------------------------------------------------------------------------
def attribute_classifier(attribute, default=None):
    """Use one master attribute verbatim as the category."""

    def classify(master):
        value = master.attributes.get(attribute)
        if not has_value(value) or str(value).strip() == "":
            return default
        return str(value).strip()

    return classify


def org_unit_classifier(attribute="org_description", departments=None, building_chars=1):
    """Classify by department prefix + building code suffix.

    'SEWING LINE 3 A' -> 'A-SEWING'. Org units outside `departments`
    are out of scope.
    """
    depts = tuple(d.upper() for d in (departments or TRACKED_DEPARTMENTS))

    def classify(master):
        raw = master.attributes.get(attribute)
        if not has_value(raw):
            return None
        text = str(raw).strip().upper()
        dept = next((d for d in depts if text.startswith(d)), None)
        if dept is None:
            return None
        building = text[-building_chars:] if building_chars > 0 else ""
        return f"{building}-{dept}" if building else dept

    return classify


def entity_classifier(master):
    """Each entity is its own category (per-line / per-order reports)."""
    return master.entity_id
