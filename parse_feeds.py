"""
Source adapters for upstream operational feeds.
Converts raw attendance, production-scan, inspection, defect and order
progress records into CanonicalFact, and reference rows into MasterRecord.

Every feed gets one SourceSchema. All schemas converge on the same
canonical shape:
  entity_id     : the identity the record is about (employee, line, PO...)
  observed_at   : when the upstream system saw it (datetime)
  period_date   : the work date it counts toward
  source_system : schema name
  payload       : schema fields; missing optional fields hold NO_VALUE

Bad records are isolated: each one raises SchemaError internally, is
collected, and the rest of the batch continues.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional

import numpy as np
import pandas as pd

from canonical_schema import CanonicalFact, MasterRecord, facts_to_frame
from data_normalization import frame_to_records, rename_record, smart_rename
from shared import (
    NO_VALUE, PASS_RESULT, PRESENT_STATUS_PREFIX, SchemaError, has_value,
)

logger = logging.getLogger(__name__)

EXCEL_EPOCH = datetime(1899, 12, 30)
_EXCEL_ERRORS = {"#DIV/0!", "#N/A", "#VALUE!", "#REF!", "#NUM!", "#NAME?", "#NULL!"}

_TIMESTAMP_FORMATS = [
    "%Y%m%d",                 # "20210219"
    "%Y%m%d%H%M%S",           # "20210219073000"
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%b %d %Y %I:%M%p",       # "Feb 6 2026 1:00PM"
    "%b %d %Y %I:%M %p",      # "Feb 6 2026 1:00 PM"
    "%m/%d/%Y %I:%M:%S %p",   # "2/6/2026 12:37:02 PM"
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
]


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------
def _is_blank(val):
    if not has_value(val):
        return True
    return isinstance(val, str) and (val.strip() == "" or val.strip() in _EXCEL_ERRORS)


def parse_timestamp(val):
    """Parse any upstream date/time representation to a naive datetime.

    Returns None for a blank value. Raises ValueError when a value is
    present but cannot be read.
    """
    if _is_blank(val):
        return None
    if isinstance(val, datetime):
        ts = val.to_pydatetime() if hasattr(val, "to_pydatetime") else val
        return ts.replace(tzinfo=None) if ts.tzinfo is not None else ts
    if isinstance(val, date):
        return datetime(val.year, val.month, val.day)
    if isinstance(val, (bool, np.bool_)):
        raise ValueError(f"not a timestamp: {val!r}")
    if isinstance(val, (int, float, np.integer, np.floating)):
        num = float(val)
        if 19000101 <= num <= 99991231 and num.is_integer():
            return datetime.strptime(str(int(num)), "%Y%m%d")
        if 1 <= num < 2958466:
            return EXCEL_EPOCH + timedelta(days=num)
        raise ValueError(f"numeric value {val!r} is not a date")
    if isinstance(val, str):
        s = re.sub(r"\s+", " ", val.strip())
        for fmt in _TIMESTAMP_FORMATS:
            try:
                return datetime.strptime(s, fmt)
            except ValueError:
                continue
        try:
            ts = datetime.fromisoformat(s)
        except ValueError:
            raise ValueError(f"unrecognized timestamp {val!r}") from None
        return ts.replace(tzinfo=None) if ts.tzinfo is not None else ts
    raise ValueError(f"unsupported timestamp type {type(val).__name__}")


def parse_number(val):
    """Numeric field -> float, NO_VALUE when blank. Raises ValueError on junk."""
    if _is_blank(val):
        return NO_VALUE
    if isinstance(val, (bool, np.bool_)):
        raise ValueError(f"not a number: {val!r}")
    if isinstance(val, (int, float, np.integer, np.floating)):
        return float(val)
    return float(str(val).strip().replace(",", ""))


def normalize_entity_id(val):
    """Stable string identity. 1001.0 -> '1001'. Blank -> None."""
    if _is_blank(val):
        return None
    if isinstance(val, (float, np.floating)) and float(val).is_integer():
        return str(int(val))
    if isinstance(val, (int, np.integer)):
        return str(int(val))
    text = str(val).strip()
    return text or None


def _text(val):
    if _is_blank(val):
        return NO_VALUE
    return str(val).strip()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------
@dataclass
class SourceSchema:
    name: str
    entity_field: str
    timestamp_field: str = "timestamp"
    period_field: Optional[str] = None
    text_fields: tuple = ()
    numeric_fields: tuple = ()
    aliases: dict = field(default_factory=dict)
    derive: Optional[Callable[[dict], dict]] = None

    @property
    def fields(self):
        return tuple(self.text_fields) + tuple(self.numeric_fields)


def attendance_feed(present_prefix=PRESENT_STATUS_PREFIX):
    prefix = present_prefix.upper()

    def derive(payload):
        status = payload.get("status", NO_VALUE)
        if not has_value(status):
            return {"present": NO_VALUE}
        return {"present": str(status).upper().startswith(prefix)}

    return SourceSchema(
        name="attendance",
        entity_field="employee_id",
        period_field="work_date",
        text_fields=("status", "shift"),
        derive=derive,
    )


def inspection_feed(pass_result=PASS_RESULT):
    expected = pass_result.strip().upper()

    def derive(payload):
        result = payload.get("result", NO_VALUE)
        if not has_value(result):
            return {"passed": NO_VALUE}
        return {"passed": str(result).strip().upper() == expected}

    return SourceSchema(
        name="aql_inspection",
        entity_field="po_number",
        text_fields=("result",),
        derive=derive,
    )


ATTENDANCE_FEED = attendance_feed()

PRODUCTION_SCAN_FEED = SourceSchema(
    name="production_scan",
    entity_field="line_code",
    text_fields=("article", "production_status", "factory"),
    numeric_fields=("good_count",),
)

INSPECTION_FEED = inspection_feed()

DEFECT_FEED = SourceSchema(
    name="defect_log",
    entity_field="defect_code",
    text_fields=("line_code", "factory"),
    numeric_fields=("count",),
    aliases={"count": ["good_count", "goodcount", "defects", "qty"]},
)

ORDER_PROGRESS_FEED = SourceSchema(
    name="order_progress",
    entity_field="po_number",
    text_fields=("line_code",),
    numeric_fields=("lot_quantity", "assembly_end_quantity"),
)


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------
def source_record(raw, aliases=None, *, source=None, row_number=None):
    """Raw record -> dict keyed by internal names. Raises SchemaError when
    the record is not a mapping at all."""
    if not isinstance(raw, Mapping):
        raise SchemaError(
            f"record is not a mapping: {type(raw).__name__}", source=source,
            row_number=row_number, reason="invalid",
        )
    return rename_record(raw, aliases)


def _to_fact(raw, schema, sequence, row_number):
    rec = source_record(raw, schema.aliases, source=schema.name, row_number=row_number)

    entity_id = normalize_entity_id(rec.get(schema.entity_field))
    if entity_id is None:
        raise SchemaError(
            f"missing {schema.entity_field}", source=schema.name,
            row_number=row_number, reason="missing_entity",
        )

    try:
        observed_at = parse_timestamp(rec.get(schema.timestamp_field))
        period = parse_timestamp(rec.get(schema.period_field)) if schema.period_field else None
    except ValueError as exc:
        raise SchemaError(
            str(exc), source=schema.name, row_number=row_number, reason="bad_timestamp",
        ) from None
    if observed_at is None:
        observed_at = period
    if observed_at is None:
        raise SchemaError(
            f"missing {schema.timestamp_field}", source=schema.name,
            row_number=row_number, reason="bad_timestamp",
        )

    payload = {}
    for name in schema.text_fields:
        payload[name] = _text(rec.get(name))
    for name in schema.numeric_fields:
        try:
            payload[name] = parse_number(rec.get(name))
        except ValueError:
            raise SchemaError(
                f"{name} must be numeric, got {rec.get(name)!r}", source=schema.name,
                row_number=row_number, reason="bad_value",
            ) from None
    if schema.derive is not None:
        payload.update(schema.derive(payload))

    return CanonicalFact(
        entity_id=entity_id,
        observed_at=observed_at,
        source_system=schema.name,
        payload=payload,
        period_date=period.date() if period is not None else observed_at.date(),
        sequence=sequence,
    )


def normalize(raw_batch, source_schema):
    """Normalize one raw batch. Returns (facts, errors)."""
    facts = []
    errors = []
    for i, raw in enumerate(frame_to_records(raw_batch)):
        try:
            facts.append(_to_fact(raw, source_schema, sequence=i, row_number=i + 1))
        except SchemaError as exc:
            errors.append(exc)
            logger.debug("%s row %s dropped: %s", source_schema.name, exc.row_number, exc)
    if errors:
        logger.warning("%s: %d of %d records dropped", source_schema.name,
                       len(errors), len(facts) + len(errors))
    return facts, errors


def rollup_facts(facts, sum_fields, group_fields=(), collect_fields=()):
    """Sum additive facts into one fact per (entity, period_date, *group_fields).

    The rolled-up fact keeps the latest observed_at and highest sequence.
    `collect_fields` become sorted lists of the distinct values seen.
    """
    if not facts:
        return []
    source = facts[0].source_system
    df = facts_to_frame(facts)
    for col in list(sum_fields) + list(group_fields) + list(collect_fields):
        if col not in df.columns:
            df[col] = None
    df[list(sum_fields)] = df[list(sum_fields)].apply(pd.to_numeric, errors="coerce")

    keys = ["entity_id", "period_date"] + list(group_fields)
    agg = {c: (c, lambda s: s.sum(min_count=1)) for c in sum_fields}
    agg["observed_at"] = ("observed_at", "max")
    agg["sequence"] = ("sequence", "max")
    agg["fact_count"] = ("sequence", "size")
    for c in collect_fields:
        agg[c] = (c, lambda s: tuple(sorted({str(v) for v in s if has_value(v)})))
    grouped = df.groupby(keys, dropna=False, sort=True).agg(**agg).reset_index()

    out = []
    for row in grouped.to_dict("records"):
        payload = {c: (row[c] if has_value(row[c]) else NO_VALUE) for c in group_fields}
        for c in sum_fields:
            payload[c] = float(row[c]) if has_value(row[c]) else NO_VALUE
        for c in collect_fields:
            payload[c] = list(row[c])
        payload["fact_count"] = int(row["fact_count"])
        observed = row["observed_at"]
        out.append(CanonicalFact(
            entity_id=row["entity_id"],
            observed_at=observed.to_pydatetime() if hasattr(observed, "to_pydatetime") else observed,
            source_system=source,
            payload=payload,
            period_date=row["period_date"],
            sequence=int(row["sequence"]),
        ))
    return out


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------
_TRUE_STRINGS = {"y", "yes", "true", "1", "active", "a"}


def _parse_flag(val):
    if _is_blank(val):
        return True
    if isinstance(val, (bool, np.bool_)):
        return bool(val)
    if isinstance(val, (int, float, np.integer, np.floating)):
        return float(val) != 0
    return str(val).strip().lower() in _TRUE_STRINGS


def load_masters(raw_batch, id_field, *, aliases=None, source="master",
                 active_field="active", terminated_field="terminated_at",
                 valid_from_field="valid_from"):
    """Build MasterRecords from reference rows. Returns (masters, errors)."""
    masters = []
    errors = []
    reserved = {id_field, active_field, terminated_field, valid_from_field}
    for i, raw in enumerate(frame_to_records(raw_batch)):
        try:
            rec = source_record(raw, aliases, source=source, row_number=i + 1)
            entity_id = normalize_entity_id(rec.get(id_field))
            if entity_id is None:
                raise SchemaError(f"missing {id_field}", source=source,
                                  row_number=i + 1, reason="missing_entity")
            try:
                terminated_at = parse_timestamp(rec.get(terminated_field))
                valid_from = parse_timestamp(rec.get(valid_from_field))
            except ValueError as exc:
                raise SchemaError(str(exc), source=source, row_number=i + 1,
                                  reason="bad_timestamp") from None
        except SchemaError as exc:
            errors.append(exc)
            continue

        attributes = {
            k: (v if not _is_blank(v) else NO_VALUE)
            for k, v in rec.items() if k not in reserved
        }
        masters.append(MasterRecord(
            entity_id=entity_id,
            attributes=attributes,
            active=_parse_flag(rec.get(active_field)),
            terminated_at=terminated_at,
            valid_from=valid_from.date() if valid_from is not None else None,
        ))
    if errors:
        logger.warning("%s: %d of %d reference rows dropped", source,
                       len(errors), len(masters) + len(errors))
    return masters, errors


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------
def load_feed_file(path, sheet_name=0):
    """Read a CSV / XLSX / JSON / JSONL feed export into a DataFrame
    with internal column names."""
    ext = os.path.splitext(path)[1].lower()
    if ext == ".csv":
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
    elif ext in (".xlsx", ".xlsm"):
        df = pd.read_excel(path, sheet_name=sheet_name, engine="openpyxl")
    elif ext == ".jsonl":
        df = pd.read_json(path, lines=True, dtype=False)
    elif ext == ".json":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("records", [data])
        df = pd.DataFrame(data)
    else:
        raise ValueError(f"Unsupported feed file type: {ext} ({path})")

    df = smart_rename(df)
    return df.loc[:, ~df.columns.duplicated()]
