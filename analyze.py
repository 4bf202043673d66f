"""
Operational KPI Analyzer
=========================
Runs the three KPI reports on top of the engine:

  attendance  : present / absent / no-record / terminated-today by
                department-building, attendance and absenteeism rates
  production  : per-line output vs. full and time-proportional targets,
                PPH and labor-content efficiency
  quality     : top-N defect Pareto, dual AQL pass rates (by order count
                and by volume), order completion status

Each report returns a KpiRun: the ordered MetricResults plus RunMeta
health counts, so "zero defects" can be told apart from "defect data
unavailable".

Usage:
  python analyze.py attendance --masters employees.csv --facts attendance.csv --date 2021-02-19
  python analyze.py production --masters line_plan.csv --facts scans.csv --schedule schedule.csv \\
      --as-of "2021-02-19 12:00" --labor-content labor_content.csv
  python analyze.py quality --masters export_schedule.csv --facts aql.csv \\
      --defects defects.csv --defect-codes defect_codes.csv --production scans.csv --date 2021-02-19
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime

import pandas as pd

from analysis_report import write_excel
from canonical_schema import MetricResult, facts_to_frame, results_to_frame
from identity_resolver import PERIOD_TO_DATE, resolve
from kpi_history import load_history, save_run, trailing_average
from metrics import (
    dynamic_target, efficiency_percent, mean_or_undefined, metric_result,
    pass_rates, productivity, value_result,
)
from parse_feeds import (
    ATTENDANCE_FEED, DEFECT_FEED, INSPECTION_FEED, ORDER_PROGRESS_FEED,
    PRODUCTION_SCAN_FEED, load_feed_file, load_masters, normalize,
    parse_number, parse_timestamp, rollup_facts,
)
from ranking import pareto_table, top_n
from shared import (
    DEFECT_CODE_GROUP, EFFICIENCY_BASELINE, HISTORY_FILE, NO_VALUE,
    PRODUCTION_STATUS, TOP_N, TREND_WINDOW, UNDEFINED, EmptyMasterSetError,
    StaleScheduleError, attribute_classifier, entity_classifier, has_value,
    is_undefined, org_unit_classifier,
)
from shift_calendar import build_schedules, elapsed_and_scheduled

logger = logging.getLogger(__name__)

ALL = "ALL"

ATTENDANCE_METRICS = [
    "total_active", "present", "absent", "no_record", "terminated_today",
    "attendance_rate", "absenteeism_rate", "terminated_today_avg",
]

PRODUCTION_METRICS = [
    "actual_output", "full_target", "dynamic_target", "scheduled_hours",
    "elapsed_hours", "target_achieved_pct", "dynamic_target_pct",
    "target_pph", "actual_pph", "target_efficiency_pct", "actual_efficiency_pct",
]

QUALITY_METRICS = [
    "defect_count", "defect_rate",
    "orders_total", "orders_passed", "orders_failed", "orders_uninspected",
    "volume_total", "volume_passed", "volume_failed",
    "order_pass_rate", "volume_pass_rate",
]


# ---------------------------------------------------------------------------
# Run containers
# ---------------------------------------------------------------------------
@dataclass
class RunMeta:
    report: str
    schema_errors: int = 0
    orphan_facts: int = 0
    stale_schedules: int = 0
    undefined_metrics: int = 0
    out_of_scope: int = 0
    terminated: int = 0
    inactive: int = 0
    info_messages: list[str] = field(default_factory=list)
    warning_messages: list[str] = field(default_factory=list)

    def warn(self, message):
        self.warning_messages.append(message)
        logger.warning(message)

    def absorb_resolution(self, resolution):
        self.orphan_facts += resolution.orphan_count
        self.out_of_scope += resolution.out_of_scope_count
        self.terminated += len(resolution.terminated)
        self.inactive += resolution.inactive_count
        if resolution.orphan_count:
            self.warn(
                f"{resolution.orphan_count} fact(s) reference unknown entities "
                f"({', '.join(resolution.orphan_entities[:10])}); excluded from aggregates."
            )

    def absorb_adapter_errors(self, errors):
        errors = list(errors or [])
        self.schema_errors += len(errors)
        if errors:
            by_reason = pd.Series([e.reason for e in errors]).value_counts()
            detail = ", ".join(f"{reason}: {int(n)}" for reason, n in by_reason.items())
            self.warn(f"{len(errors)} raw record(s) dropped ({detail}).")

    def to_record(self) -> dict:
        return {
            "report": self.report,
            "schema_errors": self.schema_errors,
            "orphan_facts": self.orphan_facts,
            "stale_schedules": self.stale_schedules,
            "undefined_metrics": self.undefined_metrics,
            "out_of_scope": self.out_of_scope,
            "terminated": self.terminated,
            "inactive": self.inactive,
            "warning_count": len(self.warning_messages),
        }


@dataclass
class KpiRun:
    report: str
    analysis_date: date
    as_of: datetime
    results: list[MetricResult]
    meta: RunMeta
    tables: dict = field(default_factory=dict)

    def get(self, category, metric):
        for r in self.results:
            if r.category == category and r.metric == metric:
                return r
        return None

    def value(self, category, metric, default=None):
        r = self.get(category, metric)
        return r.value if r is not None else default

    def categories(self):
        return sorted({r.category for r in self.results})

    def to_frame(self):
        return results_to_frame(self.results)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_timestamp(value).date()


def _as_datetime(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return parse_timestamp(value)


def _attr_number(record, key):
    """Numeric attribute of a master or fact payload, NO_VALUE when unusable."""
    value = record.get(key, NO_VALUE)
    try:
        return parse_number(value)
    except (TypeError, ValueError):
        return NO_VALUE


def _fact_list(facts):
    if isinstance(facts, dict):
        return [f for batch in facts.values() for f in batch]
    return list(facts or [])


def _in_factory(value, factory):
    """True when no factory filter is set or `value` names that factory."""
    if factory is None:
        return True
    return has_value(value) and str(value).strip().upper() == str(factory).strip().upper()


def _partition_map(partitions, fn, max_workers=None):
    """Apply fn(category, items) to every partition; results in category order.

    Partitions share nothing, so they can run on a thread pool; the reduce
    is a plain concatenation in sorted category order.
    """
    keys = sorted(partitions)
    if max_workers and max_workers > 1 and len(keys) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            parts = list(pool.map(lambda k: fn(k, partitions[k]), keys))
    else:
        parts = [fn(k, partitions[k]) for k in keys]
    return parts


def _order_results(results, metric_order):
    rank = {m: i for i, m in enumerate(metric_order)}
    return sorted(
        results,
        key=lambda r: (r.category == ALL, r.category, rank.get(r.metric, len(rank)), r.metric),
    )


def _finish(report, analysis_date, as_of, results, meta, metric_order=None, tables=None):
    if metric_order is not None:
        results = _order_results(results, metric_order)
    meta.undefined_metrics = sum(1 for r in results if is_undefined(r.value))
    return KpiRun(report=report, analysis_date=analysis_date, as_of=as_of,
                  results=results, meta=meta, tables=tables or {})


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------
def _attendance_counts(states):
    total = len(states)
    present = sum(1 for s in states if s.has_fact and s.fact.get("present") is True)
    no_record = sum(1 for s in states if not s.has_fact)
    return total, present, total - present, no_record


def attendance_report(masters, attendance_facts, analysis_date, classifier=None,
                      shift=None, history=None, window=None, max_workers=None,
                      adapter_errors=None, as_of=None):
    """Workforce availability per category for one analysis date.

    shift: only facts whose shift starts with this value count (e.g. "1"
        for first shift); facts without a shift are ignored then.
    history: prior runs (kpi_history.load_history frame); adds the trailing
        average of terminations per category.
    """
    analysis_date = _as_date(analysis_date)
    as_of = _as_datetime(as_of) if as_of is not None else _as_datetime(analysis_date)
    meta = RunMeta(report="attendance")
    meta.absorb_adapter_errors(adapter_errors)

    facts = _fact_list(attendance_facts)
    if shift is not None:
        prefix = str(shift).strip().upper()
        kept = [f for f in facts if has_value(f.payload.get("shift"))
                and str(f.payload["shift"]).upper().startswith(prefix)]
        meta.info_messages.append(f"Shift filter '{shift}': {len(kept)} of {len(facts)} facts kept.")
        facts = kept

    resolution = resolve(masters, {"attendance": facts}, analysis_date,
                         classifier=classifier or org_unit_classifier())
    meta.absorb_resolution(resolution)

    by_category = resolution.by_category()
    terminated_today = resolution.terminated_today_by_category()
    partitions = {c: by_category.get(c, []) for c in set(by_category) | set(terminated_today)}

    def compute(category, states):
        total, present, absent, no_record = _attendance_counts(states)
        term = terminated_today.get(category, 0)
        out = [
            value_result(category, analysis_date, "total_active", total),
            value_result(category, analysis_date, "present", present),
            value_result(category, analysis_date, "absent", absent),
            value_result(category, analysis_date, "no_record", no_record),
            value_result(category, analysis_date, "terminated_today", term),
            metric_result(category, analysis_date, "attendance_rate", present, total),
            metric_result(category, analysis_date, "absenteeism_rate", absent, total),
        ]
        if history is not None:
            out.append(value_result(category, analysis_date, "terminated_today_avg",
                                    trailing_average(history, category, "terminated_today",
                                                     term, analysis_date, window)))
        return out

    results = [r for part in _partition_map(partitions, compute, max_workers) for r in part]

    total, present, absent, no_record = _attendance_counts(resolution.states)
    term_all = len(resolution.terminated_today)
    results.extend([
        value_result(ALL, analysis_date, "total_active", total),
        value_result(ALL, analysis_date, "present", present),
        value_result(ALL, analysis_date, "absent", absent),
        value_result(ALL, analysis_date, "no_record", no_record),
        value_result(ALL, analysis_date, "terminated_today", term_all),
        metric_result(ALL, analysis_date, "attendance_rate", present, total),
        metric_result(ALL, analysis_date, "absenteeism_rate", absent, total),
    ])
    if history is not None:
        results.append(value_result(ALL, analysis_date, "terminated_today_avg",
                                    trailing_average(history, ALL, "terminated_today",
                                                     term_all, analysis_date, window)))
    return _finish("attendance", analysis_date, as_of, results, meta, ATTENDANCE_METRICS)


# ---------------------------------------------------------------------------
# Production efficiency
# ---------------------------------------------------------------------------
def labor_content_lookup(masters, field_name="labor_content"):
    """{article: labor content} from labor content master records."""
    lookup = {}
    for m in masters:
        value = _attr_number(m, field_name)
        if has_value(value):
            lookup[m.entity_id] = value
    return lookup


def _line_rate(master):
    """Line output rate per hour: JPH, or per-worker rate x workers."""
    jph = _attr_number(master, "jph")
    if has_value(jph):
        return jph
    per_worker = _attr_number(master, "rate_per_worker_hour")
    workers = _attr_number(master, "workers")
    if has_value(per_worker) and has_value(workers):
        return per_worker * workers
    return UNDEFINED


def _line_kpis(state, as_of, schedule, labor_content, baseline):
    """KPIs for one line. Raises StaleScheduleError when the line has no schedule."""
    line = state.entity_id
    day = state.analysis_date
    elapsed_min, scheduled_min = elapsed_and_scheduled(line, as_of, schedule)
    sched_h = scheduled_min / 60.0
    elapsed_h = elapsed_min / 60.0

    master = state.master
    workers = _attr_number(master, "workers")
    line_rate = _line_rate(master)
    explicit_target = _attr_number(master, "target_output")
    if has_value(explicit_target):
        full_target = explicit_target
    elif is_undefined(line_rate):
        full_target = UNDEFINED
    else:
        full_target = sched_h * line_rate
    dyn_target = dynamic_target(full_target, line_rate, sched_h, elapsed_h)

    actual = 0.0
    articles = []
    if state.has_fact:
        good = state.fact.get("good_count", NO_VALUE)
        actual = float(good) if has_value(good) else 0.0
        articles = state.fact.get("article", []) or []
    avg_content = mean_or_undefined(labor_content.get(a) for a in articles)

    target_pph = productivity(full_target, workers, sched_h)
    actual_pph = productivity(actual, workers, elapsed_h)
    return [
        value_result(line, day, "actual_output", actual),
        value_result(line, day, "full_target", full_target),
        value_result(line, day, "dynamic_target", dyn_target),
        value_result(line, day, "scheduled_hours", sched_h),
        value_result(line, day, "elapsed_hours", elapsed_h),
        metric_result(line, day, "target_achieved_pct", actual, full_target),
        metric_result(line, day, "dynamic_target_pct", actual, dyn_target),
        value_result(line, day, "target_pph", target_pph),
        value_result(line, day, "actual_pph", actual_pph),
        value_result(line, day, "target_efficiency_pct",
                     efficiency_percent(avg_content, target_pph, baseline)),
        value_result(line, day, "actual_efficiency_pct",
                     efficiency_percent(avg_content, actual_pph, baseline)),
    ]


def production_report(line_plans, scan_facts, schedule, as_of, labor_content=None,
                      baseline=None, production_status=PRODUCTION_STATUS,
                      classifier=None, max_workers=None, adapter_errors=None, factory=None):
    """Per-line production efficiency at `as_of`.

    line_plans: MasterRecords per line (workers, jph or rate_per_worker_hour,
        optional target_output).
    scan_facts: production scan facts; only `production_status` scans count.
    schedule: {(line, work_date): ShiftWindow}.
    labor_content: {article: standard labor content}.
    baseline: efficiency baseline constant; defaults to the configured one.
    classifier: optional line grouping (e.g. by factory) for rollup rows.
    factory: only lines and scans of this factory. Line plans without a
        factory attribute are kept.
    """
    as_of = _as_datetime(as_of)
    analysis_date = as_of.date()
    baseline = EFFICIENCY_BASELINE if baseline is None else baseline
    labor_content = labor_content or {}
    meta = RunMeta(report="production")
    meta.absorb_adapter_errors(adapter_errors)

    scans = _fact_list(scan_facts)
    if production_status:
        scans = [f for f in scans if f.payload.get("production_status") == production_status]
    if factory is not None:
        scans = [f for f in scans if _in_factory(f.payload.get("factory"), factory)]
        line_plans = [m for m in line_plans or []
                      if not has_value(m.get("factory", NO_VALUE))
                      or _in_factory(m.get("factory"), factory)]
    line_facts = rollup_facts(scans, ["good_count"], collect_fields=("article",))

    resolution = resolve(line_plans, {"production_scan": line_facts}, analysis_date,
                         classifier=entity_classifier)
    meta.absorb_resolution(resolution)

    def compute(category, states):
        out, stale = [], []
        for state in states:
            try:
                out.extend(_line_kpis(state, as_of, schedule, labor_content, baseline))
            except StaleScheduleError as exc:
                stale.append(exc)
        return out, stale

    results = []
    for part, stale in _partition_map(resolution.by_category(), compute, max_workers):
        results.extend(part)
        for exc in stale:
            meta.stale_schedules += 1
            meta.warn(f"{exc}; line excluded from this run.")

    without_output = [s.entity_id for s in resolution.states if not s.has_fact]
    if without_output:
        meta.info_messages.append(
            f"No production scans yet for: {', '.join(without_output)} (reported as 0 output)."
        )

    if classifier is not None:
        results.extend(_production_rollup(results, resolution, classifier, analysis_date))
    return _finish("production", analysis_date, as_of, results, meta, PRODUCTION_METRICS)


def _production_rollup(line_results, resolution, classifier, analysis_date):
    """Group-level output vs. targets, summed over the lines that ran."""
    group_of = {}
    for state in resolution.states:
        group = classifier(state.master)
        if group is not None:
            group_of[state.entity_id] = group

    sums = {}
    for r in line_results:
        group = group_of.get(r.category)
        if group is None or r.metric not in ("actual_output", "full_target", "dynamic_target"):
            continue
        acc = sums.setdefault(group, {"actual_output": 0.0, "full_target": 0.0, "dynamic_target": 0.0})
        if is_undefined(acc[r.metric]) or is_undefined(r.value):
            acc[r.metric] = UNDEFINED
        else:
            acc[r.metric] += r.value

    out = []
    for group in sorted(sums):
        acc = sums[group]
        out.extend([
            value_result(group, analysis_date, "actual_output", acc["actual_output"]),
            value_result(group, analysis_date, "full_target", acc["full_target"]),
            value_result(group, analysis_date, "dynamic_target", acc["dynamic_target"]),
            metric_result(group, analysis_date, "target_achieved_pct",
                          acc["actual_output"], acc["full_target"]),
            metric_result(group, analysis_date, "dynamic_target_pct",
                          acc["actual_output"], acc["dynamic_target"]),
        ])
    return out


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------
def total_production(production_facts, analysis_date, production_status=PRODUCTION_STATUS,
                     factory=None):
    """Units produced on the analysis date (denominator for defect rates)."""
    total = 0.0
    for f in _fact_list(production_facts):
        if f.period_date != analysis_date:
            continue
        if production_status and f.payload.get("production_status") != production_status:
            continue
        if not _in_factory(f.payload.get("factory"), factory):
            continue
        good = f.payload.get("good_count", NO_VALUE)
        if has_value(good):
            total += float(good)
    return total


def defect_counts(defect_facts, analysis_date, defect_codes=None,
                  code_group=DEFECT_CODE_GROUP, meta=None, factory=None):
    """{defect code: count} for the analysis date.

    With a defect code master, codes outside `code_group` are ignored and
    codes missing from the master are orphans.
    """
    day_facts = [f for f in _fact_list(defect_facts)
                 if f.period_date == analysis_date and _in_factory(f.payload.get("factory"), factory)]
    rolled = rollup_facts(day_facts, ["count"])
    descriptions = {}
    if defect_codes is None:
        counts = {}
        for f in rolled:
            c = f.payload.get("count", NO_VALUE)
            if has_value(c):
                counts[f.entity_id] = counts.get(f.entity_id, 0.0) + float(c)
        return counts, descriptions

    def in_group(master):
        group = master.get("code_group")
        if code_group and group is not None and str(group).strip().upper() != code_group.upper():
            return None
        return master.entity_id

    resolution = resolve(defect_codes, {"defect_log": rolled}, analysis_date, classifier=in_group)
    if meta is not None:
        meta.absorb_resolution(resolution)
    counts = {}
    for state in resolution.states:
        descriptions[state.entity_id] = state.master.get("defect_description", "")
        if state.has_fact:
            c = state.fact.get("count", NO_VALUE)
            if has_value(c) and float(c) > 0:
                counts[state.entity_id] = float(c)
    return counts, descriptions


def _scheduled_on(analysis_date, base_classifier, date_field="work_date"):
    """Orders count only on their scheduled (export) date when they carry one."""

    def classify(master):
        raw = master.attributes.get(date_field)
        if has_value(raw):
            try:
                ts = parse_timestamp(raw)
            except ValueError:
                return None
            if ts is not None and ts.date() != analysis_date:
                return None
        return base_classifier(master)

    return classify


def _pass_flag(state):
    if not state.has_fact:
        return NO_VALUE
    return state.fact.payload.get("passed", NO_VALUE)


def _aql_results(category, analysis_date, states):
    pr = pass_rates(states, passed=_pass_flag, quantity=lambda s: _attr_number(s.master, "quantity"))
    return [
        value_result(category, analysis_date, "orders_total", pr.total_count),
        value_result(category, analysis_date, "orders_passed", pr.passed_count),
        value_result(category, analysis_date, "orders_failed", pr.failed_count),
        value_result(category, analysis_date, "orders_uninspected", pr.uninspected_count),
        value_result(category, analysis_date, "volume_total", pr.total_quantity),
        value_result(category, analysis_date, "volume_passed", pr.passed_quantity),
        value_result(category, analysis_date, "volume_failed", pr.failed_quantity),
        metric_result(category, analysis_date, "order_pass_rate", pr.passed_count, pr.total_count),
        metric_result(category, analysis_date, "volume_pass_rate", pr.passed_quantity, pr.total_quantity),
    ]


def quality_report(orders, inspection_facts, analysis_date, defect_facts=None,
                   production_facts=None, defect_codes=None, n=None, classifier=None,
                   max_workers=None, adapter_errors=None, as_of=None, factory=None):
    """Quality KPIs for one analysis date.

    orders: export schedule MasterRecords (quantity, optional work_date =
        export date, optional grouping attribute such as country).
    inspection_facts: AQL inspections; the latest inspection on or before
        the analysis date decides each order.
    defect_facts / production_facts / defect_codes: top-N defect Pareto
        with defect rate against the day's production.
    factory: scope defects and production to one factory.
    """
    analysis_date = _as_date(analysis_date)
    as_of = _as_datetime(as_of) if as_of is not None else _as_datetime(analysis_date)
    n = TOP_N if n is None else n
    meta = RunMeta(report="quality")
    meta.absorb_adapter_errors(adapter_errors)
    results = []
    tables = {}

    # --- AQL pass rates ---------------------------------------------------
    base = classifier or (lambda m: ALL)
    resolution = resolve(orders, {"aql_inspection": _fact_list(inspection_facts)}, analysis_date,
                         classifier=_scheduled_on(analysis_date, base), period=PERIOD_TO_DATE)
    meta.absorb_resolution(resolution)

    partitions = resolution.by_category()
    parts = _partition_map(partitions, lambda c, states: _aql_results(c, analysis_date, states),
                           max_workers)
    aql = [r for part in parts for r in part]
    if classifier is not None:
        aql.extend(_aql_results(ALL, analysis_date, resolution.states))
    elif not partitions:
        aql.extend(_aql_results(ALL, analysis_date, []))
    results.extend(_order_results(aql, QUALITY_METRICS))

    # --- Top-N defects (rank order) ------------------------------------------
    if defect_facts is not None:
        counts, descriptions = defect_counts(defect_facts, analysis_date, defect_codes,
                                             meta=meta, factory=factory)
        produced = (total_production(production_facts, analysis_date, factory=factory)
                    if production_facts is not None else 0.0)
        if production_facts is None:
            meta.warn("No production data supplied; defect rates are undefined.")
        for code, count in top_n(counts, n):
            results.append(value_result(code, analysis_date, "defect_count", count))
            results.append(metric_result(code, analysis_date, "defect_rate", count, produced))
        pareto = pareto_table(counts, total=produced, n=n, label="Defect Code")
        pareto.insert(2, "Description", pareto["Defect Code"].map(lambda c: descriptions.get(c, "")))
        pareto["Total Production"] = produced
        tables["Top Defects"] = pareto
        if not counts:
            meta.info_messages.append("No defects recorded for the analysis date.")

    return _finish("quality", analysis_date, as_of, results, meta, tables=tables)


# ---------------------------------------------------------------------------
# Order completion status
# ---------------------------------------------------------------------------
def order_status(load_plan, progress_facts, as_of, country=None, building=None):
    """Completion status of orders on the latest load plan version.

    load_plan: MasterRecords per order (plan_version, country, building_code).
    progress_facts: ORDER_PROGRESS_FEED facts (lot vs. assembly-end quantity
        per line), counted up to the as-of date.
    Returns a DataFrame: Order, Line, Country, Target Quantity, Completed
    Quantity, Completion %, Status.
    """
    as_of_date = _as_date(as_of)
    plan = list(load_plan or [])
    if not plan:
        raise EmptyMasterSetError("Load plan is empty")

    versions = [v for v in (_attr_number(m, "plan_version") for m in plan) if has_value(v)]
    latest = max(versions) if versions else None
    orders = {}
    for m in plan:
        if latest is not None and _attr_number(m, "plan_version") != latest:
            continue
        if building is not None and str(m.get("building_code", "")).strip().upper() != str(building).upper():
            continue
        if country is not None and str(m.get("country", "")).strip().upper() != str(country).upper():
            continue
        orders[m.entity_id] = m

    columns = ["Order", "Line", "Country", "Target Quantity", "Completed Quantity",
               "Completion %", "Status"]
    facts = [f for f in _fact_list(progress_facts)
             if f.entity_id in orders and f.period_date <= as_of_date]
    if not facts:
        return pd.DataFrame(columns=columns)

    df = facts_to_frame(facts)
    for col in ["line_code", "lot_quantity", "assembly_end_quantity"]:
        if col not in df.columns:
            df[col] = None
    df["line_code"] = df["line_code"].fillna("")
    df["lot_quantity"] = pd.to_numeric(df["lot_quantity"], errors="coerce").fillna(0)
    df["assembly_end_quantity"] = pd.to_numeric(df["assembly_end_quantity"], errors="coerce").fillna(0)
    g = (
        df.groupby(["entity_id", "line_code"])
        .agg(target=("lot_quantity", "sum"), completed=("assembly_end_quantity", "sum"))
        .reset_index()
        .sort_values(["entity_id", "line_code"])
    )

    rows = []
    for _, row in g.iterrows():
        target = float(row["target"])
        completed = float(row["completed"])
        pct = metric_result(row["entity_id"], as_of_date, "completion_pct", completed, target).value
        rows.append({
            "Order": row["entity_id"],
            "Line": row["line_code"],
            "Country": orders[row["entity_id"]].get("country", ""),
            "Target Quantity": target,
            "Completed Quantity": completed,
            "Completion %": None if is_undefined(pct) else round(pct, 1),
            "Status": "Complete" if target > 0 and completed >= target else "In Progress",
        })
    return pd.DataFrame(rows, columns=columns)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Operational KPI analyzer")
    p.add_argument("report", choices=["attendance", "production", "quality"])
    p.add_argument("--masters", required=True, help="Master/reference data file")
    p.add_argument("--facts", required=True, help="Fact feed file (attendance, scans, inspections)")
    p.add_argument("--date", help="Analysis date (YYYY-MM-DD); defaults to --as-of's date")
    p.add_argument("--as-of", help="Analysis time for shift arithmetic (production)")
    p.add_argument("--schedule", help="Shift schedule file (production)")
    p.add_argument("--labor-content", help="Labor content master file (production)")
    p.add_argument("--baseline", type=float, default=None, help="Efficiency baseline constant")
    p.add_argument("--shift", help="Only count attendance for shifts starting with this value")
    p.add_argument("--defects", help="Defect log file (quality)")
    p.add_argument("--defect-codes", help="Defect code master file (quality)")
    p.add_argument("--production", help="Production scan file for defect-rate denominators (quality)")
    p.add_argument("--top", type=int, default=None, help="Top-N defects")
    p.add_argument("--load-plan", help="Load plan file for order completion status (quality)")
    p.add_argument("--progress", help="Order progress feed file (quality)")
    p.add_argument("--country", help="Only report orders for this destination country")
    p.add_argument("--factory", help="Only count lines, scans and defects of this factory")
    p.add_argument("--group-by", help="Master attribute to group lines/orders by")
    p.add_argument("--history", help=f"History log path (default {HISTORY_FILE})")
    p.add_argument("--save-history", action="store_true", help="Append this run to the history log")
    p.add_argument("--output", help="Excel report path")
    p.add_argument("--workers", type=int, default=None, help="Thread pool size for partitions")
    return p


def _run_from_args(args):
    if not args.date and not args.as_of:
        raise SystemExit("--date or --as-of is required")
    as_of = parse_timestamp(args.as_of) if args.as_of else parse_timestamp(args.date)
    analysis_date = parse_timestamp(args.date).date() if args.date else as_of.date()
    group = attribute_classifier(args.group_by) if args.group_by else None

    if args.report == "attendance":
        masters, master_errors = load_masters(load_feed_file(args.masters), "employee_id",
                                              source="employee_master")
        facts, errors = normalize(load_feed_file(args.facts), ATTENDANCE_FEED)
        history = load_history(args.history, report="attendance") if (args.history or args.save_history) else None
        return attendance_report(masters, facts, analysis_date, classifier=group, shift=args.shift,
                                 history=history, window=TREND_WINDOW, max_workers=args.workers,
                                 adapter_errors=master_errors + errors, as_of=as_of)

    if args.report == "production":
        if not args.schedule:
            raise SystemExit("--schedule is required for the production report")
        masters, master_errors = load_masters(load_feed_file(args.masters), "line_code",
                                              source="line_plan")
        facts, errors = normalize(load_feed_file(args.facts), PRODUCTION_SCAN_FEED)
        schedule, sched_errors = build_schedules(load_feed_file(args.schedule))
        labor = {}
        if args.labor_content:
            lc_masters, lc_errors = load_masters(load_feed_file(args.labor_content), "article",
                                                 source="labor_content")
            labor = labor_content_lookup(lc_masters)
            errors = errors + lc_errors
        return production_report(masters, facts, schedule, as_of, labor_content=labor,
                                 baseline=args.baseline, classifier=group,
                                 max_workers=args.workers,
                                 factory=args.factory,
                                 adapter_errors=master_errors + errors + sched_errors)

    masters, master_errors = load_masters(load_feed_file(args.masters), "po_number",
                                          source="export_schedule")
    facts, errors = normalize(load_feed_file(args.facts), INSPECTION_FEED)
    defect_facts = defect_codes = production_facts = None
    if args.defects:
        defect_facts, d_errors = normalize(load_feed_file(args.defects), DEFECT_FEED)
        errors = errors + d_errors
    if args.defect_codes:
        defect_codes, c_errors = load_masters(load_feed_file(args.defect_codes), "defect_code",
                                              source="defect_code_master")
        errors = errors + c_errors
    if args.production:
        production_facts, p_errors = normalize(load_feed_file(args.production), PRODUCTION_SCAN_FEED)
        errors = errors + p_errors
    run = quality_report(masters, facts, analysis_date, defect_facts=defect_facts,
                         production_facts=production_facts, defect_codes=defect_codes,
                         n=args.top, classifier=group, max_workers=args.workers,
                         adapter_errors=master_errors + errors, as_of=as_of,
                         factory=args.factory)
    if args.load_plan and args.progress:
        plan, plan_errors = load_masters(load_feed_file(args.load_plan), "po_number",
                                         source="load_plan")
        progress, progress_errors = normalize(load_feed_file(args.progress), ORDER_PROGRESS_FEED)
        run.meta.absorb_adapter_errors(plan_errors + progress_errors)
        run.tables["Order Status"] = order_status(plan, progress, as_of, country=args.country)
    return run


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    args = _build_parser().parse_args(argv)

    try:
        run = _run_from_args(args)
    except EmptyMasterSetError as exc:
        print(f"Error: {exc}. Run aborted, retry when master data is available.")
        return 2

    output_path = args.output or os.path.abspath(
        f"{run.report}_kpi_{run.analysis_date.strftime('%Y%m%d')}.xlsx"
    )
    write_excel(run, output_path)

    if args.save_history:
        save_run(run, args.history)

    # Console summary
    print("\n" + "=" * 60)
    print(f"{run.report.upper()} KPIs: {run.analysis_date.isoformat()}")
    print("=" * 60)
    for category in run.categories():
        print(f"\n  --- {category} ---")
        for r in run.results:
            if r.category != category:
                continue
            shown = "no data" if is_undefined(r.value) else f"{r.value:,.2f}"
            print(f"    {r.metric}: {shown}")

    if "Top Defects" in run.tables and len(run.tables["Top Defects"]) > 0:
        print("\nTOP DEFECTS:")
        for _, row in run.tables["Top Defects"].iterrows():
            print(f"  #{row['Rank']} {row['Defect Code']} {row['Description']}: {row['Count']:,.0f}")

    print("\nRUN HEALTH:")
    for k, v in run.meta.to_record().items():
        if k != "report":
            print(f"  {k}: {v}")
    for msg in run.meta.warning_messages:
        print(f"  WARNING: {msg}")

    print(f"\nFull report: {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
