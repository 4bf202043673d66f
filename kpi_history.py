"""
KPI history log
================
history.jsonl-style append-only log: one line per run, holding every
MetricResult of that run plus the run health counts.

Reruns of the same (report, analysis_date) append again; readers keep the
last write per key, so the log itself never needs rewriting.

Dependencies: json, pandas.
"""

import json
import os

import pandas as pd

from ranking import moving_average
from shared import HISTORY_FILE, TREND_WINDOW, UNDEFINED


# =========================================================================
# Write
# =========================================================================

def save_run(run, history_file=None):
    """Append one run to the log. Returns the record written."""
    history_file = history_file or HISTORY_FILE
    record = {
        "run_id": f"{run.report}:{run.analysis_date.isoformat()}:{run.as_of.isoformat()}",
        "report": run.report,
        "analysis_date": run.analysis_date.isoformat(),
        "as_of": run.as_of.isoformat(),
        "meta": run.meta.to_record(),
        "results": [r.to_record() for r in run.results],
    }
    directory = os.path.dirname(os.path.abspath(history_file))
    os.makedirs(directory, exist_ok=True)
    with open(history_file, "a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")
    return record


# =========================================================================
# Read
# =========================================================================

def load_history(history_file=None, report=None):
    """Read the log into one row per stored MetricResult.

    Returns a DataFrame (empty when there is no history) with columns
    report, analysis_date, as_of, category, metric, value, undefined.
    Only the last run per (report, analysis_date) is kept.
    """
    history_file = history_file or HISTORY_FILE
    columns = ["report", "analysis_date", "as_of", "category", "metric", "value", "undefined"]
    if not os.path.exists(history_file) or os.path.getsize(history_file) == 0:
        return pd.DataFrame(columns=columns)

    latest = {}
    with open(history_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            rec = json.loads(line)
            if report is not None and rec.get("report") != report:
                continue
            latest[(rec["report"], rec["analysis_date"])] = rec

    rows = []
    for (rpt, day), rec in sorted(latest.items()):
        for r in rec.get("results", []):
            rows.append({
                "report": rpt,
                "analysis_date": pd.Timestamp(day).date(),
                "as_of": rec.get("as_of"),
                "category": r["category"],
                "metric": r["metric"],
                "value": r.get("value"),
                "undefined": bool(r.get("undefined", False)),
            })
    return pd.DataFrame(rows, columns=columns)


def metric_series(history, category, metric, before=None):
    """Values of one metric for one category, oldest first.

    `before` excludes snapshots on or after that date (so today's value
    can be appended by the caller). Undefined snapshots come back as
    UNDEFINED.
    """
    if history is None or len(history) == 0:
        return []
    h = history[(history["category"] == category) & (history["metric"] == metric)]
    if before is not None:
        h = h[h["analysis_date"] < before]
    h = h.sort_values("analysis_date")
    return [UNDEFINED if u else v for v, u in zip(h["value"], h["undefined"])]


def trailing_average(history, category, metric, current, analysis_date, window=None):
    """Moving average of prior snapshots plus today's value."""
    window = window or TREND_WINDOW
    series = metric_series(history, category, metric, before=analysis_date)
    return moving_average(series + [current], window)
