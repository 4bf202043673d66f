"""
KPI math. Pure functions, no state between calls.

Degenerate inputs return UNDEFINED (a value, not an exception, never NaN):
  rate(x, 0)                 -> UNDEFINED
  productivity(x, 0, h)      -> UNDEFINED
  productivity(x, w, 0)      -> UNDEFINED
Any UNDEFINED operand propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from canonical_schema import MetricResult
from shared import NO_VALUE, UNDEFINED, has_value, is_undefined


def _num(value):
    """float, or UNDEFINED for a missing / undefined operand."""
    if is_undefined(value) or value is NO_VALUE or value is None:
        return UNDEFINED
    if not has_value(value):
        return UNDEFINED
    return float(value)


def rate(numerator, denominator):
    """numerator / denominator * 100. UNDEFINED when the denominator is not positive."""
    n = _num(numerator)
    d = _num(denominator)
    if is_undefined(n) or is_undefined(d) or d <= 0:
        return UNDEFINED
    return n / d * 100.0


def dynamic_target(full_period_target, rate_per_hour, scheduled_hours, elapsed_hours):
    """Time-proportional quota: min(full target, elapsed hours * rate).

    Elapsed is clamped to [0, scheduled_hours], so the result never
    decreases as time passes and never exceeds the full-period target.
    """
    full = _num(full_period_target)
    r = _num(rate_per_hour)
    elapsed = _num(elapsed_hours)
    if is_undefined(full) or is_undefined(r) or is_undefined(elapsed):
        return UNDEFINED
    elapsed = max(elapsed, 0.0)
    sched = _num(scheduled_hours)
    if not is_undefined(sched):
        elapsed = min(elapsed, max(sched, 0.0))
    return max(min(full, elapsed * max(r, 0.0)), 0.0)


def productivity(output, workers, elapsed_hours):
    """Output per worker per hour (PPH)."""
    out = _num(output)
    w = _num(workers)
    h = _num(elapsed_hours)
    if is_undefined(out) or is_undefined(w) or is_undefined(h) or w <= 0 or h <= 0:
        return UNDEFINED
    return out / w / h


def efficiency_percent(avg_unit_content, productivity_value, baseline_constant):
    """Labor-content efficiency: content * PPH / baseline * 100."""
    content = _num(avg_unit_content)
    pph = _num(productivity_value)
    base = _num(baseline_constant)
    if is_undefined(content) or is_undefined(pph) or is_undefined(base) or base <= 0:
        return UNDEFINED
    return content * pph / base * 100.0


def mean_or_undefined(values):
    nums = [float(v) for v in values if has_value(v)]
    if not nums:
        return UNDEFINED
    return sum(nums) / len(nums)


# ---------------------------------------------------------------------------
# Pass rates: always both forms
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PassRates:
    """Count-weighted and quantity-weighted pass rate over one partition.

    Records whose pass flag is missing (never inspected) stay in both
    denominators but are neither passed nor failed.
    """

    total_count: int
    passed_count: int
    failed_count: int
    uninspected_count: int
    total_quantity: float
    passed_quantity: float
    failed_quantity: float
    count_rate: Any
    volume_rate: Any

    def to_record(self):
        return {
            "total_count": self.total_count,
            "passed_count": self.passed_count,
            "failed_count": self.failed_count,
            "uninspected_count": self.uninspected_count,
            "total_quantity": self.total_quantity,
            "passed_quantity": self.passed_quantity,
            "failed_quantity": self.failed_quantity,
            "count_rate": None if is_undefined(self.count_rate) else self.count_rate,
            "volume_rate": None if is_undefined(self.volume_rate) else self.volume_rate,
        }


def pass_rates(records, passed, quantity):
    """Compute PassRates over `records`.

    passed: record -> True / False / NO_VALUE (not inspected)
    quantity: record -> number (missing counts as 0 volume)
    """
    total = passed_n = failed_n = uninspected = 0
    total_q = passed_q = failed_q = 0.0
    for rec in records:
        q = _num(quantity(rec))
        q = 0.0 if is_undefined(q) else q
        flag = passed(rec)
        total += 1
        total_q += q
        if not has_value(flag):
            uninspected += 1
        elif flag:
            passed_n += 1
            passed_q += q
        else:
            failed_n += 1
            failed_q += q
    return PassRates(
        total_count=total,
        passed_count=passed_n,
        failed_count=failed_n,
        uninspected_count=uninspected,
        total_quantity=total_q,
        passed_quantity=passed_q,
        failed_quantity=failed_q,
        count_rate=rate(passed_n, total),
        volume_rate=rate(passed_q, total_q),
    )


# ---------------------------------------------------------------------------
# Result builders
# ---------------------------------------------------------------------------
def metric_result(category, analysis_date, metric, numerator, denominator):
    """Rate-style MetricResult: value = numerator / denominator * 100."""
    return MetricResult(
        category=category,
        analysis_date=analysis_date,
        metric=metric,
        value=rate(numerator, denominator),
        numerator=numerator,
        denominator=denominator,
    )


def value_result(category, analysis_date, metric, value):
    """Plain-value MetricResult (counts, targets, PPH...)."""
    v = _num(value) if not isinstance(value, bool) else float(value)
    return MetricResult(category=category, analysis_date=analysis_date, metric=metric, value=v)
