"""Top-N Pareto ranking and moving averages over stored snapshots."""

from __future__ import annotations

import pandas as pd

from shared import UNDEFINED, has_value


def _pairs(categories_with_counts):
    if isinstance(categories_with_counts, dict):
        items = categories_with_counts.items()
    elif isinstance(categories_with_counts, pd.Series):
        items = categories_with_counts.items()
    else:
        items = categories_with_counts
    return [(cat, float(count)) for cat, count in items]


def _rank_key(item):
    category, count = item
    return (-count, str(category))


def top_n(categories_with_counts, n):
    """Categories ordered by count descending, ties by category id ascending.

    Accepts a mapping, a Series, or (category, count) pairs. Returns at
    most `n` (category, count) pairs.
    """
    if n is None or n <= 0:
        return []
    return sorted(_pairs(categories_with_counts), key=_rank_key)[:n]


def pareto_table(categories_with_counts, total=None, n=None, label="Category"):
    """Pareto table: count, % of total and cumulative %.

    `total` is the base for the share columns (e.g. total units produced);
    defaults to the sum of the counts. Undefined shares show as None.
    """
    ranked = sorted(_pairs(categories_with_counts), key=_rank_key)
    if n is not None:
        ranked = ranked[:max(n, 0)]
    df = pd.DataFrame(ranked, columns=[label, "Count"])
    base = float(total) if total is not None else float(sum(c for _, c in _pairs(categories_with_counts)))
    if base > 0:
        df["% of Total"] = (df["Count"] / base * 100).round(2)
        df["Cumulative %"] = (df["Count"].cumsum() / base * 100).round(2)
    else:
        df["% of Total"] = None
        df["Cumulative %"] = None
    df.insert(0, "Rank", range(1, len(df) + 1))
    return df


def moving_average(history, window_size):
    """Mean of the most recent `window_size` snapshots, current one last.

    Fewer snapshots than the window -> mean of what exists. Missing /
    undefined snapshots inside the window are skipped. UNDEFINED when
    nothing is left to average.
    """
    if window_size < 1:
        raise ValueError("window_size must be at least 1")
    window = list(history)[-window_size:]
    values = [float(v) for v in window if has_value(v)]
    if not values:
        return UNDEFINED
    return sum(values) / len(values)


def rolling_average(series, window_size):
    """Trailing average for every point of a series
    (ROWS BETWEEN window_size-1 PRECEDING AND CURRENT ROW)."""
    if window_size < 1:
        raise ValueError("window_size must be at least 1")
    s = pd.to_numeric(pd.Series(series, dtype=object).map(lambda v: v if has_value(v) else None),
                      errors="coerce")
    return s.rolling(window=window_size, min_periods=1).mean()
