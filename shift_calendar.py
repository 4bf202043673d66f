"""
Shift calendar: scheduled vs. elapsed work time per line.

A line's day is an ordered list of work segments; the gaps between them
are breaks. Elapsed time only accrues inside segments:

    07:30-11:30  work   -> elapsed grows
    11:30-12:30  break  -> elapsed frozen
    12:30-16:30  work   -> elapsed grows again
    after 16:30         -> elapsed == scheduled

Any number of segments per day is supported. A segment whose end clock
time is not after its start crosses midnight (3rd shift).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, time, timedelta

from canonical_schema import ShiftSegment, ShiftWindow
from data_normalization import frame_to_records
from parse_feeds import normalize_entity_id, parse_number, parse_timestamp, source_record
from shared import SchemaError, StaleScheduleError, has_value

logger = logging.getLogger(__name__)

REGULAR_TIME_TYPE = 0


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------
def scheduled_minutes(window):
    """Sum of segment durations; break gaps excluded."""
    return sum(seg.minutes for seg in window.segments)


def elapsed_minutes(window, as_of):
    """Scheduled minutes that have passed by `as_of`. Never negative,
    never above scheduled_minutes(window)."""
    total = 0.0
    for seg in window.segments:
        if as_of <= seg.start:
            break
        hi = min(as_of, seg.end)
        total += (hi - seg.start).total_seconds() / 60.0
    return min(max(total, 0.0), scheduled_minutes(window))


def break_minutes(window):
    return sum(
        (nxt.start - prev.end).total_seconds() / 60.0
        for prev, nxt in zip(window.segments, window.segments[1:])
    )


def find_window(line, as_of_time, schedule):
    """Window in force for a line at `as_of_time`.

    The previous work date's window wins while its overnight segment is
    still open and today's window has not started yet. Otherwise the
    as-of date's window applies.
    """
    line = str(line)
    window = schedule.get((line, as_of_time.date()))
    prev = schedule.get((line, as_of_time.date() - timedelta(days=1)))
    if prev is not None and prev.end is not None and prev.end > as_of_time:
        if window is None or window.start is None or as_of_time < window.start:
            return prev
    if window is not None:
        return window
    raise StaleScheduleError(line, as_of_time.date())


def elapsed_and_scheduled(line, as_of_time, schedule):
    """(elapsed_minutes, scheduled_minutes) for `line` at `as_of_time`.

    Raises StaleScheduleError when no schedule exists for the line/day.
    """
    window = find_window(line, as_of_time, schedule)
    return elapsed_minutes(window, as_of_time), scheduled_minutes(window)


# ---------------------------------------------------------------------------
# Building schedules from the schedule provider
# ---------------------------------------------------------------------------
def parse_clock(val):
    """'0730', '07:30', '7:30', 730, time(7, 30) -> time(7, 30)."""
    if isinstance(val, time):
        return val
    if isinstance(val, datetime):
        return val.time()
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        if not float(val).is_integer():
            raise ValueError(f"clock value {val!r} is not HHMM")
        text = f"{int(val):04d}"
    else:
        text = str(val).strip().replace(":", "")
        if text.isdigit() and len(text) in (3, 4):
            text = text.zfill(4)
    if len(text) == 6 and text.isdigit():
        text = text[:4]
    if len(text) != 4 or not text.isdigit():
        raise ValueError(f"unrecognized clock value {val!r}")
    hh, mm = int(text[:2]), int(text[2:])
    if hh == 24 and mm == 0:
        return time(0, 0)
    return time(hh, mm)


def build_schedules(raw_rows, regular_time_type=REGULAR_TIME_TYPE):
    """Build {(line, work_date): ShiftWindow} from schedule rows.

    Expected fields: line_code, work_date, time_from, time_to and optionally
    time_type (only regular work rows become segments) and time_sequence.
    Returns (schedule, errors). A line/day with an unusable row or
    overlapping segments is left out; lookups for it raise
    StaleScheduleError.
    """
    segments = defaultdict(set)
    broken = set()
    errors = []
    for i, raw in enumerate(frame_to_records(raw_rows)):
        line = None
        work_date = None
        try:
            rec = source_record(raw, source="shift_schedule", row_number=i + 1)
            line = normalize_entity_id(rec.get("line_code"))
            if line is None:
                raise SchemaError("missing line_code", source="shift_schedule",
                                  row_number=i + 1, reason="missing_entity")
            time_type = parse_number(rec.get("time_type"))
            if has_value(time_type) and int(time_type) != regular_time_type:
                continue
            work_ts = parse_timestamp(rec.get("work_date"))
            if work_ts is None:
                raise ValueError("missing work_date")
            work_date = work_ts.date()
            t_from = parse_clock(rec.get("time_from"))
            t_to = parse_clock(rec.get("time_to"))
        except SchemaError as exc:
            errors.append(exc)
            continue
        except (TypeError, ValueError) as exc:
            errors.append(SchemaError(str(exc), source="shift_schedule",
                                      row_number=i + 1, reason="bad_timestamp"))
            if line is not None and work_date is not None:
                broken.add((line, work_date))
            continue

        start = datetime.combine(work_date, t_from)
        end = datetime.combine(work_date, t_to)
        if end <= start:
            end += timedelta(days=1)
        segments[(line, work_date)].add((start, end))

    schedule = {}
    for key, spans in sorted(segments.items()):
        if key in broken:
            continue
        try:
            schedule[key] = ShiftWindow(
                line=key[0], work_date=key[1],
                segments=[ShiftSegment(s, e) for s, e in sorted(spans)],
            )
        except ValueError as exc:
            errors.append(SchemaError(str(exc), source="shift_schedule", reason="overlap"))
            logger.warning("Schedule for line %s on %s rejected: %s", key[0], key[1], exc)
    return schedule, errors
