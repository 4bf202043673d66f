"""
Tests for shift-calendar arithmetic and schedule building.

Run: python -m pytest test_shift_calendar.py -v
"""

from datetime import date, datetime, time

import pytest

from canonical_schema import ShiftSegment, ShiftWindow
from shared import StaleScheduleError
from shift_calendar import (
    break_minutes, build_schedules, elapsed_and_scheduled, elapsed_minutes,
    find_window, parse_clock, scheduled_minutes,
)


def at(hh, mm=0, day=19):
    return datetime(2021, 2, day, hh, mm)


# =====================================================================
# Elapsed vs. scheduled time
# =====================================================================

class TestElapsed:

    def test_scheduled_excludes_break(self, two_segment_schedule):
        window = two_segment_schedule[("L1", date(2021, 2, 19))]
        assert scheduled_minutes(window) == 480
        assert break_minutes(window) == 60

    def test_before_shift(self, two_segment_schedule):
        assert elapsed_and_scheduled("L1", at(6, 0), two_segment_schedule) == (0, 480)

    def test_inside_first_segment(self, two_segment_schedule):
        elapsed, _ = elapsed_and_scheduled("L1", at(9, 30), two_segment_schedule)
        assert elapsed == 120

    def test_frozen_during_break(self, two_segment_schedule):
        at_break_start, _ = elapsed_and_scheduled("L1", at(11, 30), two_segment_schedule)
        mid_break, _ = elapsed_and_scheduled("L1", at(12, 0), two_segment_schedule)
        at_break_end, _ = elapsed_and_scheduled("L1", at(12, 30), two_segment_schedule)
        assert at_break_start == mid_break == at_break_end == 240

    def test_second_segment(self, two_segment_schedule):
        elapsed, _ = elapsed_and_scheduled("L1", at(14, 30), two_segment_schedule)
        assert elapsed == 360

    def test_after_shift_equals_scheduled(self, two_segment_schedule):
        assert elapsed_and_scheduled("L1", at(20, 0), two_segment_schedule) == (480, 480)

    def test_monotonic(self, two_segment_schedule):
        window = two_segment_schedule[("L1", date(2021, 2, 19))]
        values = [elapsed_minutes(window, at(h, m)) for h in range(6, 19) for m in (0, 15, 30, 45)]
        assert values == sorted(values)
        assert all(0 <= v <= 480 for v in values)

    def test_three_segments(self):
        window = ShiftWindow("L2", date(2021, 2, 19), [
            ShiftSegment(at(6), at(8)),
            ShiftSegment(at(8, 30), at(10)),
            ShiftSegment(at(11), at(14)),
        ])
        assert scheduled_minutes(window) == 120 + 90 + 180
        assert break_minutes(window) == 30 + 60
        assert elapsed_minutes(window, at(10, 30)) == 210
        assert elapsed_minutes(window, at(12)) == 270

    def test_overnight_window(self):
        window = ShiftWindow("L3", date(2021, 2, 19), [
            ShiftSegment(at(22), at(2, day=20)),
            ShiftSegment(at(2, 30, day=20), at(6, day=20)),
        ])
        schedule = {("L3", date(2021, 2, 19)): window}
        elapsed, scheduled = elapsed_and_scheduled("L3", at(3, 0, day=20), schedule)
        assert scheduled == 450
        assert elapsed == 270

    def test_missing_schedule_is_stale(self, two_segment_schedule):
        with pytest.raises(StaleScheduleError) as exc_info:
            find_window("L9", at(9), two_segment_schedule)
        assert exc_info.value.line == "L9"

    def test_yesterdays_closed_window_is_stale(self, two_segment_schedule):
        with pytest.raises(StaleScheduleError):
            elapsed_and_scheduled("L1", at(9, day=20), two_segment_schedule)

    def test_open_overnight_window_beats_todays_later_shift(self):
        schedule = {
            ("L1", date(2021, 2, 18)): ShiftWindow("L1", date(2021, 2, 18), [
                ShiftSegment(at(22, day=18), at(6)),
            ]),
            ("L1", date(2021, 2, 19)): ShiftWindow("L1", date(2021, 2, 19), [
                ShiftSegment(at(7), at(15)),
            ]),
        }
        assert elapsed_and_scheduled("L1", at(2), schedule) == (240, 480)
        assert find_window("L1", at(2), schedule).work_date == date(2021, 2, 18)
        # Once the overnight segment closes, today's window applies
        assert elapsed_and_scheduled("L1", at(6, 30), schedule) == (0, 480)
        assert elapsed_and_scheduled("L1", at(8), schedule) == (60, 480)


class TestShiftWindow:

    def test_segments_sorted(self):
        window = ShiftWindow("L1", date(2021, 2, 19), [
            ShiftSegment(at(12, 30), at(16, 30)),
            ShiftSegment(at(7, 30), at(11, 30)),
        ])
        assert window.start == at(7, 30)
        assert window.end == at(16, 30)

    def test_overlap_rejected(self):
        with pytest.raises(ValueError):
            ShiftWindow("L1", date(2021, 2, 19), [
                ShiftSegment(at(7), at(12)),
                ShiftSegment(at(11), at(15)),
            ])

    def test_zero_length_rejected(self):
        with pytest.raises(ValueError):
            ShiftWindow("L1", date(2021, 2, 19), [ShiftSegment(at(7), at(7))])


# =====================================================================
# Building schedules from provider rows
# =====================================================================

class TestBuildSchedules:

    @pytest.mark.parametrize("raw, expected", [
        ("0730", time(7, 30)),
        ("07:30", time(7, 30)),
        ("7:30", time(7, 30)),
        (730, time(7, 30)),
        ("073000", time(7, 30)),
        ("2400", time(0, 0)),
        (time(16, 30), time(16, 30)),
    ])
    def test_parse_clock(self, raw, expected):
        assert parse_clock(raw) == expected

    def test_parse_clock_junk(self):
        with pytest.raises(ValueError):
            parse_clock("lunch")

    def test_two_segments_with_break(self):
        rows = [
            {"Line Code": "L1", "Work Date": "20210219", "Time Type": 0, "Time Sequence": 1,
             "Time From": "0730", "Time To": "1130"},
            {"Line Code": "L1", "Work Date": "20210219", "Time Type": 0, "Time Sequence": 3,
             "Time From": "1230", "Time To": "1630"},
            {"Line Code": "L1", "Work Date": "20210219", "Time Type": 1, "Time Sequence": 2,
             "Time From": "1130", "Time To": "1230"},
        ]
        schedule, errors = build_schedules(rows)
        assert errors == []
        window = schedule[("L1", date(2021, 2, 19))]
        assert scheduled_minutes(window) == 480
        assert len(window.segments) == 2

    def test_duplicate_rows_collapse(self):
        row = {"line_code": "L1", "work_date": "2021-02-19", "time_from": "0800", "time_to": "1200"}
        schedule, _ = build_schedules([row, dict(row)])
        assert scheduled_minutes(schedule[("L1", date(2021, 2, 19))]) == 240

    def test_overnight_segment(self):
        rows = [{"line_code": "L3", "work_date": "2021-02-19", "time_from": "2200", "time_to": "0600"}]
        schedule, _ = build_schedules(rows)
        window = schedule[("L3", date(2021, 2, 19))]
        assert window.end == at(6, day=20)
        assert scheduled_minutes(window) == 480

    def test_bad_row_drops_that_line_day(self):
        rows = [
            {"line_code": "L1", "work_date": "2021-02-19", "time_from": "0730", "time_to": "1130"},
            {"line_code": "L1", "work_date": "2021-02-19", "time_from": "lunch", "time_to": "1630"},
            {"line_code": "L2", "work_date": "2021-02-19", "time_from": "0730", "time_to": "1130"},
        ]
        schedule, errors = build_schedules(rows)
        assert ("L1", date(2021, 2, 19)) not in schedule
        assert ("L2", date(2021, 2, 19)) in schedule
        assert len(errors) == 1

    def test_non_mapping_row_isolated(self):
        rows = [
            None,
            {"line_code": "L1", "work_date": "2021-02-19", "time_from": "0730", "time_to": "1130"},
        ]
        schedule, errors = build_schedules(rows)
        assert ("L1", date(2021, 2, 19)) in schedule
        assert len(errors) == 1
        assert errors[0].reason == "invalid"
        assert errors[0].row_number == 1

    def test_overlapping_rows_rejected(self):
        rows = [
            {"line_code": "L1", "work_date": "2021-02-19", "time_from": "0700", "time_to": "1200"},
            {"line_code": "L1", "work_date": "2021-02-19", "time_from": "1100", "time_to": "1500"},
        ]
        schedule, errors = build_schedules(rows)
        assert schedule == {}
        assert errors[0].reason == "overlap"
