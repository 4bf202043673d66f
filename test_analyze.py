"""
End-to-end tests for the attendance, production and quality report flows.

Run: python -m pytest test_analyze.py -v
"""

from datetime import date, datetime

import pandas as pd
import pytest

from analyze import (
    ALL, attendance_report, labor_content_lookup, main, order_status,
    production_report, quality_report,
)
from shared import UNDEFINED, EmptyMasterSetError, attribute_classifier


DAY = date(2021, 2, 19)


# =====================================================================
# Attendance
# =====================================================================

class TestAttendance:

    def test_terminated_today_excluded_from_denominator(self, make_master, make_fact):
        masters = [
            make_master("E1", org_description="SEWING LINE 1 A"),
            make_master("E2", org_description="SEWING LINE 1 A",
                        terminated_at=datetime(2021, 2, 19, 10)),
        ]
        facts = [make_fact("E1", status="PRS", present=True)]
        run = attendance_report(masters, facts, DAY)
        assert run.value("A-SEWING", "total_active") == 1
        assert run.value("A-SEWING", "present") == 1
        assert run.value("A-SEWING", "absent") == 0
        assert run.value("A-SEWING", "attendance_rate") == 100.0
        assert run.value("A-SEWING", "terminated_today") == 1
        assert run.meta.terminated == 1

    def test_present_plus_absent_equals_total(self, make_master, make_fact):
        masters = [
            make_master(f"E{i}", org_description=desc)
            for i, desc in enumerate(["SEWING 1 A", "SEWING 2 A", "SEWING 3 B",
                                      "ASSEMBLY 1 A", "ASSEMBLY 2 A", "CUTTING 1 A"])
        ]
        facts = [
            make_fact("E0", present=True),
            make_fact("E1", present=False),
            make_fact("E3", present=True),
            make_fact("E5", present=True),
        ]
        run = attendance_report(masters, facts, DAY)
        for category in run.categories():
            total = run.value(category, "total_active")
            assert run.value(category, "present") + run.value(category, "absent") == total
        assert run.value(ALL, "total_active") == 5
        assert run.value(ALL, "present") == 2
        assert run.value(ALL, "no_record") == 2
        assert run.meta.out_of_scope == 1

    def test_no_record_kept_apart_from_absent_status(self, make_master, make_fact):
        masters = [make_master("E1", org_description="SEWING A"),
                   make_master("E2", org_description="SEWING A")]
        run = attendance_report(masters, [make_fact("E1", present=False)], DAY)
        assert run.value("A-SEWING", "absent") == 2
        assert run.value("A-SEWING", "no_record") == 1

    def test_empty_category_rate_is_undefined(self, make_master):
        masters = [make_master("E1", org_description="SEWING A",
                               terminated_at=datetime(2021, 2, 19))]
        run = attendance_report(masters, [], DAY)
        assert run.value("A-SEWING", "total_active") == 0
        assert run.value("A-SEWING", "attendance_rate") is UNDEFINED
        assert run.meta.undefined_metrics >= 1

    def test_orphans_counted_not_aggregated(self, make_master, make_fact):
        masters = [make_master("E1", org_description="SEWING A")]
        facts = [make_fact("E1", present=True), make_fact("E9", present=True)]
        run = attendance_report(masters, facts, DAY)
        assert run.value(ALL, "present") == 1
        assert run.meta.orphan_facts >= 1
        assert any("E9" in w for w in run.meta.warning_messages)

    def test_shift_filter(self, make_master, make_fact):
        masters = [make_master("E1", org_description="SEWING A"),
                   make_master("E2", org_description="SEWING A")]
        facts = [make_fact("E1", present=True, shift="1A"),
                 make_fact("E2", present=True, shift="2A")]
        run = attendance_report(masters, facts, DAY, shift="1")
        assert run.value("A-SEWING", "present") == 1
        assert run.value("A-SEWING", "no_record") == 1

    def test_trailing_termination_average(self, make_master):
        history = pd.DataFrame([
            {"report": "attendance", "analysis_date": date(2021, 2, 17), "as_of": None,
             "category": "A-SEWING", "metric": "terminated_today", "value": 2.0, "undefined": False},
            {"report": "attendance", "analysis_date": date(2021, 2, 18), "as_of": None,
             "category": "A-SEWING", "metric": "terminated_today", "value": 3.0, "undefined": False},
        ])
        masters = [make_master("E1", org_description="SEWING A", terminated_at=datetime(2021, 2, 19))]
        run = attendance_report(masters, [], DAY, history=history)
        assert run.value("A-SEWING", "terminated_today_avg") == pytest.approx(2.0)

    def test_empty_masters_abort(self, make_fact):
        with pytest.raises(EmptyMasterSetError):
            attendance_report([], [make_fact("E1", present=True)], DAY)

    def test_parallel_matches_serial(self, make_master, make_fact):
        masters = [make_master(f"E{i}", org_description=f"SEWING {i} {'ABC'[i % 3]}") for i in range(30)]
        facts = [make_fact(f"E{i}", present=i % 2 == 0) for i in range(0, 30, 3)]
        serial = attendance_report(masters, facts, DAY)
        parallel = attendance_report(masters, facts, DAY, max_workers=4)
        assert [r.to_record() for r in serial.results] == [r.to_record() for r in parallel.results]


# =====================================================================
# Production efficiency
# =====================================================================

class TestProduction:

    def _scans(self, make_fact):
        return [
            make_fact("L1", observed_at=datetime(2021, 2, 19, 9), sequence=0,
                      good_count=30.0, article="A1", production_status="AE"),
            make_fact("L1", observed_at=datetime(2021, 2, 19, 10), sequence=1,
                      good_count=20.0, article="A1", production_status="AE"),
            make_fact("L1", observed_at=datetime(2021, 2, 19, 10), sequence=2,
                      good_count=100.0, article="A1", production_status="WIP"),
        ]

    def test_midday_targets(self, make_master, make_fact, two_segment_schedule):
        plans = [make_master("L1", workers=2, rate_per_worker_hour=10)]
        run = production_report(plans, self._scans(make_fact), two_segment_schedule,
                                datetime(2021, 2, 19, 12, 0), labor_content={"A1": 23.3})
        assert run.value("L1", "scheduled_hours") == 8
        assert run.value("L1", "elapsed_hours") == 4
        assert run.value("L1", "full_target") == 160
        assert run.value("L1", "dynamic_target") == 80
        assert run.value("L1", "actual_output") == 50
        assert run.value("L1", "dynamic_target_pct") == pytest.approx(62.5)
        assert run.value("L1", "target_pph") == pytest.approx(10.0)
        assert run.value("L1", "actual_pph") == pytest.approx(6.25)
        assert run.value("L1", "target_efficiency_pct") == pytest.approx(100.0)
        assert run.value("L1", "actual_efficiency_pct") == pytest.approx(62.5)

    def test_dynamic_target_never_decreases(self, make_master, make_fact, two_segment_schedule):
        plans = [make_master("L1", workers=2, jph=20)]
        values = [
            production_report(plans, [], two_segment_schedule,
                              datetime(2021, 2, 19, h, m)).value("L1", "dynamic_target")
            for h in range(6, 19) for m in (0, 30)
        ]
        assert values == sorted(values)
        assert values[-1] == 160

    def test_before_shift_pph_undefined(self, make_master, two_segment_schedule):
        plans = [make_master("L1", workers=2, jph=20)]
        run = production_report(plans, [], two_segment_schedule, datetime(2021, 2, 19, 6, 0))
        assert run.value("L1", "dynamic_target") == 0
        assert run.value("L1", "actual_pph") is UNDEFINED
        assert run.value("L1", "actual_output") == 0

    def test_missing_schedule_excludes_line(self, make_master, make_fact, two_segment_schedule):
        plans = [make_master("L1", workers=2, jph=20), make_master("L2", workers=3, jph=30)]
        run = production_report(plans, self._scans(make_fact), two_segment_schedule,
                                datetime(2021, 2, 19, 12))
        assert "L2" not in run.categories()
        assert run.meta.stale_schedules == 1
        assert any("L2" in w for w in run.meta.warning_messages)

    def test_explicit_target_output(self, make_master, two_segment_schedule):
        plans = [make_master("L1", workers=2, jph=20, target_output=120)]
        run = production_report(plans, [], two_segment_schedule, datetime(2021, 2, 19, 20))
        assert run.value("L1", "full_target") == 120
        assert run.value("L1", "dynamic_target") == 120

    def test_unknown_labor_content_undefined(self, make_master, make_fact, two_segment_schedule):
        plans = [make_master("L1", workers=2, jph=20)]
        run = production_report(plans, self._scans(make_fact), two_segment_schedule,
                                datetime(2021, 2, 19, 12))
        assert run.value("L1", "actual_efficiency_pct") is UNDEFINED

    def test_group_rollup(self, make_master, make_fact, two_segment_schedule):
        schedule = dict(two_segment_schedule)
        schedule[("L2", DAY)] = two_segment_schedule[("L1", DAY)]
        plans = [make_master("L1", workers=2, jph=20, factory="F1"),
                 make_master("L2", workers=2, jph=20, factory="F1")]
        run = production_report(plans, self._scans(make_fact), schedule,
                                datetime(2021, 2, 19, 20), classifier=attribute_classifier("factory"))
        assert run.value("F1", "full_target") == 320
        assert run.value("F1", "actual_output") == 50

    def test_factory_filter(self, make_master, make_fact, two_segment_schedule):
        schedule = dict(two_segment_schedule)
        schedule[("L2", DAY)] = two_segment_schedule[("L1", DAY)]
        plans = [make_master("L1", workers=2, jph=20, factory="F1"),
                 make_master("L2", workers=2, jph=20, factory="F2")]
        scans = [
            make_fact("L1", sequence=0, good_count=30.0, production_status="AE", factory="F1"),
            make_fact("L2", sequence=1, good_count=40.0, production_status="AE", factory="F2"),
        ]
        run = production_report(plans, scans, schedule, datetime(2021, 2, 19, 20), factory="f1")
        assert run.value("L1", "actual_output") == 30
        assert run.get("L2", "actual_output") is None
        assert run.meta.orphan_facts == 0

    def test_labor_content_lookup(self, make_master):
        lookup = labor_content_lookup([make_master("A1", labor_content="23.3"),
                                       make_master("A2", labor_content="n/a")])
        assert lookup == {"A1": 23.3}


# =====================================================================
# Quality
# =====================================================================

class TestQuality:

    def _orders(self, make_master):
        return [
            make_master("P1", quantity=100, work_date="2021-02-19", country="US"),
            make_master("P2", quantity=300, work_date="2021-02-19", country="US"),
            make_master("P3", quantity=600, work_date="2021-02-19", country="CA"),
            make_master("P4", quantity=1000, work_date="2021-02-19", country="CA"),
            make_master("P5", quantity=50, work_date="2021-02-22", country="US"),
        ]

    def _inspections(self, make_fact):
        return [
            make_fact("P1", observed_at=datetime(2021, 2, 16, 9), passed=False),
            make_fact("P1", observed_at=datetime(2021, 2, 18, 9), passed=True),
            make_fact("P2", observed_at=datetime(2021, 2, 18, 9), passed=False),
            make_fact("P3", observed_at=datetime(2021, 2, 19, 9), passed=True),
        ]

    def test_dual_pass_rates(self, make_master, make_fact):
        run = quality_report(self._orders(make_master), self._inspections(make_fact), DAY)
        assert run.value(ALL, "orders_total") == 4
        assert run.value(ALL, "orders_passed") == 2
        assert run.value(ALL, "orders_failed") == 1
        assert run.value(ALL, "orders_uninspected") == 1
        assert run.value(ALL, "order_pass_rate") == 50.0
        assert run.value(ALL, "volume_pass_rate") == pytest.approx(35.0)
        assert run.meta.out_of_scope == 1

    def test_pass_rates_by_country(self, make_master, make_fact):
        run = quality_report(self._orders(make_master), self._inspections(make_fact), DAY,
                             classifier=attribute_classifier("country"))
        assert run.value("US", "order_pass_rate") == 50.0
        assert run.value("CA", "orders_uninspected") == 1
        assert run.value(ALL, "orders_total") == 4

    def test_no_orders_scheduled(self, make_master, make_fact):
        orders = [make_master("P5", quantity=50, work_date="2021-02-22")]
        run = quality_report(orders, [], DAY)
        assert run.value(ALL, "orders_total") == 0
        assert run.value(ALL, "order_pass_rate") is UNDEFINED

    def _defects(self, make_fact):
        return [
            make_fact("D1", count=12.0),
            make_fact("D2", count=10.0),
            make_fact("D2", count=20.0, sequence=1),
            make_fact("D3", count=58.0),
            make_fact("D4", count=99.0),
            make_fact("D9", count=5.0),
            make_fact("D3", observed_at=datetime(2021, 2, 18, 8), count=500.0),
        ]

    def _production(self, make_fact):
        return [
            make_fact("L1", good_count=600.0, production_status="AE"),
            make_fact("L2", good_count=400.0, production_status="AE"),
            make_fact("L2", good_count=999.0, production_status="WIP"),
        ]

    def _codes(self, make_master):
        return [
            make_master("D1", code_group="QCODE", defect_description="Stitching"),
            make_master("D2", code_group="QCODE", defect_description="Bond gap"),
            make_master("D3", code_group="QCODE", defect_description="Color"),
            make_master("D4", code_group="OTHER", defect_description="Packing"),
        ]

    def test_top_defects(self, make_master, make_fact):
        run = quality_report(self._orders(make_master), [], DAY,
                             defect_facts=self._defects(make_fact),
                             production_facts=self._production(make_fact),
                             defect_codes=self._codes(make_master), n=3)
        defect_rows = [r for r in run.results if r.metric == "defect_count"]
        assert [r.category for r in defect_rows] == ["D3", "D2", "D1"]
        assert [r.value for r in defect_rows] == [58, 30, 12]
        assert run.value("D3", "defect_rate") == pytest.approx(5.8)
        assert run.value("D1", "defect_rate") == pytest.approx(1.2)
        assert run.meta.orphan_facts == 1

        pareto = run.tables["Top Defects"]
        assert list(pareto["Defect Code"]) == ["D3", "D2", "D1"]
        assert list(pareto["Description"]) == ["Color", "Bond gap", "Stitching"]
        assert pareto["Total Production"].iloc[0] == 1000

    def test_defects_without_production_undefined(self, make_master, make_fact):
        run = quality_report(self._orders(make_master), [], DAY,
                             defect_facts=self._defects(make_fact), n=2)
        assert run.value("D3", "defect_rate") is UNDEFINED
        # Without a code master every code counts, D4 included
        assert [r.category for r in run.results if r.metric == "defect_count"] == ["D4", "D3"]

    @pytest.mark.parametrize("with_production", [False, True])
    def test_pareto_share_blank_without_production(self, make_master, make_fact, with_production):
        production = [make_fact("L1", good_count=999.0, production_status="WIP")] if with_production else None
        run = quality_report(self._orders(make_master), [], DAY,
                             defect_facts=self._defects(make_fact), production_facts=production, n=2)
        assert run.value("D3", "defect_rate") is UNDEFINED
        pareto = run.tables["Top Defects"]
        assert list(pareto["Count"]) == [99, 58]
        assert pareto["% of Total"].isna().all()
        assert pareto["Cumulative %"].isna().all()

    def test_factory_scopes_defect_rate(self, make_master, make_fact):
        defects = [
            make_fact("D1", sequence=0, count=10.0, factory="A1"),
            make_fact("D1", sequence=1, count=5.0, factory="A2"),
            make_fact("D2", sequence=2, count=20.0, factory="A2"),
        ]
        production = [
            make_fact("L1", sequence=0, good_count=400.0, production_status="AE", factory="A1"),
            make_fact("L2", sequence=1, good_count=600.0, production_status="AE", factory="A2"),
        ]
        scoped = quality_report(self._orders(make_master), [], DAY, defect_facts=defects,
                                production_facts=production, factory="A1")
        assert scoped.value("D1", "defect_count") == 10
        assert scoped.value("D1", "defect_rate") == pytest.approx(2.5)
        assert scoped.get("D2", "defect_count") is None
        assert scoped.tables["Top Defects"]["Total Production"].iloc[0] == 400

        plant = quality_report(self._orders(make_master), [], DAY, defect_facts=defects,
                               production_facts=production)
        assert plant.value("D1", "defect_count") == 15
        assert plant.value("D1", "defect_rate") == pytest.approx(1.5)

    def test_zero_defects_is_not_missing_data(self, make_master, make_fact):
        run = quality_report(self._orders(make_master), [], DAY, defect_facts=[],
                             production_facts=self._production(make_fact))
        assert len(run.tables["Top Defects"]) == 0
        assert run.meta.warning_messages == []


# =====================================================================
# Order status
# =====================================================================

class TestOrderStatus:

    def test_latest_plan_version(self, make_master, make_fact):
        plan = [
            make_master("P1", plan_version=1, country="US"),
            make_master("P1", plan_version=2, country="US"),
            make_master("P2", plan_version=2, country="CA"),
            make_master("P3", plan_version=1, country="US"),
        ]
        progress = [
            make_fact("P1", line_code="L1", lot_quantity=100.0, assembly_end_quantity=60.0),
            make_fact("P1", line_code="L1", lot_quantity=0.0, assembly_end_quantity=40.0, sequence=1),
            make_fact("P2", line_code="L2", lot_quantity=200.0, assembly_end_quantity=50.0),
            make_fact("P3", line_code="L1", lot_quantity=10.0, assembly_end_quantity=10.0),
        ]
        df = order_status(plan, progress, datetime(2021, 2, 19, 12))
        assert list(df["Order"]) == ["P1", "P2"]
        assert list(df["Status"]) == ["Complete", "In Progress"]
        assert list(df["Completion %"]) == [100.0, 25.0]

        us_only = order_status(plan, progress, datetime(2021, 2, 19, 12), country="US")
        assert list(us_only["Order"]) == ["P1"]

    def test_no_progress(self, make_master):
        df = order_status([make_master("P1", plan_version=1)], [], DAY)
        assert df.empty
        assert "Status" in df.columns

    def test_empty_plan_aborts(self):
        with pytest.raises(EmptyMasterSetError):
            order_status([], [], DAY)


# =====================================================================
# CLI
# =====================================================================

class TestMain:

    def test_empty_masters_exit_code(self, tmp_path):
        masters = tmp_path / "employees.csv"
        masters.write_text("Employee ID,Org Description\n")
        facts = tmp_path / "attendance.csv"
        facts.write_text("Employee ID,Attendance Date,Attendance Status\nE1,2021-02-19,PRS\n")
        code = main(["attendance", "--masters", str(masters), "--facts", str(facts),
                     "--date", "2021-02-19", "--output", str(tmp_path / "out.xlsx")])
        assert code == 2
        assert not (tmp_path / "out.xlsx").exists()

    def test_quality_run_writes_report(self, tmp_path):
        orders = tmp_path / "orders.csv"
        orders.write_text("PO Number,Quantity,Export Date\nP1,100,2021-02-19\nP2,300,2021-02-19\n")
        aql = tmp_path / "aql.csv"
        aql.write_text("PO Number,Inspection Result,Timestamp\nP1,Y,2021-02-18 10:00\n")
        history = tmp_path / "history.jsonl"
        output = tmp_path / "quality.xlsx"
        code = main(["quality", "--masters", str(orders), "--facts", str(aql),
                     "--date", "2021-02-19", "--output", str(output),
                     "--history", str(history), "--save-history"])
        assert code == 0
        assert output.exists()
        assert history.read_text().count("\n") == 1
