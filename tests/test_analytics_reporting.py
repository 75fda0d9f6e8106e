"""
Cross-batch report tests (YTD, throughput, leaderboard, operational reports
and CSV export).
"""

from datetime import datetime, timedelta, timezone

import pytest

from refinery.auth import CurrentUser
from refinery.core.exceptions import ValidationError
from refinery.models import db
from refinery.models.batch import Batch
from refinery.services import analytics_reporting, batch_service, event_log
from refinery.utils.helpers import as_utc

GOOD_STEPS = [
    {"supplier": "Mine A"},
    {"measured_mass": 100000},
    {"purity": 99.5},
    {"output_weight": 99000},
    {"pour_weight": 600},
    {},
]

LOSSY_STEPS = [
    {},
    {"measured_mass": 10000},
    {"purity": 90},
    {"output_weight": 8800},
    {},
    {},
]


def _run(number, steps=GOOD_STEPS, user=None):
    batch = batch_service.create_batch(number, "gold", user)
    for data in steps:
        batch = batch_service.complete_step(batch.id, user, step_data=data)
    assert batch.status == "completed"
    return batch


def _year(batch):
    return as_utc(batch.completed_at).year


PAST = datetime(2000, 1, 1, tzinfo=timezone.utc)
FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)
T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _seed_completed(flow, number, user, ftt_hours=None, recovery=None, visits=()):
    """Insert a completed batch with fixed metrics.

    ``visits`` is a list of ``(station, minutes_after_T0)`` step events.
    """
    last = max((m for _, m in visits), default=0)
    batch = Batch(
        batch_number=number, flow_id=flow.id, flow_version=flow.version,
        pipeline="gold", status="completed", completed_node_ids=[],
        created_by=user.id, created_by_name=user.name,
        started_at=T0, completed_at=T0 + timedelta(minutes=last),
        created_at=T0, updated_at=T0,
        ftt_hours=ftt_hours, overall_recovery_percent=recovery,
    )
    db.session.add(batch)
    for station, minutes in visits:
        event_log.append_event(
            batch, "step_completed", user,
            station=station, step=station, timestamp=T0 + timedelta(minutes=minutes),
        )
    db.session.commit()
    return batch


class TestYtd:
    def test_summary_and_series(self, analytics_flow):
        first = _run("AU-1")
        _run("AU-2", LOSSY_STEPS)
        result = analytics_reporting.get_ytd_stats(year=_year(first))

        stats = result["ytd_stats"]
        assert stats["total_batches"] == 2
        assert stats["total_fine_grams"] == pytest.approx(99500 + 9000)
        # +100 on the first batch, 8800 - 9000 = -200 on the second
        assert stats["total_loss_gain_g"] == pytest.approx(-100.0)
        assert stats["max_gain"] == pytest.approx(100.0)
        assert stats["max_loss"] == pytest.approx(-200.0)
        assert stats["spread"] == pytest.approx(300.0)

        assert sum(m["count"] for m in result["monthly_batches"]) == 2
        assert len(result["monthly_batches"]) == 12

        details = result["batch_details"]
        assert [d["sequence"] for d in details] == [1, 2]
        assert details[-1]["cumulative_loss_gain_g"] == pytest.approx(-100.0)

        gold = next(p for p in result["by_pipeline"] if p["pipeline"] == "gold")
        assert gold["batches"] == 2

    def test_pipeline_filter_and_empty_year(self, analytics_flow):
        batch = _run("AU-1")
        assert analytics_reporting.get_ytd_stats(_year(batch), "silver")["ytd_stats"]["total_batches"] == 0
        empty = analytics_reporting.get_ytd_stats(1999)
        assert empty["ytd_stats"]["total_batches"] == 0
        assert empty["ytd_stats"]["avg_recovery_percent"] == 0.0

    def test_year_out_of_range(self):
        with pytest.raises(ValidationError, match="year"):
            analytics_reporting.get_ytd_stats(0)


class TestThroughput:
    def test_runs_per_station(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        for _ in range(3):
            batch_service.complete_step(batch.id)
        wip = batch_service.create_batch("AU-2", "gold")
        batch_service.start_batch(wip.id)

        result = analytics_reporting.get_station_throughput()
        by_station = {row["station"]: row for row in result["throughput"]}
        assert set(by_station) == {"station_receiving", "station_casting", "station_packaging"}
        assert all(row["batches_processed"] == 1 for row in by_station.values())
        assert by_station["station_receiving"]["currently_active"] == 1
        assert by_station["station_casting"]["currently_active"] == 0
        assert by_station["station_casting"]["avg_time_hours"] >= 0

    def test_dwell_min_avg_max(self, linear_flow):
        user = CurrentUser(id="alice", name="Alice", role="operator")
        # AU-1: receiving 1 h, casting 2 h; AU-2: receiving 3 h, casting 0.5 h
        _seed_completed(linear_flow, "AU-1", user, visits=[
            ("station_receiving", 0), ("station_receiving", 60),
            ("station_casting", 90), ("station_casting", 210),
        ])
        _seed_completed(linear_flow, "AU-2", user, visits=[
            ("station_receiving", 0), ("station_receiving", 180),
            ("station_casting", 200), ("station_casting", 230),
        ])
        rows = {r["station"]: r for r in analytics_reporting.get_station_throughput()["throughput"]}

        receiving = rows["station_receiving"]
        assert receiving["batches_processed"] == 2
        assert receiving["min_time_hours"] == pytest.approx(1.0)
        assert receiving["avg_time_hours"] == pytest.approx(2.0)
        assert receiving["max_time_hours"] == pytest.approx(3.0)

        casting = rows["station_casting"]
        assert casting["min_time_hours"] == pytest.approx(0.5)
        assert casting["avg_time_hours"] == pytest.approx(1.25)
        assert casting["max_time_hours"] == pytest.approx(2.0)

    def test_date_window(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        for _ in range(3):
            batch_service.complete_step(batch.id)
        assert analytics_reporting.get_station_throughput(date_to=PAST)["total"] == 0
        assert analytics_reporting.get_station_throughput(PAST, FUTURE)["total"] == 3


class TestOperatorPerformance:
    def test_leaderboard_order(self, analytics_flow):
        alice = CurrentUser(id="alice", name="Alice", role="operator")
        bob = CurrentUser(id="bob", name="Bob", role="operator")
        _run("AU-1", user=bob)
        _run("AU-2", user=alice)
        _run("AU-3", LOSSY_STEPS, user=alice)

        result = analytics_reporting.get_operator_performance()
        assert result["ftt_target_hours"] == 36.0
        ops = result["operators"]
        assert [o["operator_id"] for o in ops] == ["alice", "bob"]
        top = ops[0]
        assert top["operator_name"] == "Alice"
        assert top["total_batches"] == 2
        assert top["batches_with_gain"] == 1
        assert top["batches_with_loss"] == 1
        # Steps complete within seconds, so every FTT is within target
        assert top["on_time_percentage"] == 100.0
        assert 0 <= top["efficiency_score"]

    def test_efficiency_score(self, linear_flow):
        ana = CurrentUser(id="ana", name="Ana", role="operator")
        ben = CurrentUser(id="ben", name="Ben", role="operator")
        _seed_completed(linear_flow, "AU-1", ana, ftt_hours=12.0, recovery=100.0)
        _seed_completed(linear_flow, "AU-2", ana, ftt_hours=48.0, recovery=98.0)
        _seed_completed(linear_flow, "AU-3", ben, ftt_hours=None, recovery=97.0)

        ops = {o["operator_id"]: o for o in analytics_reporting.get_operator_performance()["operators"]}

        # one of two within 36 h, recovery 99 %, 36 / 30 h average FTT
        first = ops["ana"]
        assert first["batches_on_time"] == 1
        assert first["avg_ftt_hours"] == pytest.approx(30.0)
        assert first["avg_recovery"] == pytest.approx(99.0)
        assert first["efficiency_score"] == pytest.approx((0.5 + 0.99 + 1.2) / 3)

        # no FTT at all: the FTT factor and the on-time ratio are both 0
        second = ops["ben"]
        assert second["avg_ftt_hours"] == 0.0
        assert second["on_time_percentage"] == 0.0
        assert second["efficiency_score"] == pytest.approx(0.97 / 3)


class TestOperationalReports:
    def test_batches_in_progress(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold", priority="high")
        batch_service.flag_batch(batch.id, exception_type="quality_concern", reason="porosity")
        batch_service.create_batch("AU-2", "gold")

        result = analytics_reporting.get_batches_in_progress()
        assert result["total"] == 1
        row = result["batches"][0]
        assert row["batch_number"] == "AU-1"
        assert row["status"] == "flagged"
        assert row["flags"] == ["quality_concern"]
        assert row["pending_flags"] == 1
        assert analytics_reporting.get_batches_in_progress(priority="normal")["total"] == 0

    def test_mass_checks_and_threshold(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        batch_service.record_event(
            batch.id, event_type="mass_check",
            data={"measured_mass": 1000.1, "expected_mass": 1000.0, "tolerance": 0.5},
        )
        batch_service.record_event(
            batch.id, event_type="mass_check",
            data={"measured_mass": 950.0, "expected_mass": 1000.0, "tolerance": 0.5},
        )
        result = analytics_reporting.get_mass_check_report()
        assert result["total"] == 2
        flagged = analytics_reporting.get_mass_check_report(variance_threshold=1)
        assert flagged["total"] == 1
        check = flagged["mass_checks"][0]
        assert check["variance_percent"] == pytest.approx(-5.0)
        assert check["within_tolerance"] is False

    def test_exception_report_filters(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        batch_service.flag_batch(batch.id, exception_type="equipment_issue", reason="scale")
        batch_service.flag_batch(batch.id, exception_type="safety_incident", reason="spill")
        batch_service.approve_exception(batch.id, flag_index=0, policy="all")

        all_flags = analytics_reporting.get_exception_report()
        assert all_flags["total"] == 2
        pending = analytics_reporting.get_exception_report(status="pending")
        assert [e["exception_type"] for e in pending["exceptions"]] == ["safety_incident"]
        approved = analytics_reporting.get_exception_report(status="approved")
        assert approved["exceptions"][0]["approved_by"] == "system"
        typed = analytics_reporting.get_exception_report(exception_type="equipment_issue")
        assert typed["total"] == 1

    def test_exception_station_is_where_flag_was_raised(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        batch_service.flag_batch(batch.id, exception_type="other", reason="seal")
        batch_service.approve_exception(batch.id, policy="any")
        batch_service.complete_step(batch.id)
        assert batch_service.get_batch(batch.id)["current_station"] == "station_casting"

        row = analytics_reporting.get_exception_report()["exceptions"][0]
        assert row["station"] == "station_receiving"

    def test_yield_loss_threshold(self, analytics_flow):
        _run("AU-1")
        _run("AU-2", LOSSY_STEPS)
        result = analytics_reporting.get_yield_loss_report()
        assert result["total"] == 2
        assert result["aggregates"]["total_loss_gain"] == pytest.approx(-100.0)
        # AU-2 lost 200 of 9000 fine grams (~2.2 %); AU-1 gained ~0.1 %
        lossy = analytics_reporting.get_yield_loss_report(loss_threshold=1)
        assert [r["batch_number"] for r in lossy["yield_loss"]] == ["AU-2"]

    def test_turnaround(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        for _ in range(3):
            batch_service.complete_step(batch.id)
        result = analytics_reporting.get_turnaround_report()
        assert result["total"] == 1
        row = result["turnaround"][0]
        assert row["total_hours"] == 0.0
        assert row["duration_minutes"] == 0


class TestCsvExport:
    def test_exports_rows(self, linear_flow):
        batch = batch_service.create_batch("AU-1", "gold")
        batch_service.flag_batch(batch.id, exception_type="other", reason="check")
        filename, text = analytics_reporting.export_report_csv("exceptions", pipeline="gold")
        assert filename.startswith("exceptions-") and filename.endswith(".csv")
        lines = text.strip().splitlines()
        assert lines[0].startswith("batch_number,pipeline,flag_index")
        assert len(lines) == 2

    def test_ignores_unrelated_filters(self, linear_flow):
        _, text = analytics_reporting.export_report_csv(
            "batches-in-progress", year=2026, loss_threshold=None,
        )
        assert text == ""

    def test_unknown_report(self):
        with pytest.raises(ValidationError, match="report_type"):
            analytics_reporting.export_report_csv("weather")
