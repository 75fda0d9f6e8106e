"""
Cross-batch analytics reports.

Read-only rollups over batches. None of these functions mutate state or
take locks; completed batches are frozen in their numeric fields.

    get_ytd_stats              — year summary, monthly buckets, per-batch series
    get_station_throughput     — dwell time per station from event runs
    get_operator_performance   — leaderboard grouped by batch creator
    get_batches_in_progress    — live WIP with age and time at station
    get_mass_check_report      — every mass check with variance
    get_exception_report       — flag log with approval status
    get_yield_loss_report      — loss / gain per completed batch
    get_turnaround_report      — start → completion hours per batch
    export_report_csv          — any of the above as CSV text
"""

import calendar
import csv
import inspect
import io
import logging
from datetime import MAXYEAR, MINYEAR, datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import select

from refinery.core.exceptions import ValidationError
from refinery.models import db
from refinery.models.batch import ACTIVE_STATUSES, Batch, BatchEvent
from refinery.models.flow import PIPELINES
from refinery.services import analytics_calculator, event_log
from refinery.utils.helpers import as_utc

logger = logging.getLogger(__name__)

DEFAULT_FTT_TARGET_HOURS = 36.0


def _utcnow():
    return datetime.now(timezone.utc)


def _ftt_target():
    if has_app_context():
        return float(current_app.config.get("FTT_TARGET_HOURS", DEFAULT_FTT_TARGET_HOURS))
    return DEFAULT_FTT_TARGET_HOURS


def _mean(values):
    values = [v for v in values if v is not None]
    return sum(values) / len(values) if values else 0.0


def _completed_batches(date_from=None, date_to=None, pipeline=None):
    stmt = select(Batch).where(Batch.status == "completed")
    if pipeline:
        stmt = stmt.where(Batch.pipeline == pipeline)
    if date_from:
        stmt = stmt.where(Batch.completed_at >= date_from)
    if date_to:
        stmt = stmt.where(Batch.completed_at <= date_to)
    stmt = stmt.order_by(Batch.completed_at.asc(), Batch.id.asc())
    return db.session.execute(stmt).scalars().all()


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# YTD
# ═════════════════════════════════════════════════════════════════════════════


def get_ytd_stats(year=None, pipeline=None):
    """Year-to-date summary over batches completed in ``year`` (UTC)."""
    if year is None:
        year = _utcnow().year
    year = int(year)
    if not MINYEAR <= year <= MAXYEAR:
        raise ValidationError(f"year must be between {MINYEAR} and {MAXYEAR}")
    start = datetime(year, 1, 1, tzinfo=timezone.utc)
    end = datetime(year, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
    batches = _completed_batches(start, end, pipeline)

    monthly = [0] * 12
    by_pipeline = {p: {"batches": 0, "fine_grams": 0.0, "recovery": []} for p in sorted(PIPELINES)}
    gains = [b.loss_gain_g for b in batches if b.loss_gain_g is not None]
    ftt_hours = [b.ftt_hours for b in batches if b.ftt_hours is not None]
    ftt_recoveries = [analytics_calculator.ftt_recovery_percent(b) for b in batches]
    recoveries = [b.overall_recovery_percent for b in batches if b.overall_recovery_percent is not None]

    details = []
    cumulative = 0.0
    for seq, b in enumerate(batches, start=1):
        completed_at = as_utc(b.completed_at)
        monthly[completed_at.month - 1] += 1
        bucket = by_pipeline.setdefault(b.pipeline, {"batches": 0, "fine_grams": 0.0, "recovery": []})
        bucket["batches"] += 1
        bucket["fine_grams"] += b.fine_grams_received or 0.0
        if b.overall_recovery_percent is not None:
            bucket["recovery"].append(b.overall_recovery_percent)
        cumulative += b.loss_gain_g or 0.0
        details.append({
            "sequence": seq,
            "batch_number": b.batch_number,
            "pipeline": b.pipeline,
            "completed_at": _iso(completed_at),
            "month": calendar.month_abbr[completed_at.month],
            "fine_grams_received": b.fine_grams_received or 0.0,
            "loss_gain_g": b.loss_gain_g or 0.0,
            "loss_gain_percent": b.loss_gain_percent or 0.0,
            "cumulative_loss_gain_g": cumulative,
            "overall_recovery_percent": b.overall_recovery_percent or 0.0,
            "ftt_hours": b.ftt_hours or 0.0,
        })

    total_fine = sum(b.fine_grams_received or 0.0 for b in batches)
    total_loss_gain = sum(gains)
    max_gain = max(gains) if gains else 0.0
    max_loss = min(gains) if gains else 0.0

    return {
        "year": year,
        "pipeline": pipeline,
        "ytd_stats": {
            "total_batches": len(batches),
            "total_fine_grams": total_fine,
            "total_loss_gain_g": total_loss_gain,
            "loss_gain_percent": total_loss_gain / total_fine * 100 if total_fine else 0.0,
            "avg_recovery_percent": _mean(recoveries),
            "avg_ftt_hours": _mean(ftt_hours),
            "avg_ftt_recovery_percent": _mean(ftt_recoveries),
            "max_gain": max_gain,
            "max_loss": max_loss,
            "spread": max_gain - max_loss if gains else 0.0,
        },
        "monthly_batches": [
            {"month": calendar.month_abbr[i + 1], "count": count}
            for i, count in enumerate(monthly)
        ],
        "by_pipeline": [
            {
                "pipeline": name,
                "batches": stats["batches"],
                "fine_grams": stats["fine_grams"],
                "recovery_percent": _mean(stats["recovery"]),
            }
            for name, stats in by_pipeline.items()
        ],
        "batch_details": details,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Station throughput
# ═════════════════════════════════════════════════════════════════════════════


def get_station_throughput(date_from=None, date_to=None, pipeline=None):
    """Per-station dwell statistics over completed batches.

    Each contiguous run of events at the same station counts as one pass;
    its dwell time is last minus first timestamp of the run. A batch that
    revisits a station contributes one pass per run.
    """
    stats = {}
    for batch in _completed_batches(date_from, date_to, pipeline):
        for station, first_ts, last_ts in event_log.station_runs(batch.events):
            s = stats.setdefault(station, {"station": station, "batches": set(), "durations": []})
            s["batches"].add(batch.id)
            s["durations"].append((last_ts - first_ts).total_seconds() / 3600)

    active_stmt = select(Batch.current_station).where(Batch.status.in_(ACTIVE_STATUSES))
    if pipeline:
        active_stmt = active_stmt.where(Batch.pipeline == pipeline)
    active = {}
    for (station,) in db.session.execute(active_stmt).all():
        key = station or "unknown"
        active[key] = active.get(key, 0) + 1

    throughput = []
    for station in sorted(set(stats) | set(active)):
        s = stats.get(station, {"batches": set(), "durations": []})
        durations = s["durations"]
        throughput.append({
            "station": station,
            "batches_processed": len(s["batches"]),
            "avg_time_hours": _mean(durations),
            "min_time_hours": min(durations) if durations else 0.0,
            "max_time_hours": max(durations) if durations else 0.0,
            "currently_active": active.get(station, 0),
        })
    return {"throughput": throughput, "total": len(throughput)}


# ═════════════════════════════════════════════════════════════════════════════
# Operator leaderboard
# ═════════════════════════════════════════════════════════════════════════════


def get_operator_performance(date_from=None, date_to=None, pipeline=None):
    """Leaderboard grouped by the batch creator.

    ``efficiency_score`` is the mean of three factors: on-time ratio
    (share of batches with ftt_hours within target), avg recovery / 100,
    and target / avg ftt hours (0 when no batch has an FTT).
    """
    target = _ftt_target()
    groups = {}
    for b in _completed_batches(date_from, date_to, pipeline):
        groups.setdefault(b.created_by, []).append(b)

    operators = []
    for operator_id, batches in groups.items():
        total = len(batches)
        ftt = [b.ftt_hours for b in batches if b.ftt_hours is not None]
        avg_ftt = _mean(ftt)
        avg_recovery = _mean([b.overall_recovery_percent for b in batches])
        on_time = sum(1 for b in batches if b.ftt_hours is not None and b.ftt_hours <= target)
        on_time_ratio = on_time / total
        ftt_factor = target / avg_ftt if avg_ftt > 0 else 0.0
        names = [b.created_by_name for b in batches if b.created_by_name]
        operators.append({
            "operator_id": operator_id,
            "operator_name": names[-1] if names else operator_id,
            "total_batches": total,
            "total_fine_grams": sum(b.fine_grams_received or 0.0 for b in batches),
            "total_loss_gain": sum(b.loss_gain_g or 0.0 for b in batches),
            "avg_recovery": avg_recovery,
            "avg_ftt_hours": avg_ftt,
            "avg_ftt_recovery": _mean([analytics_calculator.ftt_recovery_percent(b) for b in batches]),
            "batches_on_time": on_time,
            "on_time_percentage": on_time_ratio * 100,
            "batches_with_gain": sum(1 for b in batches if (b.loss_gain_g or 0) > 0),
            "batches_with_loss": sum(1 for b in batches if (b.loss_gain_g or 0) < 0),
            "efficiency_score": (on_time_ratio + avg_recovery / 100 + ftt_factor) / 3,
        })
    operators.sort(key=lambda o: (-o["total_batches"], o["operator_id"]))
    return {"operators": operators, "ftt_target_hours": target}


# ═════════════════════════════════════════════════════════════════════════════
# Operational reports
# ═════════════════════════════════════════════════════════════════════════════


def get_batches_in_progress(pipeline=None, priority=None, now=None):
    now = as_utc(now) or _utcnow()
    stmt = select(Batch).where(Batch.status.in_(ACTIVE_STATUSES))
    if pipeline:
        stmt = stmt.where(Batch.pipeline == pipeline)
    if priority:
        stmt = stmt.where(Batch.priority == priority)
    stmt = stmt.order_by(Batch.priority.asc(), Batch.created_at.asc())

    rows = []
    for b in db.session.execute(stmt).scalars().all():
        started = as_utc(b.started_at)
        age = (now - started).total_seconds() / 3600 if started else 0.0
        at_station = event_log.time_at_current_station(b, now)
        rows.append({
            "batch_number": b.batch_number,
            "pipeline": b.pipeline,
            "current_node_id": b.current_node_id,
            "current_station": b.current_station,
            "status": b.status,
            "priority": b.priority,
            "age_hours": round(age, 1),
            "time_at_station_hours": round(at_station if at_station is not None else age, 1),
            "flags": [f.flag_type for f in b.flags],
            "pending_flags": len(b.pending_flags),
            "fine_grams": b.fine_grams_received or 0.0,
        })
    return {"batches": rows, "total": len(rows)}


def get_mass_check_report(pipeline=None, date_from=None, date_to=None, variance_threshold=None):
    """Every mass check event; ``variance_threshold`` keeps |variance %| ≥ threshold."""
    stmt = (
        select(BatchEvent, Batch)
        .join(Batch, BatchEvent.batch_id == Batch.id)
        .where(BatchEvent.event_type == "mass_check")
    )
    if pipeline:
        stmt = stmt.where(Batch.pipeline == pipeline)
    if date_from:
        stmt = stmt.where(BatchEvent.timestamp >= date_from)
    if date_to:
        stmt = stmt.where(BatchEvent.timestamp <= date_to)
    stmt = stmt.order_by(BatchEvent.timestamp.desc(), BatchEvent.id.desc())

    checks = []
    for event, batch in db.session.execute(stmt).all():
        data = event.data or {}
        measured = data.get("measured_mass") or 0.0
        expected = data.get("expected_mass") or 0.0
        variance = data.get("variance_g")
        if variance is None:
            variance = measured - expected if expected else 0.0
        variance_pct = data.get("variance_percent")
        if variance_pct is None:
            variance_pct = variance / expected * 100 if expected else 0.0
        if variance_threshold is not None and abs(variance_pct) < float(variance_threshold):
            continue
        within = data.get("within_tolerance")
        checks.append({
            "batch_number": batch.batch_number,
            "pipeline": batch.pipeline,
            "station": event.station,
            "step": event.step,
            "timestamp": _iso(event.timestamp),
            "expected_mass": expected,
            "measured_mass": measured,
            "variance_g": variance,
            "variance_percent": variance_pct,
            "within_tolerance": True if within is None else within,
            "operator": event.user_name or event.user_id,
        })
    return {"mass_checks": checks, "total": len(checks)}


def get_exception_report(pipeline=None, date_from=None, date_to=None,
                         exception_type=None, status=None):
    """Flag log; ``status`` filters on ``pending`` / ``approved``."""
    stmt = select(Batch).where(Batch.flags.any())
    if pipeline:
        stmt = stmt.where(Batch.pipeline == pipeline)
    exceptions = []
    for batch in db.session.execute(stmt).scalars().all():
        flagged_at_station = {
            (e.data or {}).get("flag_index"): e.station
            for e in batch.events if e.event_type == "exception_flagged"
        }
        for flag in batch.flags:
            flagged_at = as_utc(flag.flagged_at)
            if date_from and flagged_at < date_from:
                continue
            if date_to and flagged_at > date_to:
                continue
            if exception_type and flag.flag_type != exception_type:
                continue
            approval = "pending" if flag.is_pending else "approved"
            if status and approval != status:
                continue
            exceptions.append({
                "batch_number": batch.batch_number,
                "pipeline": batch.pipeline,
                "flag_index": flag.position,
                "exception_type": flag.flag_type,
                "station": flagged_at_station.get(flag.position) or "unknown",
                "reason": flag.reason,
                "timestamp": _iso(flagged_at),
                "flagged_by": flag.flagged_by,
                "approved_by": flag.approved_by,
                "approved_at": _iso(flag.approved_at),
                "status": approval,
                "batch_status": batch.status,
            })
    exceptions.sort(key=lambda e: e["timestamp"] or "", reverse=True)
    return {"exceptions": exceptions, "total": len(exceptions)}


def get_yield_loss_report(date_from=None, date_to=None, pipeline=None, loss_threshold=None):
    """Completed batches with loss/gain data; threshold keeps |loss %| ≥ threshold."""
    rows = []
    for b in _completed_batches(date_from, date_to, pipeline):
        if b.loss_gain_percent is None:
            continue
        if loss_threshold is not None and abs(b.loss_gain_percent) < float(loss_threshold):
            continue
        rows.append({
            "batch_number": b.batch_number,
            "pipeline": b.pipeline,
            "initial_mass": b.received_weight_g or 0.0,
            "fine_grams_received": b.fine_grams_received or 0.0,
            "expected_output": b.expected_output_g or 0.0,
            "actual_output": b.actual_output_g or 0.0,
            "loss_gain_g": b.loss_gain_g or 0.0,
            "loss_gain_percent": b.loss_gain_percent,
            "recovery_percent": b.overall_recovery_percent or 0.0,
        })
    return {
        "yield_loss": rows,
        "aggregates": {
            "total_material_processed": sum(r["fine_grams_received"] for r in rows),
            "total_loss_gain": sum(r["loss_gain_g"] for r in rows),
            "avg_yield_percent": _mean([r["recovery_percent"] for r in rows]),
        },
        "total": len(rows),
    }


def get_turnaround_report(date_from=None, date_to=None, pipeline=None):
    rows = []
    for b in _completed_batches(date_from, date_to, pipeline):
        started, completed = as_utc(b.started_at), as_utc(b.completed_at)
        if started is None or completed is None:
            continue
        rows.append({
            "batch_number": b.batch_number,
            "pipeline": b.pipeline,
            "started_at": _iso(started),
            "completed_at": _iso(completed),
            "total_hours": round((completed - started).total_seconds() / 3600, 1),
            "duration_minutes": b.duration_minutes,
            "ftt_hours": b.ftt_hours or 0.0,
            "recovery_pours": len(b.recovery_pours),
            "priority": b.priority,
        })
    return {
        "turnaround": rows,
        "aggregates": {
            "avg_total_hours": round(_mean([r["total_hours"] for r in rows]), 1),
            "avg_ftt_hours": round(_mean([r["ftt_hours"] for r in rows]), 1),
        },
        "total": len(rows),
    }


# ═════════════════════════════════════════════════════════════════════════════
# CSV export
# ═════════════════════════════════════════════════════════════════════════════

# report_type → (builder, key of the row list in its result)
REPORTS = {
    "ytd": (get_ytd_stats, "batch_details"),
    "station-throughput": (get_station_throughput, "throughput"),
    "operator-performance": (get_operator_performance, "operators"),
    "batches-in-progress": (get_batches_in_progress, "batches"),
    "mass-checks": (get_mass_check_report, "mass_checks"),
    "exceptions": (get_exception_report, "exceptions"),
    "yield-loss": (get_yield_loss_report, "yield_loss"),
    "turnaround-time": (get_turnaround_report, "turnaround"),
}


def export_report_csv(report_type, **filters):
    """Render one report's rows as CSV text. Returns ``(filename, text)``."""
    if report_type not in REPORTS:
        raise ValidationError(
            f"Unknown report_type '{report_type}'",
            details={"allowed": sorted(REPORTS)},
        )
    builder, rows_key = REPORTS[report_type]
    accepted = inspect.signature(builder).parameters
    kwargs = {k: v for k, v in filters.items() if k in accepted and v is not None}
    rows = builder(**kwargs)[rows_key]

    output = io.StringIO()
    if rows:
        writer = csv.DictWriter(output, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        for row in rows:
            writer.writerow({
                k: ";".join(map(str, v)) if isinstance(v, list) else ("" if v is None else v)
                for k, v in row.items()
            })
    filename = f"{report_type}-{_utcnow().strftime('%Y%m%dT%H%M%SZ')}.csv"
    logger.info("Exported %s report (%d rows)", report_type, len(rows))
    return filename, output.getvalue()
