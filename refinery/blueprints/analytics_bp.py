"""
Analytics blueprint — read-only reports over batches.

Endpoints (all GET, prefix /api/v1/analytics):
    /ytd                    ?year=&pipeline=
    /station-throughput     ?date_from=&date_to=&pipeline=
    /operator-performance   ?date_from=&date_to=&pipeline=
    /batches-in-progress    ?pipeline=&priority=
    /mass-checks            ?pipeline=&date_from=&date_to=&variance_threshold=
    /exceptions             ?pipeline=&date_from=&date_to=&exception_type=&status=
    /yield-loss             ?date_from=&date_to=&pipeline=&loss_threshold=
    /turnaround-time        ?date_from=&date_to=&pipeline=
    /export-csv             ?report_type=<one of the above>&<its filters>

Dates accept YYYY-MM-DD or ISO timestamps; a bare ``date_to`` is inclusive
of that whole day.
"""

import logging
from datetime import MAXYEAR, MINYEAR

from flask import Blueprint, Response, jsonify, request

from refinery.blueprints import register_domain_error_handlers
from refinery.services import analytics_reporting
from refinery.utils.errors import E, api_error
from refinery.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

analytics_bp = Blueprint("analytics_bp", __name__, url_prefix="/api/v1/analytics")
register_domain_error_handlers(analytics_bp)


def _date_range():
    """Return (date_from, date_to, error)."""
    raw_from, raw_to = request.args.get("date_from"), request.args.get("date_to")
    date_from = parse_datetime(raw_from)
    date_to = parse_datetime(raw_to, end_of_day=True)
    if raw_from and date_from is None:
        return None, None, api_error(E.VALIDATION_INVALID, "date_from is not a valid date")
    if raw_to and date_to is None:
        return None, None, api_error(E.VALIDATION_INVALID, "date_to is not a valid date")
    return date_from, date_to, None


def _float_arg(name):
    """Return (value, error) for an optional numeric query param."""
    raw = request.args.get(name)
    if raw in (None, ""):
        return None, None
    try:
        return float(raw), None
    except ValueError:
        return None, api_error(E.VALIDATION_INVALID, f"{name} must be a number")


def _filters():
    """Collect every supported filter from the query string."""
    date_from, date_to, err = _date_range()
    if err:
        return None, err
    variance_threshold, err = _float_arg("variance_threshold")
    if err:
        return None, err
    loss_threshold, err = _float_arg("loss_threshold")
    if err:
        return None, err
    year = request.args.get("year")
    if year is not None:
        try:
            year = int(year)
        except ValueError:
            return None, api_error(E.VALIDATION_INVALID, "year must be an integer")
        if not MINYEAR <= year <= MAXYEAR:
            return None, api_error(
                E.VALIDATION_INVALID, f"year must be between {MINYEAR} and {MAXYEAR}",
            )
    return {
        "year": year,
        "pipeline": request.args.get("pipeline") or None,
        "priority": request.args.get("priority") or None,
        "date_from": date_from,
        "date_to": date_to,
        "variance_threshold": variance_threshold,
        "loss_threshold": loss_threshold,
        "exception_type": request.args.get("exception_type") or None,
        "status": request.args.get("status") or None,
    }, None


@analytics_bp.route("/ytd", methods=["GET"])
def ytd():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_ytd_stats(f["year"], f["pipeline"])), 200


@analytics_bp.route("/station-throughput", methods=["GET"])
def station_throughput():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_station_throughput(
        f["date_from"], f["date_to"], f["pipeline"],
    )), 200


@analytics_bp.route("/operator-performance", methods=["GET"])
def operator_performance():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_operator_performance(
        f["date_from"], f["date_to"], f["pipeline"],
    )), 200


@analytics_bp.route("/batches-in-progress", methods=["GET"])
def batches_in_progress():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_batches_in_progress(f["pipeline"], f["priority"])), 200


@analytics_bp.route("/mass-checks", methods=["GET"])
def mass_checks():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_mass_check_report(
        f["pipeline"], f["date_from"], f["date_to"], f["variance_threshold"],
    )), 200


@analytics_bp.route("/exceptions", methods=["GET"])
def exceptions():
    f, err = _filters()
    if err:
        return err
    if f["status"] not in (None, "pending", "approved"):
        return api_error(E.VALIDATION_INVALID, "status must be 'pending' or 'approved'")
    return jsonify(analytics_reporting.get_exception_report(
        f["pipeline"], f["date_from"], f["date_to"], f["exception_type"], f["status"],
    )), 200


@analytics_bp.route("/yield-loss", methods=["GET"])
def yield_loss():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_yield_loss_report(
        f["date_from"], f["date_to"], f["pipeline"], f["loss_threshold"],
    )), 200


@analytics_bp.route("/turnaround-time", methods=["GET"])
def turnaround_time():
    f, err = _filters()
    if err:
        return err
    return jsonify(analytics_reporting.get_turnaround_report(
        f["date_from"], f["date_to"], f["pipeline"],
    )), 200


@analytics_bp.route("/export-csv", methods=["GET"])
def export_csv():
    report_type = request.args.get("report_type")
    if not report_type:
        return api_error(E.VALIDATION_REQUIRED, "report_type is required")
    f, err = _filters()
    if err:
        return err
    filename, text = analytics_reporting.export_report_csv(report_type, **f)
    return Response(
        text,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
