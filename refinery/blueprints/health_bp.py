"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database round-trip and catalog status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select

from refinery.models import db
from refinery.models.flow import Flow

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check: 200 whenever the app is serving requests."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with database status and active flow count."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    if overall:
        active = db.session.execute(
            select(Flow.pipeline, func.count(Flow.id))
            .where(Flow.status == "active")
            .group_by(Flow.pipeline)
        ).all()
        checks["active_flows"] = {pipeline: count for pipeline, count in active}

    checks["app"] = {
        "name": "Refinery Batch Tracker",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "approval_policy": current_app.config.get("EXCEPTION_APPROVAL_POLICY", "any"),
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
