"""
Refinery Batch Tracker
Flask Application Factory.

Usage:
    from refinery import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate

from refinery.auth import init_auth
from refinery.config import config
from refinery.middleware.logging_config import configure_logging
from refinery.middleware.rate_limiter import init_rate_limits, rate_limit_key
from refinery.middleware.timing import init_request_timing
from refinery.models import db

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)

# Linear demo flow installed by ``flask seed-flow``
DEMO_FLOW_NODES = [
    {"id": "receiving", "type": "station", "template_id": "station_receiving"},
    {"id": "weigh_in", "type": "check", "template_id": "check_weigh_in"},
    {"id": "melting", "type": "station", "template_id": "station_melting"},
    {"id": "assay", "type": "station", "template_id": "station_assay"},
    {"id": "casting", "type": "station", "template_id": "station_casting"},
    {"id": "packaging", "type": "station", "template_id": "station_packaging"},
]


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)

    config_cls = config.get(config_name, config["default"])
    # ProductionConfig validates required env vars in __init__
    app.config.from_object(config_cls() if config_name == "production" else config_cls)
    app.config.setdefault("RATELIMIT_ENABLED", True)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and \
            ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Logging ──────────────────────────────────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Authentication & request timing ──────────────────────────────────
    init_auth(app)
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from refinery.models import batch as _batch_models        # noqa: F401
    from refinery.models import flow as _flow_models          # noqa: F401
    from refinery.models import template as _template_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from refinery.blueprints.analytics_bp import analytics_bp
    from refinery.blueprints.batch_bp import batch_bp
    from refinery.blueprints.flow_bp import flow_bp
    from refinery.blueprints.health_bp import health_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(flow_bp)
    app.register_blueprint(batch_bp)
    app.register_blueprint(analytics_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-templates")
    def seed_templates_cmd():
        """Seed the default station and check template catalog."""
        from refinery.services.template_catalog import seed_default_templates
        count = seed_default_templates()
        click.echo(f"Seeded {count} new templates.")

    @app.cli.command("seed-flow")
    @click.option("--pipeline", default="gold", show_default=True)
    @click.option("--version", "flow_version", default="1.0", show_default=True)
    def seed_flow_cmd(pipeline, flow_version):
        """Create and activate a linear demo flow for PIPELINE."""
        from refinery.services import flow_service
        from refinery.services.template_catalog import seed_default_templates
        seed_default_templates()
        edges = [
            {"source": a["id"], "target": b["id"]}
            for a, b in zip(DEMO_FLOW_NODES, DEMO_FLOW_NODES[1:])
        ]
        flow = flow_service.create_flow({
            "name": f"{pipeline.title()} Standard Process",
            "version": flow_version,
            "pipeline": pipeline,
            "nodes": DEMO_FLOW_NODES,
            "edges": edges,
        }, created_by="cli")
        flow_service.activate_flow(flow.id)
        click.echo(f"Activated flow {flow.flow_key}@{flow.version} for {pipeline}.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
