"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in refinery/__init__.py with no default limits; this module
applies granular limits per route category, keyed by the authenticated
user so operators sharing a shop-floor terminal IP are limited separately.

Usage:
    from refinery.middleware.rate_limiter import init_rate_limits, rate_limit_key
    limiter = Limiter(key_func=rate_limit_key, ...)
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

BLUEPRINT_LIMITS = {
    "batch_bp": "120/minute",
    "flow_bp": "60/minute",
    "analytics_bp": "30/minute",
}


def rate_limit_key():
    """User id when authenticated, else remote IP."""
    user = getattr(g, "current_user", None)
    if user is not None and getattr(user, "id", None):
        return f"user:{user.id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per user, falling back to remote IP):
        - Batch mutations:  120/minute (scanner-driven step completion)
        - Flow admin:        60/minute
        - Analytics:         30/minute (full-table rollups)
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — %s",
        ", ".join(f"{name}: {limit}" for name, limit in BLUEPRINT_LIMITS.items()),
    )
