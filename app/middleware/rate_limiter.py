"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter
instance is created in app/__init__.py with no default limits; this
module applies limits per route category, keyed by the caller identity
(X-User-Id) and falling back to the remote IP.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
BULK_LIMIT = "10/minute"


def rate_limit_key() -> str:
    """Limiter key: the calling user if identified, else remote IP."""
    user_id = flask_request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per caller):
        - Decision and approval endpoints:  60/minute
        - Bulk endpoints:                   10/minute (each fans out)
        - Health check:                     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("decisions", "approvals"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=rate_limit_key)(bp)

    for endpoint in ("decisions.bulk_remind", "decisions.bulk_export", "decisions.bulk_phase"):
        view = app.view_functions.get(endpoint)
        if view:
            app.view_functions[endpoint] = limiter.limit(BULK_LIMIT, key_func=rate_limit_key)(view)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: write=%s bulk=%s", WRITE_LIMIT, BULK_LIMIT)
