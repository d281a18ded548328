"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in aft/__init__.py with no default limits;
this module applies granular limits per route category. The login endpoint
carries its own stricter limit (LOGIN_RATE_LIMIT) in auth_bp.

Usage:
    from aft.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Request workflow and drive register endpoints: 60/minute
        - Auth endpoints (other than login): 200/minute
        - Health check: exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("requests")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("media")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("auth")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    health = app.view_functions.get("health")
    if health:
        limiter.exempt(health)

    app.logger.info(
        "Rate limiter configured — requests: %s, auth: %s, login: %s",
        WRITE_LIMIT, READ_LIMIT, app.config.get("LOGIN_RATE_LIMIT"),
    )
