"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in siteqa/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from siteqa.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Unauthenticated release links: keep guessing and replay attempts slow
EXTERNAL_LIMIT = "20/minute"
WRITE_LIMIT = "120/minute"
READ_LIMIT = "300/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - External release links:  20/minute
        - Workflow blueprints:     120/minute
        - Read-only work-unit API: 300/minute
        - Health check:            exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("external_release")
    if bp:
        limiter.limit(EXTERNAL_LIMIT)(bp)

    for bp_name in ("inspection", "checkpoint", "issue"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("work_unit")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: external %s, workflow %s, work units %s",
        EXTERNAL_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
