"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"

# Blueprints whose traffic is mostly mutations (approvals, delegations, design saves)
WRITE_BLUEPRINTS = ("delegation", "flow_template", "workflow", "flow_execution")

# Blueprints polled by the SPA (inbox badges, notification lists)
READ_BLUEPRINTS = ("notification",)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Write-heavy endpoints: 60/minute
        - Read-heavy endpoints:  200/minute
        - Health check:          exempt (registered on the app, not a blueprint)

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in READ_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    app.logger.info("Rate limiter configured: write: %s, read: %s", WRITE_LIMIT, READ_LIMIT)
