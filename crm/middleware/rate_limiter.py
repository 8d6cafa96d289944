"""
Rate limiting configuration.

Applies per-blueprint limits using Flask-Limiter. The Limiter instance is
created in crm/__init__.py with no default limits; this module attaches
limits per route category.

Usage:
    from crm.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
MANUAL_SCAN_LIMIT = "5/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Project / alert endpoints: 60/minute
        - Manual alert scan:          5/minute (sweeps every project)
        - Health check:               exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("projects", "alerts"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    scan_view = app.view_functions.get("alerts.generate_alerts")
    if scan_view is not None:
        limiter.limit(MANUAL_SCAN_LIMIT)(scan_view)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: API %s, manual scan %s",
                    WRITE_LIMIT, MANUAL_SCAN_LIMIT)
