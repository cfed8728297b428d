"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in roster/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from roster.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

IMPORT_LIMIT = "10/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Imports:          10/minute  (whole-roster diff in one transaction)
        - Workflow routes:  60/minute  (resolutions, approvals, member edits)
        - Structure lookup: 200/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("import_bp")
    if bp:
        limiter.limit(IMPORT_LIMIT)(bp)

    for bp_name in ("delta_bp", "approval_bp", "member_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("structure_bp")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured - import: %s, write: %s, read: %s",
        IMPORT_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
