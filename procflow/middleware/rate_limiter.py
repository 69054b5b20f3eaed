"""
Rate limiting configuration.

The Limiter instance is created in procflow/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from procflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Endpoints that mutate workflow state
TRANSITION_ENDPOINTS = (
    "instance.step_transition",
    "instance.upload_step_file",
    "instance.process_transition",
    "instance.create_instance",
    "archive.archive_instance",
    "archive.start_operation",
)

READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API endpoints.

    Limits (per remote IP):
        - Transition / upload endpoints: TRANSITION_RATE_LIMIT (default 60/minute)
        - Catalog blueprint:             200/minute
        - Health check:                  exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    transition_limit = app.config.get("TRANSITION_RATE_LIMIT", "60/minute")
    for endpoint in TRANSITION_ENDPOINTS:
        view = app.view_functions.get(endpoint)
        if view is not None:
            app.view_functions[endpoint] = limiter.limit(transition_limit)(view)

    bp = app.blueprints.get("catalog")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    health = app.view_functions.get("health")
    if health is not None:
        limiter.exempt(health)

    app.logger.info(
        "Rate limiter configured — transitions: %s, catalog: %s",
        transition_limit, READ_LIMIT,
    )
