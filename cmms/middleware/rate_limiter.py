"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in cmms/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from cmms.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "300/minute"

RATE_LIMITED_BLUEPRINTS = ("permits", "work_orders", "notifications")


def _tenant_rate_limit_key():
    """Dynamic rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "jwt_tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def _is_write():
    return flask_request.method in ("POST", "PUT", "PATCH", "DELETE")


def _is_read():
    return not _is_write()


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the API blueprints, keyed per tenant.

    Limits:
        - Write endpoints:  60/minute  (POST/PUT/PATCH/DELETE)
        - Read endpoints:   300/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for name in RATE_LIMITED_BLUEPRINTS:
        bp = app.blueprints.get(name)
        if not bp:
            continue
        limiter.limit(WRITE_LIMIT, key_func=_tenant_rate_limit_key, exempt_when=_is_read)(bp)
        limiter.limit(READ_LIMIT, key_func=_tenant_rate_limit_key, exempt_when=_is_write)(bp)

    health = app.blueprints.get("health")
    if health:
        limiter.exempt(health)

    logger.info("Rate limits applied to %s", ", ".join(RATE_LIMITED_BLUEPRINTS))
