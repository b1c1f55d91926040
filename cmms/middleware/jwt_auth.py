"""
JWT Auth Middleware — Parses JWT from Authorization header, sets g.jwt_*.

    Authorization: Bearer <token>  →  g.jwt_user_id, g.jwt_tenant_id, g.jwt_roles

Requests without a valid token get empty identity; blueprints decide
whether that is acceptable (permit and work-order routes require a tenant).
"""

import logging

import jwt as pyjwt
from flask import g, request

from cmms.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _as_int(value):
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired JWT on %s", path)
            return
        except pyjwt.InvalidTokenError as exc:
            logger.warning("Invalid JWT on %s: %s", path, exc)
            return

        g.jwt_user_id = _as_int(payload.get("sub"))
        g.jwt_tenant_id = _as_int(payload.get("tenant_id"))
        roles = payload.get("roles") or []
        g.jwt_roles = [r for r in roles if isinstance(r, str)]
