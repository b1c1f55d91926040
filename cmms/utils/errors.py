"""Standardised API error responses.

Usage
-----
    from cmms.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Permit not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")

``register_error_handlers(app)`` maps the service exception hierarchy in
``cmms.core.exceptions`` onto these responses for every blueprint.
"""

from __future__ import annotations

import logging

from flask import g, jsonify, request
from werkzeug.exceptions import HTTPException

from cmms.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    READINESS = "ERR_PERMIT_READINESS"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.READINESS: 409,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (offending permit, field errors, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def _request_context() -> dict:
    return {
        "tenant_id": getattr(g, "jwt_tenant_id", None),
        "user_id": getattr(g, "jwt_user_id", None),
        "path": request.path,
        "method": request.method,
    }


def register_error_handlers(app):
    """Map the service exception hierarchy to JSON error responses."""

    @app.errorhandler(ValidationError)
    def _validation(error):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @app.errorhandler(NotFoundError)
    def _not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(AuthorizationError)
    def _forbidden(error):
        return api_error(E.FORBIDDEN, str(error) or "Forbidden")

    @app.errorhandler(ConflictError)
    def _conflict(error):
        code = E.READINESS if error.details.get("readiness") else E.CONFLICT_STATE
        return api_error(code, str(error), details=error.details)

    @app.errorhandler(InternalError)
    def _internal(error):
        logger.error("Internal error: %s", error, extra=_request_context())
        return api_error(E.INTERNAL, "Internal server error")

    @app.errorhandler(Exception)
    def _unexpected(error):
        if isinstance(error, HTTPException):
            return {"error": error.description or error.name}, error.code
        logger.exception("Unhandled error: %s", error, extra=_request_context())
        return api_error(E.INTERNAL, "Internal server error")
