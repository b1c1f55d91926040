"""
Request identity helpers shared by the API blueprints.

Identity comes from the JWT middleware (``g.jwt_*``). Every permit and
work-order route is tenant-scoped, so a request without a tenant is
rejected before any service call.
"""

from flask import g, request

from cmms.core.exceptions import ValidationError


def require_tenant() -> int:
    tenant_id = getattr(g, "jwt_tenant_id", None)
    if tenant_id is None:
        raise ValidationError("Tenant ID required")
    return tenant_id


def current_user_id():
    return getattr(g, "jwt_user_id", None)


def current_roles() -> list[str]:
    return list(getattr(g, "jwt_roles", None) or [])


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
