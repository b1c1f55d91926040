"""
Service-wide exception hierarchy.

Services raise these types; ``cmms.utils.errors.register_error_handlers``
maps them to HTTP status codes once for the whole app:

    ValidationError     -> 400
    AuthorizationError  -> 403
    NotFoundError       -> 404
    ConflictError       -> 409
    InternalError       -> 500

Usage:
    from cmms.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Permit", resource_id=42)
    raise ValidationError("title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "Permit", "WorkOrder").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input is malformed or violates a business rule.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the requester may not act on the resource.

    Maps to HTTP 403.
    """


class ConflictError(Exception):
    """Raised when the resource is not in a state that allows the operation.

    Readiness-gate failures and invalid status transitions use this.
    Maps to HTTP 409.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InternalError(Exception):
    """Raised when a primary mutation could not be persisted.

    Maps to HTTP 500. The message is logged, not surfaced verbatim.
    """
