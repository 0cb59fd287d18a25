"""
Structured errors raised by the RBAC engine.

The engine is transport-agnostic: each error carries the status code a
transport should use, and main.py maps them onto JSON responses.
"""


class RbacError(Exception):
    """Base class for all RBAC engine errors."""

    status_code: int = 500
    error_code: str = "RBAC_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(RbacError):
    """Referenced permission, role, grant or assignment does not exist."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", detail: str | None = None):
        super().__init__(detail or f"{resource} not found")
        self.resource = resource


class ConflictError(RbacError):
    """Permission code or role slug already exists."""

    status_code = 409
    error_code = "CONFLICT"


class InvalidOperationError(RbacError):
    """Mutation of a protected system role or an otherwise malformed request."""

    status_code = 400
    error_code = "INVALID_OPERATION"


class ForbiddenError(RbacError):
    """Denied by the scope escalation guard or the user-management check."""

    status_code = 403
    error_code = "FORBIDDEN"

    def __init__(self, detail: str = "Access denied"):
        super().__init__(detail)
