from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized / invalid_token (401)
    - forbidden (403)
    - not_found (404)
    - validation_error / tenant_context_missing / invalid_assignees / invalid_parent (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    pass


class TenantContextMissingError(BadRequestError):
    """A tenant-scoped operation ran without a resolved tenant (400)."""
    error_code = "tenant_context_missing"

    def __init__(self, message: str = "tenant context not set", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidAssigneesError(BadRequestError):
    """Proposed assignees lack access to the task's project (400)."""
    error_code = "invalid_assignees"

    def __init__(self, invalid_ids: list[str]) -> None:
        super().__init__(
            "invalid_assignees",
            detail={"invalid_assignees": list(invalid_ids)},
        )
        self.invalid_ids = list(invalid_ids)


class InvalidParentError(BadRequestError):
    """Subtask parent is missing, in another project, or itself a subtask (400)."""
    error_code = "invalid_parent"

    def __init__(self, message: str = "invalid_parent", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token signature, structure or expiry check failed (401)."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found, or hidden from the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate membership (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "TenantContextMissingError",
    "InvalidAssigneesError",
    "InvalidParentError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
