from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-core exceptions that carry an HTTP-semantic status.

    Each subclass defines both a ``status_code`` and a stable ``error_code`` so
    the presentation layer can map failures without inspecting messages:
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
    - configuration_error (500)
    - hashing_failure (500)
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


class AuthenticationError(ServiceError):
    """No authenticated principal for an operation that requires one (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AuthorizationDenied(ForbiddenError):
    """Raised by ``Gate.authorize`` when an ability is denied."""

    default_message = "This action is unauthorized."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        ability: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message or self.default_message,
            status_code=status_code,
            detail={"ability": ability} if ability else None,
        )
        self.ability = ability

    @property
    def code(self) -> int:
        return self.status_code


class ConflictError(ServiceError):
    """State conflict, e.g. enrolling two-factor twice (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts for a throttle key (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ConfigurationError(ServiceError):
    """Deployment misconfiguration detected at setup or resolution time (500)."""
    status_code = 500
    error_code = "configuration_error"


class HashingFailure(ServiceError):
    """The hashing primitive could not produce a hash (500)."""
    status_code = 500
    error_code = "hashing_failure"


class InvalidParameter(HashingFailure, ValueError):
    """Hashing parameters are outside the range the primitive accepts."""
    error_code = "invalid_parameter"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "AuthorizationDenied",
    "ConflictError",
    "RateLimitedError",
    "ConfigurationError",
    "HashingFailure",
    "InvalidParameter",
]
