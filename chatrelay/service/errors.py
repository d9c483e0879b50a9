from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error / configuration_error (500)
    - provider_error (502, 504)
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
    """Request is well-formed but cannot be served as-is (400)."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate or quota limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class QuotaExceededError(RateLimitedError):
    """Daily quota exhausted for the calling actor.

    Carries the serialized quota snapshot and whether signing in would raise
    the limit, so callers can render a login prompt instead of a hard failure.
    """

    def __init__(self, snapshot: Dict[str, Any], *, required_login: bool) -> None:
        super().__init__(
            "Daily quota exhausted",
            detail={"quota": snapshot, "required_login": required_login},
        )
        self.snapshot = snapshot
        self.required_login = required_login


class ProviderRequestError(ServiceError):
    """Upstream provider answered with a non-success status after retries."""
    status_code = 502
    error_code = "provider_error"

    def __init__(self, upstream_status: int, *, reason: str = "") -> None:
        text = f"AI API request failed: {upstream_status}"
        if reason:
            text = f"{text} {reason}"
        super().__init__(text, detail={"upstream_status": upstream_status})
        self.upstream_status = upstream_status


class ProviderTimeoutError(ServiceError):
    """The provider call exceeded its deadline."""
    status_code = 504
    error_code = "provider_error"


class ContextWindowNotConfiguredError(ServerError):
    """No context window could be resolved for the session's model."""
    error_code = "configuration_error"


class CompressionConflictError(ConflictError):
    """Another request grouped the same messages first."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "QuotaExceededError",
    "ProviderRequestError",
    "ProviderTimeoutError",
    "ContextWindowNotConfiguredError",
    "CompressionConflictError",
]
