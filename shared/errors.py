"""
Shared error handling for the FluxSight Access Gateway.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class GatewayError(Exception):
    """Base exception for gateway errors."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.headers: Dict[str, str] = dict(headers or {})
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class UnauthenticatedError(GatewayError):
    """No credential was presented on a protected route."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHENTICATED", message, details)


class InvalidTokenError(GatewayError):
    """Token could not be trusted. Callers must re-authenticate."""

    status_code = 401
    error_code = "INVALID_TOKEN"

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None):
        super().__init__(self.error_code, message, details)


class MalformedTokenError(InvalidTokenError):
    """Token could not be parsed."""

    def __init__(self, message: str = "Malformed token", details: Optional[Dict[str, Any]] = None):
        details = {"reason": "malformed", **(details or {})}
        super().__init__(message, details)


class InvalidSignatureError(InvalidTokenError):
    """Token parsed but its signature did not validate."""

    def __init__(self, message: str = "Invalid token signature", details: Optional[Dict[str, Any]] = None):
        details = {"reason": "invalid_signature", **(details or {})}
        super().__init__(message, details)


class InvalidRefreshTokenError(InvalidTokenError):
    """Refresh token is expired, forged or of the wrong type. The client must exchange its API key again."""

    error_code = "INVALID_REFRESH_TOKEN"

    def __init__(self, message: str = "Invalid refresh token", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class TokenExpiredError(GatewayError):
    """Token was valid but is past its expiry. Callers should refresh."""

    status_code = 401

    def __init__(self, message: str = "Token expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_EXPIRED", message, details)


class InsufficientPermissionsError(GatewayError):
    """Caller lacks the role required by the route."""

    status_code = 403

    def __init__(self, required_role: Optional[str] = None, message: str = "Insufficient permissions",
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if required_role:
            details.setdefault("required_role", required_role)
        super().__init__("INSUFFICIENT_PERMISSIONS", message, details)


class RateLimitExceededError(GatewayError):
    """Caller exhausted the quota of the current window."""

    status_code = 429

    def __init__(self, retry_after: int, message: str = "Rate limit exceeded",
                 details: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None):
        self.retry_after = retry_after
        details = {"retry_after": retry_after, **(details or {})}
        headers = {"Retry-After": str(retry_after), **(headers or {})}
        super().__init__("RATE_LIMIT_EXCEEDED", message, details, headers=headers)


class StoreUnavailableError(GatewayError):
    """Backing store failed or timed out. Never surfaced with its cause."""

    status_code = 503

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__("STORE_UNAVAILABLE", "Service temporarily unavailable")


class UnknownCredentialError(GatewayError):
    """API key is unknown or belongs to a suspended client."""

    status_code = 401

    def __init__(self, message: str = "Invalid API key"):
        super().__init__("INVALID_API_KEY", message)


class InvalidTierError(GatewayError):
    """Requested client tier does not exist."""

    status_code = 400

    def __init__(self, tier: Any):
        super().__init__("INVALID_TIER", f"Invalid tier: {tier}", {"tier": str(tier)})


class ClientNotFoundError(GatewayError):
    """Client identity does not exist."""

    status_code = 404

    def __init__(self, client_id: str):
        super().__init__("CLIENT_NOT_FOUND", "Client not found", {"client_id": client_id})


class ValidationError(GatewayError):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ResourceNotFoundError(GatewayError):
    """Requested entity does not exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(
            "NOT_FOUND",
            f"{resource.title()} not found",
            {"resource": resource, "id": resource_id},
            headers=headers
        )
