"""
Error taxonomy for the gateway.

Every error carries a human-readable message, a stable ``error_code`` and the
HTTP status it maps to. ``main.py`` renders them as
``{"detail": message, "error_code": code}``.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for errors surfaced to the caller."""

    status_code = 500
    default_code = "internal_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}


class ValidationError(GatewayError):
    """Bad request shape or unsupported attachment type. Never retried."""

    status_code = 400
    default_code = "invalid_request"


class PayloadTooLargeError(ValidationError):
    """A single attachment or the whole batch exceeds its byte ceiling."""

    status_code = 413
    default_code = "file_too_large"


class AuthError(GatewayError):
    status_code = 401
    default_code = "unauthorized"


class QuotaExceededError(GatewayError):
    """Per-user request ceiling reached for the current window."""

    status_code = 429
    default_code = "rate_limited"

    def __init__(self, limit: int, retry_after: int, reset_at: float):
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            headers={
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "Retry-After": str(retry_after),
            },
        )
        self.limit = limit
        self.retry_after = retry_after
        self.reset_at = reset_at


class ExtractionError(GatewayError):
    """
    A single attachment or context file could not be processed.

    Never reaches the caller as a response: the ingestion fold turns it into an
    inline system note and the request proceeds.
    """

    status_code = 422
    default_code = "processing_failed"


class UpstreamError(GatewayError):
    """Model provider unreachable (503) or answered with a non-2xx status (502)."""

    status_code = 502
    default_code = "upstream_error"


class StreamFault(GatewayError):
    """Reading the upstream body failed after streaming started."""

    status_code = 502
    default_code = "stream_fault"


class ConfigurationError(GatewayError):
    status_code = 500
    default_code = "service_misconfigured"


class RateLimitStoreError(GatewayError):
    """The shared rate-limit store could not be reached; the request is not admitted."""

    status_code = 503
    default_code = "rate_limit_unavailable"
