"""Typed failures raised by the directory, retriever, generator and speech layers.

Only the exception handlers registered in askgate.main turn these into HTTP
responses; everything below the routes raises and never formats a response.
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base error carrying an HTTP status and contextual detail for logs."""

    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}


class ValidationError(GatewayError):
    """Missing or malformed request fields."""

    status_code = 400


class AuthError(GatewayError):
    """Missing, invalid or expired API key."""

    status_code = 401


class ForbiddenError(GatewayError):
    """Admin credential missing or wrong."""

    status_code = 403


class NotFoundError(GatewayError):
    """Unknown customer or resource."""

    status_code = 404


class ConflictError(GatewayError):
    """Duplicate registration."""

    status_code = 409


class RateLimitError(GatewayError):
    status_code = 429

    def __init__(self, message: str, retry_after: int = 1, **context: Any):
        super().__init__(message, **context)
        self.retry_after = max(1, int(retry_after))


class UpstreamError(GatewayError):
    """AI provider or tenant datastore failure.

    Surfaced to clients as a 500 with the message, like any internal failure.
    """

    status_code = 500


class DatastoreConnectionError(UpstreamError):
    """Tenant datastore rejected the connection check."""

    status_code = 400


class InternalError(GatewayError):
    status_code = 500


def describe(exc: BaseException, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten an exception into a dict suitable for structured log arguments."""
    info: Dict[str, Any] = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, GatewayError):
        info.update(exc.context)
    if extra:
        info.update(extra)
    return info
