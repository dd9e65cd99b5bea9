"""
Exception taxonomy for the payout engine.

- ValidationError: malformed input, raised before any external call
- NotFoundError: missing record, or one not owned by the requester
- RailError: a payment rail rejected or could not process a request
- RateLimitedError: a metrics provider throttled us
- InvalidTransitionError: illegal transaction / payout state change
- LockUnavailableError: a payout lock could not be acquired
"""
from typing import Any, Dict, Optional


class PayoutEngineError(Exception):
    """
    Base exception for all payout engine errors.

    Carries a stable error code for API clients and the HTTP status the
    API layer should answer with.
    """

    error_code = "payout_engine_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(PayoutEngineError):
    """Malformed input. Never retried, surfaced verbatim to the caller."""

    error_code = "validation_error"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        super().__init__(message, **context)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["error"]["field"] = self.field
        return payload


class NotFoundError(PayoutEngineError):
    """Referenced record does not exist or is not owned by the requester."""

    error_code = "not_found"
    http_status = 404


class RailError(PayoutEngineError):
    """
    A payment rail rejected or could not process a request.

    `code` is the provider's own error code when it returned one.
    """

    error_code = "rail_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        rail: str,
        code: Optional[str] = None,
        transient: bool = False,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.rail = rail
        self.code = code
        self.transient = transient

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["error"]["rail"] = self.rail
        payload["error"]["provider_code"] = self.code
        return payload


class RateLimitedError(PayoutEngineError):
    """A metrics provider answered 429."""

    error_code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after: Optional[float] = None, **context: Any):
        super().__init__(message, **context)
        self.retry_after = retry_after


class InvalidTransitionError(PayoutEngineError):
    """Requested state change is not allowed from the current state."""

    error_code = "invalid_transition"
    http_status = 409


class LockUnavailableError(PayoutEngineError):
    """Another worker holds the payout lock for this key."""

    error_code = "lock_unavailable"
    http_status = 409


class ForbiddenError(PayoutEngineError):
    """Caller is known but may not perform this operation."""

    error_code = "forbidden"
    http_status = 403
