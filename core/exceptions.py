"""Core exceptions for the conversion event relay"""

from typing import Any, Dict, Optional


class TrackingError(Exception):
    """Base class for relay errors carrying a machine-readable code and details"""

    error_code = "tracking_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(TrackingError):
    """Raised when system configuration is invalid"""
    error_code = "configuration_error"


class ValidationFailure(TrackingError):
    """Raised when a submission is structurally invalid"""
    error_code = "validation_failure"


class SurfaceNotFound(TrackingError):
    """Raised when the tracking surface is unknown or inactive"""
    error_code = "surface_not_found"


class InvalidTransition(TrackingError):
    """Raised when an operator action is not allowed from the event's current status"""
    error_code = "invalid_transition"


class DeliveryError(TrackingError):
    """Base class for failures while handing events to the attribution API"""

    error_code = "delivery_error"
    retryable = True

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message,
            details={"code": code, "status_code": status_code},
        )
        self.code = code
        self.response = response
        self.status_code = status_code


class DeliveryRateLimited(DeliveryError):
    """The external API throttled the request"""
    error_code = "delivery_rate_limited"
    retryable = True


class DeliveryRejected(DeliveryError):
    """The external API refused the payload; retrying will not help"""
    error_code = "delivery_rejected"
    retryable = False


class DeliveryTransportFailure(DeliveryError):
    """Network failure, timeout or server-side error"""
    error_code = "delivery_transport_failure"
    retryable = True


class DeliveryExhausted(DeliveryError):
    """All delivery attempts were used without success"""

    error_code = "delivery_exhausted"
    retryable = False

    def __init__(self, attempts: int, last_error: str):
        super().__init__(
            f"Delivery failed after {attempts} attempts: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error
