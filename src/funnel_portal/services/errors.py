"""
Service layer exceptions.

Each error carries the HTTP status and error code the API answers with.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for business rule failures."""

    status_code: int = 400
    error_code: str = "SERVICE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailedError(ServiceError):
    """Request data breaks a business rule."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class ConflictError(ServiceError):
    """The resource already exists."""
    status_code = 400
    error_code = "CONFLICT"


class PaymentFailedError(ServiceError):
    """A charge was declined or did not complete."""
    status_code = 402
    error_code = "PAYMENT_FAILED"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class ProvisioningError(ServiceError):
    """Access could not be granted after a successful payment."""
    status_code = 500
    error_code = "PROVISIONING_FAILED"
