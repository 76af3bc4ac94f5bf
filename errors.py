from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None,
                 details: Any = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class EmptyCartError(ValidationError):
    default_message = "Invalid customer or empty cart"


class InvalidAddressError(ValidationError):
    default_message = "Invalid address hierarchy"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class AuthorizationError(AppError):
    status_code = 401
    default_message = "Unauthorized"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class GatewayError(AppError):
    """Upstream payment API failure. `details` carries the raw gateway body."""
    status_code = 502
    default_message = "Payment gateway request failed"

    @property
    def raw_response(self):
        return self.details


class InternalError(AppError):
    status_code = 500
    default_message = "Internal server error"
