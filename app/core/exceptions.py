"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception (double booking, illegal status transition)."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class ProvisioningError(Exception):
    """An external collaborator failed; callers recover locally."""

    def __init__(self, service: str, message: str):
        self.service = service
        self.message = message
        super().__init__(f"{service}: {message}")


class VideoProvisioningError(ProvisioningError):
    """Video room could not be created or released."""

    def __init__(self, message: str):
        super().__init__("video", message)


class CalendarProvisioningError(ProvisioningError):
    """Calendar event could not be created, updated or deleted."""

    def __init__(self, message: str):
        super().__init__("calendar", message)


class EmailDeliveryError(ProvisioningError):
    """Transactional email could not be sent."""

    def __init__(self, message: str):
        super().__init__("email", message)


class PaymentGatewayError(ProvisioningError):
    """Payment provider call failed."""

    def __init__(self, message: str):
        super().__init__("payments", message)


class WebhookSignatureError(Exception):
    """Webhook payload failed signature verification."""
