"""Application error taxonomy

Services raise these instead of HTTPException so the same code can run from
request handlers and from background jobs. app.main maps them to HTTP
responses with a safe message.
"""

from typing import Optional


class AppError(Exception):
    """Base class for expected, caller-facing failures"""

    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed or out-of-range input"""

    status_code = 400
    default_message = "Invalid request"


class NotFoundError(AppError):
    """Missing client, profile, appointment or invoice"""

    status_code = 404
    default_message = "Not found"


class AuthorizationError(AppError):
    """Caller's role is not allowed to perform the operation"""

    status_code = 403
    default_message = "Not authorized"


class TransientProviderError(AppError):
    """Retryable failure from a third-party provider (SMS, email, calendar)"""

    status_code = 502
    default_message = "Upstream provider unavailable"

    def __init__(self, message: Optional[str] = None, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)


class ConfigurationError(AppError):
    """A provider the operation needs has no credentials configured; retrying will not help"""

    status_code = 503
    default_message = "Service not configured"
