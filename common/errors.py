"""
Error taxonomy shared by the gateway and the payment UI host.
"""
from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"
    EXTERNAL_UNAVAILABLE = "EXTERNAL_UNAVAILABLE"
    EXPIRED = "EXPIRED"
    # Terminal outcome of the outcome poller, never raised.
    SIMULATED_FAILURE = "SIMULATED_FAILURE"


class UniPayError(Exception):
    """Base error carrying a machine-readable code and a user-facing message."""

    code = "ERROR"
    category = ErrorCategory.VALIDATION
    http_status = 400

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(UniPayError):
    code = "VALIDATION"


class ExternalUnavailableError(UniPayError):
    code = "EXTERNAL_UNAVAILABLE"
    category = ErrorCategory.EXTERNAL_UNAVAILABLE
    http_status = 502
