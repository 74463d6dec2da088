"""
Custom exceptions for the webform sync service
"""

from typing import Any, Dict, Optional


class WebformSyncError(Exception):
    """Base exception for all service errors.

    Attributes:
        status_code: HTTP status the request pipeline answers with
        public: Whether ``message`` may be shown to the client
    """

    status_code = 500
    public = False
    generic_message = "Internal server error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    @property
    def client_message(self) -> str:
        return self.message if self.public else self.generic_message

    def __str__(self) -> str:
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}: {self.original_error}]"
        return base


class ConfigurationError(WebformSyncError):
    """Raised when configuration validation fails"""
    pass


class ValidationError(WebformSyncError):
    """Raised when a request is missing or has malformed required fields"""
    status_code = 400
    public = True


class AuthenticationError(WebformSyncError):
    """Raised when a request carries missing or invalid credentials"""
    status_code = 401
    public = True


class FilterRejection(WebformSyncError):
    """Raised when the origin or pattern filter rejects a request"""
    status_code = 403
    public = True


class NotFoundError(WebformSyncError):
    """Raised when a preset does not exist or is not owned by the caller"""
    status_code = 404
    public = True


class MethodNotAllowedError(WebformSyncError):
    """Raised when a known path is requested with an unsupported method"""
    status_code = 405
    public = True


class ServiceUnavailableError(WebformSyncError):
    """Raised when no request slot frees up in time"""
    status_code = 503
    public = True


class StorageError(WebformSyncError):
    """Raised on unexpected storage engine failures"""
    status_code = 500
    generic_message = "Storage failure"


class RequestTimeoutError(WebformSyncError):
    """Raised when the client stalls while sending the request body"""
    status_code = 500
    public = True
