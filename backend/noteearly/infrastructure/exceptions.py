"""
Custom Exceptions for NoteEarly Billing

Hierarchical exception classes for proper error handling across layers.
Each class carries the HTTP status the API layer answers with.
"""

from typing import Optional, Dict, Any


class NoteEarlyError(Exception):
    """Base exception for all NoteEarly errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class NotFoundError(NoteEarlyError):
    """Raised when a plan, user, subscription or seed record is missing."""
    status_code = 404


class ConflictError(NoteEarlyError):
    """Raised when a request would duplicate an active subscription."""
    status_code = 409


class ForbiddenError(NoteEarlyError):
    """Raised when the caller's role or plan does not permit the action."""
    status_code = 403


class InvalidStateError(NoteEarlyError):
    """Raised when a subscription is not in the state an operation requires."""
    status_code = 400

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, details, original_error)


class AuthenticationError(NoteEarlyError):
    """Raised when a request carries no usable credentials."""
    status_code = 401


class UpstreamServiceError(NoteEarlyError):
    """Raised when a collaborator (Stripe, database) fails unexpectedly."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        user_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if user_id:
            details["user_id"] = user_id
        super().__init__(message, details, original_error)


class WebhookSignatureError(NoteEarlyError):
    """Raised when a webhook payload fails signature verification."""
    status_code = 400


class ConfigurationError(NoteEarlyError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
