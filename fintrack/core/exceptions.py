"""
Custom Exception Hierarchy

Structured exceptions for the webhook ingestion pipeline and its operator API.
``ProcessingError`` subclasses carry a ``permanent`` flag that the retry policy
uses to tell malformed payloads apart from transient outages.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook ingress errors (2xxx)
    WEBHOOK_MISSING_HEADERS = "ERR_2001"
    WEBHOOK_VERIFICATION_FAILED = "ERR_2002"
    WEBHOOK_INVALID_PAYLOAD = "ERR_2003"
    WEBHOOK_EVENT_NOT_FOUND = "ERR_2004"
    WEBHOOK_ALREADY_PROCESSED = "ERR_2005"

    # Event processing errors (3xxx)
    PROCESSING_FAILED = "ERR_3000"
    MISSING_EMAIL = "ERR_3001"
    MALFORMED_EVENT = "ERR_3002"

    # User errors (4xxx)
    USER_NOT_FOUND = "ERR_4001"
    USER_CONFLICT = "ERR_4002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ==================== Ingress ====================

class WebhookException(AppException):
    """Base exception for requests rejected before anything is logged"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class MissingHeadersError(WebhookException):
    """Raised when one of the svix-id / svix-timestamp / svix-signature headers is absent"""

    def __init__(self, missing: list[str]):
        super().__init__(
            message="Missing required headers",
            error_code=ErrorCode.WEBHOOK_MISSING_HEADERS,
            details={"missing": missing}
        )


class VerificationFailedError(WebhookException):
    """Raised when the signature does not match or the timestamp is outside tolerance"""

    def __init__(self, reason: str):
        super().__init__(
            message="Webhook verification failed",
            error_code=ErrorCode.WEBHOOK_VERIFICATION_FAILED,
            details={"reason": reason}
        )


class InvalidPayloadError(WebhookException):
    """Raised when a verified body is not a ``{type, data}`` event envelope"""

    def __init__(self, reason: str):
        super().__init__(
            message="Invalid webhook payload",
            error_code=ErrorCode.WEBHOOK_INVALID_PAYLOAD,
            details={"reason": reason}
        )


# ==================== Operator API ====================

class WebhookEventNotFoundError(NotFoundException):
    """Raised when an event id is not present in the webhook log"""

    def __init__(self, event_id: str):
        super().__init__(
            resource="Webhook event",
            identifier=event_id,
            error_code=ErrorCode.WEBHOOK_EVENT_NOT_FOUND
        )


class WebhookAlreadyProcessedError(AppException):
    """Raised when a manual retry targets an event that already succeeded"""

    def __init__(self, event_id: str):
        super().__init__(
            message=f"Webhook event {event_id} was already processed successfully",
            error_code=ErrorCode.WEBHOOK_ALREADY_PROCESSED,
            status_code=400,
            details={"event_id": event_id}
        )


class UserNotFoundError(NotFoundException):
    """Raised when no local user exists for a subject id"""

    def __init__(self, subject_id: str):
        super().__init__(
            resource="User",
            identifier=subject_id,
            error_code=ErrorCode.USER_NOT_FOUND
        )


# ==================== Processing ====================

class ProcessingError(AppException):
    """
    Base exception for event processor failures.

    ``permanent=True`` means retrying the same payload can never succeed;
    the retry policy marks such events ``failure`` immediately.
    """

    permanent = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.PROCESSING_FAILED,
        subject_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )
        if subject_id:
            self.details["subject_id"] = subject_id


class MissingEmailError(ProcessingError):
    """Raised when a user payload carries no email address"""

    permanent = True

    def __init__(self, subject_id: str | None = None):
        super().__init__(
            message="No email address found",
            error_code=ErrorCode.MISSING_EMAIL,
            subject_id=subject_id
        )


class MalformedEventError(ProcessingError):
    """Raised when a stored or inbound event cannot be decoded into its typed variant"""

    permanent = True

    def __init__(self, event_type: str, reason: str):
        super().__init__(
            message=f"Malformed {event_type} event: {reason}",
            error_code=ErrorCode.MALFORMED_EVENT,
            details={"event_type": event_type}
        )


class UserConflictError(ProcessingError):
    """
    Raised when a user cannot be stored because its email or username
    belongs to another subject.

    Transient for the retry policy: the other subject's own update or
    deletion event usually frees the value.
    """

    def __init__(self, subject_id: str):
        super().__init__(
            message="Email or username already belongs to another user",
            error_code=ErrorCode.USER_CONFLICT,
            subject_id=subject_id
        )
        self.status_code = 409


def is_permanent_failure(exc: BaseException) -> bool:
    """True when ``exc`` is a processing error that retrying cannot fix"""
    return isinstance(exc, ProcessingError) and exc.permanent
