# =============================================================================
# mymeds_core/errors/exceptions.py
# Custom Exception Hierarchy for the MyMeds data layer
# =============================================================================

from typing import Optional, Dict, Any


class MyMedsError(Exception):
    """
    Base exception for all MyMeds data layer errors.

    Attributes:
        message: Human-readable error description (for logs)
        code: Machine-readable error code (e.g., "FETCH_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
        user_message: Copy the UI shows for this error
    """

    DEFAULT_CODE = "MM_000"
    DEFAULT_USER_MESSAGE = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.DEFAULT_CODE
        self.details = details or {}
        self.recoverable = recoverable
        self.user_message = user_message or self.DEFAULT_USER_MESSAGE

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(MyMedsError):
    """Raised when configuration is invalid or missing"""

    DEFAULT_CODE = "CONFIG_001"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        kwargs.setdefault("recoverable", False)
        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# CACHE / FETCH EXCEPTIONS
# =============================================================================

class CacheError(MyMedsError):
    """Raised when a persisted cache record cannot be decoded"""

    DEFAULT_CODE = "CACHE_001"

    def __init__(self, message: str, cache_key: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if cache_key:
            details["cache_key"] = cache_key
        super().__init__(message=message, details=details, **kwargs)


class FetchError(MyMedsError):
    """Raised when a remote collection fetch fails"""

    DEFAULT_CODE = "FETCH_001"
    DEFAULT_USER_MESSAGE = "Could not load your data. Check your connection and retry."

    def __init__(
        self,
        message: str,
        cache_key: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if cache_key:
            details["cache_key"] = cache_key
        super().__init__(message=message, details=details, **kwargs)


class FetchTimeoutError(FetchError):
    """Raised when a remote fetch exceeds its collection timeout"""

    DEFAULT_CODE = "FETCH_002"

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        details = kwargs.pop("details", {})
        if timeout is not None:
            details["timeout_seconds"] = timeout
        super().__init__(message=message, details=details, **kwargs)


class OfflineError(FetchError):
    """Raised when an operation needs the network and the device is offline"""

    DEFAULT_CODE = "NET_001"
    DEFAULT_USER_MESSAGE = "You are offline. Connect to the internet and retry."


# =============================================================================
# DRAFT EXCEPTIONS
# =============================================================================

class DraftPersistenceError(MyMedsError):
    """Raised when a draft cannot be written to or removed from storage"""

    DEFAULT_CODE = "DRAFT_001"
    DEFAULT_USER_MESSAGE = "Your progress could not be saved locally."

    def __init__(self, message: str, draft_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if draft_id:
            details["draft_id"] = draft_id
        super().__init__(message=message, details=details, **kwargs)


class DraftValidationError(MyMedsError):
    """Raised when a draft payload does not match its draft type"""

    DEFAULT_CODE = "DRAFT_002"
    DEFAULT_USER_MESSAGE = "This draft can no longer be opened."

    def __init__(
        self,
        message: str,
        draft_id: Optional[str] = None,
        field: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if draft_id:
            details["draft_id"] = draft_id
        if field:
            details["field"] = field
        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# MUTATION EXCEPTIONS
# =============================================================================

class MutationError(MyMedsError):
    """Raised when a remote mutation fails"""

    DEFAULT_CODE = "MUT_001"
    DEFAULT_USER_MESSAGE = "Error updating reminder"

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if record_id:
            details["record_id"] = record_id
        if operation:
            details["operation"] = operation
        super().__init__(message=message, details=details, **kwargs)


class MutationRejectedError(MutationError):
    """Raised when the remote refuses a mutation on a business rule"""

    DEFAULT_CODE = "MUT_002"
    DEFAULT_USER_MESSAGE = "This change is not allowed."


class ReminderExpiredError(MutationRejectedError):
    """Raised when reactivating a run-once reminder whose time already passed"""

    DEFAULT_CODE = "MUT_003"
    DEFAULT_USER_MESSAGE = "This reminder's time has already passed. Create a new one."


class RecordNotFoundError(MutationError):
    """Raised when the record to mutate does not exist"""

    DEFAULT_CODE = "MUT_004"
    DEFAULT_USER_MESSAGE = "This item no longer exists."
