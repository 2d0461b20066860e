# =============================================================================
# mymeds_core/errors/__init__.py
# Centralized Error Handling for the MyMeds data layer
# =============================================================================

from .exceptions import (
    MyMedsError,
    ConfigurationError,
    CacheError,
    FetchError,
    FetchTimeoutError,
    OfflineError,
    DraftPersistenceError,
    DraftValidationError,
    MutationError,
    MutationRejectedError,
    ReminderExpiredError,
    RecordNotFoundError,
)

from .handlers import (
    handle_error,
    safe_execute,
    ErrorContext,
    error_boundary,
)

__all__ = [
    # Exceptions
    "MyMedsError",
    "ConfigurationError",
    "CacheError",
    "FetchError",
    "FetchTimeoutError",
    "OfflineError",
    "DraftPersistenceError",
    "DraftValidationError",
    "MutationError",
    "MutationRejectedError",
    "ReminderExpiredError",
    "RecordNotFoundError",
    # Handlers
    "handle_error",
    "safe_execute",
    "ErrorContext",
    "error_boundary",
]
