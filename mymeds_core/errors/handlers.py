# =============================================================================
# mymeds_core/errors/handlers.py
# Error Handling Utilities for the MyMeds data layer
# =============================================================================

from __future__ import annotations
import functools
import inspect
import traceback
from typing import Optional, Callable, TypeVar, Any

from mymeds_core.logging import get_logger
from .exceptions import MyMedsError

logger = get_logger(__name__)

T = TypeVar("T")

# Receives the user-facing copy for an error (a snackbar, a toast, a test list)
UserNotifier = Callable[[str], None]


def handle_error(
    error: Exception,
    notify: Optional[UserNotifier] = None,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> str:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        notify: Optional sink that displays the message to the user
        log_error: Whether to log the error
        user_message: Custom message to show user (uses the error's copy if None)

    Returns:
        The user-facing message that was (or would have been) shown
    """
    if isinstance(error, MyMedsError):
        message = user_message or error.user_message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.error(
            f"[{code}] {error}",
            extra={"details": details},
            exc_info=error,
        )

    if not recoverable:
        message = f"{message} Please contact support."

    if notify is not None:
        try:
            notify(message)
        except Exception as e:
            logger.error(f"Error in user notifier: {e}")

    return message


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    notify: Optional[UserNotifier] = None,
    reraise: bool = False,
    **kwargs,
) -> Optional[T]:
    """
    Execute a function with automatic error handling.

    Usage:
        ids = safe_execute(
            store.get_all_draft_ids,
            default=[],
            error_message="Could not list drafts",
        )
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, notify=notify, user_message=error_message)
        if reraise:
            raise
        return default


class ErrorContext:
    """
    Context manager for error handling with automatic logging and user feedback.

    Usage:
        with ErrorContext("Replaying queued mutation", recoverable=True):
            ...

    Usable with ``async with`` around awaited work as well.
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
        notify: Optional[UserNotifier] = None,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.notify = notify
        self.error: Optional[BaseException] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.debug(f"Completed: {self.operation}")
            return False

        if not issubclass(exc_type, Exception):
            return False

        self.error = exc_val
        if isinstance(exc_val, MyMedsError):
            handle_error(exc_val, notify=self.notify)
        else:
            handle_error(
                exc_val,
                notify=self.notify,
                user_message=f"Error during: {self.operation}",
            )

        return self.recoverable

    async def __aenter__(self) -> ErrorContext:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        return self.__exit__(exc_type, exc_val, exc_tb)


def error_boundary(
    default_return: Any = None,
    error_message: Optional[str] = None,
    log: bool = True,
    notify: Optional[UserNotifier] = None,
):
    """
    Decorator to wrap functions (sync or async) with error handling.

    Usage:
        @error_boundary(default_return=[], error_message="Drafts unavailable")
        async def list_drafts() -> list[str]:
            ...
    """
    def report(func: Callable, e: Exception) -> None:
        if log:
            logger.error(f"Error in {func.__name__}: {e}", exc_info=True)
        if error_message and notify is not None:
            notify(error_message)

    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    report(func, e)
                    return default_return

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                report(func, e)
                return default_return

        return wrapper

    return decorator
