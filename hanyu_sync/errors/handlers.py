# =============================================================================
# hanyu_sync/errors/handlers.py
# Error Handling Utilities for the Offline Sync Core
# =============================================================================

from __future__ import annotations
import copy
import functools
from typing import Optional, Callable, TypeVar, Any

from hanyu_sync.logging import get_logger
from .exceptions import HanyuSyncError

logger = get_logger(__name__)

T = TypeVar("T")


def handle_error(
    error: Exception,
    log_error: bool = True,
    context: Optional[str] = None,
) -> dict:
    """
    Centralized error handling function.

    Recoverable sync errors are logged at WARNING, everything else at ERROR
    with a traceback.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        context: Optional description of the operation that failed

    Returns:
        Dictionary describing the error (see HanyuSyncError.to_dict)
    """
    if isinstance(error, HanyuSyncError):
        info = error.to_dict()
    else:
        info = {
            "error_type": error.__class__.__name__,
            "code": "UNKNOWN",
            "message": str(error),
            "details": {},
            "recoverable": True,
        }

    if log_error:
        prefix = f"{context}: " if context else ""
        if isinstance(error, HanyuSyncError) and error.recoverable:
            logger.warning(f"{prefix}[{info['code']}] {info['message']}")
        else:
            logger.error(
                f"{prefix}[{info['code']}] {info['message']}",
                exc_info=error,
            )

    return info


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    context: Optional[str] = None,
    reraise: bool = False,
    **kwargs,
) -> Optional[T]:
    """
    Execute a function with automatic error handling.

    Usage:
        count = safe_execute(tracker.get_local_learned_count, default=0)
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, context=context)
        if reraise:
            raise
        return default


class ErrorContext:
    """
    Context manager that logs an operation and contains its failure.

    Recoverable errors are suppressed so the next step of a pipeline still
    runs; the captured error is available as ``ctx.error``.

    Usage:
        with ErrorContext("Flush pending minutes") as ctx:
            aggregator.flush_pending()
        if ctx.error:
            ...
    """

    def __init__(self, operation: str, recoverable: bool = True):
        self.operation = operation
        self.recoverable = recoverable
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
        handle_error(exc_val, context=f"Error during: {self.operation}")
        return self.recoverable


def error_boundary(
    default_return: Any = None,
    log: bool = True,
):
    """
    Decorator that converts any exception into a fresh copy of ``default_return``.

    Usage:
        @error_boundary(default_return=[])
        def get_local_learned_list(self) -> List[dict]:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log:
                    handle_error(e, context=f"Error in {func.__name__}")
                return copy.copy(default_return)

        return wrapper

    return decorator
