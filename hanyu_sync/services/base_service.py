# =============================================================================
# hanyu_sync/services/base_service.py
# Shared Base for the Sync Components
# =============================================================================

from __future__ import annotations
from abc import ABC
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from hanyu_sync.errors import HanyuSyncError, handle_error
from hanyu_sync.logging import LogContext, get_logger


@dataclass
class ServiceResult:
    """
    Outcome of a sync-core operation.

    Components report failures here instead of raising into the UI shell.
    Truthiness follows `success`.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, data: Any = None, metadata: Optional[Dict[str, Any]] = None) -> ServiceResult:
        return cls(True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, error_code: str = "UNKNOWN",
             metadata: Optional[Dict[str, Any]] = None) -> ServiceResult:
        return cls(False, error=error, error_code=error_code, metadata=metadata)

    @classmethod
    def from_exception(cls, e: Exception, data: Any = None) -> ServiceResult:
        if not isinstance(e, HanyuSyncError):
            return cls(False, data=data, error=str(e), error_code="EXCEPTION")
        return cls(False, data=data, error=e.message, error_code=e.code, metadata=e.details)


class BaseService(ABC):
    """
    Base for the sync-core components: a per-class logger, timed operation
    logs and `safe_execute`, which folds exceptions into ServiceResult.
    """

    def __init__(self):
        self.logger = get_logger(f"hanyu_sync.{type(self).__name__}")

    def log_operation(self, operation: str) -> LogContext:
        """
        Usage:
            with self.log_operation("Draining vocab queue"):
                ...
        """
        return LogContext(self.logger, operation)

    def safe_execute(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> ServiceResult:
        """Run `func` under a timed log; a ServiceResult return passes through."""
        with self.log_operation(operation):
            try:
                outcome = func(*args, **kwargs)
            except HanyuSyncError as e:
                handle_error(e, context=operation)
                return ServiceResult.from_exception(e)
            except Exception as e:
                self.logger.error(f"{operation} failed: {e}", exc_info=True)
                return ServiceResult.fail(str(e))
        return outcome if isinstance(outcome, ServiceResult) else ServiceResult.ok(outcome)
