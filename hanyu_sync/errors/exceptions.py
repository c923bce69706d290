# =============================================================================
# hanyu_sync/errors/exceptions.py
# Exception Hierarchy for the Offline Sync Core
# =============================================================================
"""
Every sync-core failure derives from HanyuSyncError and carries a stable code.

Subclasses list the keyword context they accept in `context_fields`; those
values land in `details` (None values are dropped) so handlers can log them
uniformly.
"""

from typing import Any, Dict, Optional, Tuple


class HanyuSyncError(Exception):
    """
    Base exception for all sync-core errors.

    Attributes:
        message: Human-readable description
        code: Stable machine-readable code, e.g. "REMOTE_001"
        details: Structured context (table, key, row counts...)
        recoverable: False when the caller cannot fall back to local state
    """

    code: str = "SYNC_000"
    recoverable: bool = True
    context_fields: Tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        unknown = set(context) - set(self.context_fields)
        if unknown:
            raise TypeError(f"{type(self).__name__} got unexpected context {sorted(unknown)}")

        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable
        self.details = dict(details or {})
        for name in self.context_fields:
            if context.get(name) is not None:
                self.details[name] = context[name]

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        return f"{text} | Details: {self.details}" if self.details else text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# REMOTE STORE
# =============================================================================

class TransientRemoteFailure(HanyuSyncError):
    """A Supabase read, write or procedure call did not complete."""
    code = "REMOTE_001"
    context_fields = ("table", "operation")


class PartialBatchFailure(HanyuSyncError):
    """A batched upsert stopped part way; the whole batch is retried later."""
    code = "BATCH_001"
    context_fields = ("table", "failed_rows", "total_rows")


# =============================================================================
# LOCAL DATA
# =============================================================================

class NotFoundLocalAndRemote(HanyuSyncError):
    """Cache miss and the remote fetch failed too."""
    code = "DATA_404"
    context_fields = ("cache_key",)


class MalformedCache(HanyuSyncError):
    # Read paths treat this as a miss
    code = "CACHE_001"
    context_fields = ("key",)


# =============================================================================
# CONFIGURATION
# =============================================================================

class ConfigurationError(HanyuSyncError):
    """Missing or invalid setting."""
    code = "CONFIG_001"
    recoverable = False
    context_fields = ("config_key",)
