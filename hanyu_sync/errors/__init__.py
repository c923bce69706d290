# =============================================================================
# hanyu_sync/errors/__init__.py
# Centralized Error Handling for the Offline Sync Core
# =============================================================================

from .exceptions import (
    HanyuSyncError,
    TransientRemoteFailure,
    PartialBatchFailure,
    NotFoundLocalAndRemote,
    MalformedCache,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    safe_execute,
    ErrorContext,
    error_boundary,
)

__all__ = [
    # Exceptions
    "HanyuSyncError",
    "TransientRemoteFailure",
    "PartialBatchFailure",
    "NotFoundLocalAndRemote",
    "MalformedCache",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "safe_execute",
    "ErrorContext",
    "error_boundary",
]
