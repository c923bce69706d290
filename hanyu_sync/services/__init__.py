# =============================================================================
# hanyu_sync/services/__init__.py
# Shared Service Base for the Sync Components
# =============================================================================

from .base_service import BaseService, ServiceResult

__all__ = ["BaseService", "ServiceResult"]
