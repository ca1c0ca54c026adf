"""API middleware package."""

from src.crm_sync.api.middleware.logging import LoggingMiddleware
from src.crm_sync.core.tenant import TenantMiddleware

__all__ = ["LoggingMiddleware", "TenantMiddleware"]
