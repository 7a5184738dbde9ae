"""Middleware components for the billing API."""

from __future__ import annotations

from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.tenant import TenantContextMiddleware

__all__ = [
    "RequestLoggingMiddleware",
    "TenantContextMiddleware",
]
