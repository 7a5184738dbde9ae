"""Tenant identity middleware.

The upstream API gateway authenticates callers and forwards the tenant in
the ``X-Tenant-ID`` header.  This middleware validates the identifier and
stores it on ``request.state.tenant_id``; it never opens a database
session and keeps no process-wide tenant state.
"""

from __future__ import annotations

import logging

from billing_core.state.database import TENANT_ID_RE
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"

# Paths reachable without a tenant header.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/api/v1/billing/plans",
        "/api/v1/billing/webhooks",
        "/docs",
        "/openapi.json",
        "/redoc",
    }
)


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state.tenant_id`` from the tenant header."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        tenant_id = request.headers.get(TENANT_HEADER, "").strip()

        if tenant_id:
            if not TENANT_ID_RE.match(tenant_id):
                logger.warning("Rejected malformed tenant header on %s", request.url.path)
                return JSONResponse(status_code=400, content={"detail": "Invalid tenant identifier"})
            request.state.tenant_id = tenant_id
        elif request.url.path not in _PUBLIC_PATHS and request.method != "OPTIONS":
            return JSONResponse(status_code=401, content={"detail": "Tenant identity required"})

        return await call_next(request)
