"""API router modules for the billing service."""

from __future__ import annotations

from api.routers import billing, health

__all__ = [
    "billing",
    "health",
]
