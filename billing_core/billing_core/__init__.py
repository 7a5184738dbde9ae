"""Billing core: plan catalog, pricing, subscription lifecycle and state store."""

__version__ = "0.4.0"
