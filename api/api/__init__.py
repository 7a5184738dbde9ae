"""HTTP surface of the tenant billing service."""

__version__ = "0.4.0"
