"""HTTP service for tenant licensing, payment webhooks, and student verification."""

__version__ = "0.1.0"
