"""Tenant licensing core: ledger, payment events, plan catalog, and persistence."""

__version__ = "0.1.0"
