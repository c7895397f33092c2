"""API router modules for the billing service."""

from __future__ import annotations

from billing_api.routers import billing, health, student_verification

__all__ = [
    "billing",
    "health",
    "student_verification",
]
