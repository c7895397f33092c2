"""Billing domain services used by the API routers."""
