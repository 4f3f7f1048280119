"""
HTTP client for the metering API.

Provides paged access to expense bill records.
"""

from .billing_api import BillingAPIClient, BillingPage

__all__ = ["BillingAPIClient", "BillingPage"]
