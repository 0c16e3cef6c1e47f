"""
Adapters package for the ticket cache.

Contains the HTTP client for the ticket REST API. The adapter maps
responses onto the shared error taxonomy and never retries on its own.
"""

from .tickets_client import TicketsClient
