"""
Credit Ledger - API Module

FastAPI adapter for usage billing, payment webhooks and ledger queries.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
