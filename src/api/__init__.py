"""
SETTLEMENT RAIL - API Module

FastAPI server exposing:
- Settlement routing with idempotency keys
- Rail ranking diagnostics
- Ledger usage and overflow queue
- Audit chain verification
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
