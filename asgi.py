"""
asgi.py -- ASGI entry point for DocAccess.

Keeps server processes pointed at a stable module path while api/main.py
remains importable on its own (tests import api.main directly).

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
