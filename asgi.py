"""
asgi.py -- ASGI entry point for TenantGate.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --workers 2

Kept separate from api/main.py so deployment tooling has one stable import
path while the application module is free to grow.
"""

from api.main import app

__all__ = ["app"]
