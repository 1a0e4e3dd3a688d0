"""
CONTENT RAIL - API Module

FastAPI server for content registration, licensing and gated access.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
