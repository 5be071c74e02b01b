"""API Package.

FastAPI server exposing webhook receivers and sync triggers.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
