"""API Routes Package."""

from api.routes import health, sync, webhooks

__all__ = [
    "health",
    "sync",
    "webhooks",
]
