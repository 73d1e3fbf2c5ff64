"""API Routes Package."""

from api.routes import auth, health, invoices, polling, webhooks

__all__ = [
    "auth",
    "health",
    "invoices",
    "polling",
    "webhooks",
]
