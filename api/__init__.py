"""API Package.

FastAPI server for registry invoice reconciliation.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
