"""API Routes Package."""

from api.routes import health, connections

__all__ = [
    "health",
    "connections",
]
