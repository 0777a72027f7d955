"""API Package.

FastAPI server for the ERP integration core.
"""

from api.server import create_app

__all__ = [
    "create_app",
]
