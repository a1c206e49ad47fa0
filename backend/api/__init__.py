# api/__init__.py
from api.server import configure_logging, create_app

__all__ = [
    "configure_logging",
    "create_app",
]
