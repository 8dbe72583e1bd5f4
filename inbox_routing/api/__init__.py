"""HTTP surface for conversation routing."""

from .app import build_store, create_app
from .routes import init_routes, router as routing_router

__all__ = [
    "create_app",
    "build_store",
    "init_routes",
    "routing_router",
]
