"""
Routing Store Package

Persistence backends for routing state.
"""

from .base import RoutingStore
from .database import Base, DatabaseManager
from .memory import InMemoryRoutingStore
from .sql import SqlRoutingStore

__all__ = [
    "RoutingStore",
    "InMemoryRoutingStore",
    "SqlRoutingStore",
    "Base",
    "DatabaseManager",
]
