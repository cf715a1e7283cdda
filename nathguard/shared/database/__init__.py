"""Database access for the nathguard security layer.

Provides connection pooling, health checks, the schema for the three
security tables and the repository base class.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
    StorageTimeoutError,
    ConflictError,
)
from .schema import ensure_schema

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
    "StorageTimeoutError",
    "ConflictError",
    "ensure_schema",
]
