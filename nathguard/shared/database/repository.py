"""Base repository pattern and storage error hierarchy.

Every stateful component (quota, vault, audit) talks to PostgreSQL through
a repository. Errors raised here are caught at the component edge, where
the component's fail-open policy applies.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class StorageTimeoutError(RepositoryError):
    """A storage call did not finish within its deadline."""
    pass


class ConflictError(RepositoryError):
    """Optimistic concurrency check kept failing."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses declare their column list and implement the row/entity
    conversion. Queries always select the declared columns explicitly so
    _row_to_entity can rely on column order.
    """

    columns: Sequence[str] = ()

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
        id_column: Optional[str] = None,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
            id_column: Single-column primary key used by find_by_id
        """
        if not self.columns:
            raise ValueError(f"{type(self).__name__} must declare columns")

        self.connection_manager = connection_manager
        self.table_name = table_name
        self.id_column = id_column

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @property
    def _select_list(self) -> str:
        return ", ".join(self.columns)

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert a database row (in self.columns order) to an entity."""
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to a column -> value mapping."""
        pass

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by primary key.

        Returns:
            Entity if found, None otherwise
        """
        if self.id_column is None:
            raise NotImplementedError(f"{self.table_name} has no single-column key")

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {self._select_list} FROM {self.table_name} "
                    f"WHERE {self.id_column} = %s",
                    (entity_id,)
                )
                row = cur.fetchone()

                if row is None:
                    return None

                return self._row_to_entity(row)

    def find_where(
        self,
        where: str,
        params: tuple,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        """Find entities matching a parameterised WHERE clause."""
        query = f"SELECT {self._select_list} FROM {self.table_name} WHERE {where}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT %s"
            params = tuple(params) + (limit,)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return [self._row_to_entity(row) for row in cur.fetchall()]
