"""
Base Repository Pattern for Database Operations.

This module provides a generic base repository with common read/write
helpers, error handling, logging, and transaction support for all domain
repositories. Queries are plain SQL with positional ``$n`` parameters
executed on the shared asyncpg pool.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Generic, List, Optional, Tuple, Type, TypeVar

import asyncpg

from ..schemas.database_models import BaseEntity
from ..utils.database import SupabaseClient, get_db_client

logger = logging.getLogger(__name__)

ModelType = TypeVar('ModelType', bound=BaseEntity)


class RepositoryError(Exception):
    """Base exception for repository operations."""
    pass


class EntityValidationError(RepositoryError):
    """Raised when entity validation fails."""
    pass


class DatabaseOperationError(RepositoryError):
    """Raised when database operations fail."""
    pass


class BaseRepository(Generic[ModelType]):
    """
    Base repository class providing common database operations.

    Concrete repositories set the row model and table name and add the
    domain queries they need on top of these helpers.
    """

    def __init__(
        self,
        model_class: Type[ModelType],
        table_name: str,
        db_client: Optional[SupabaseClient] = None,
    ):
        """
        Initialize the repository.

        Args:
            model_class: The Pydantic model class for this repository
            table_name: The database table name
            db_client: Optional database client, defaults to the global one
        """
        self.model_class = model_class
        self.table_name = table_name
        self.db_client = db_client or get_db_client()
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """
        Get a database connection with automatic cleanup.

        Raises:
            DatabaseOperationError: If connection acquisition fails
        """
        try:
            async with self.db_client.get_connection() as conn:
                yield conn
        except RepositoryError:
            raise
        except Exception as e:
            self._logger.error(f"Database connection failed: {e}")
            raise DatabaseOperationError(f"Connection failed: {e}")

    async def _execute_query(
        self,
        query: str,
        *args,
        fetch_one: bool = False,
        fetch_all: bool = True,
        connection: Optional[asyncpg.Connection] = None
    ) -> Optional[Any]:
        """
        Execute a database query with error handling.

        Args:
            query: SQL query to execute
            *args: Query parameters
            fetch_one: Whether to fetch only one row
            fetch_all: Whether to fetch all rows
            connection: Optional existing connection to use (transactions)

        Returns:
            Query results or None

        Raises:
            DatabaseOperationError: If query execution fails
        """
        self._logger.debug(f"Executing query: {query}")

        try:
            if connection:
                if fetch_one:
                    return await connection.fetchrow(query, *args)
                if fetch_all:
                    return await connection.fetch(query, *args)
                return await connection.execute(query, *args)

            return await self.db_client.execute_query(
                query, *args, fetch_one=fetch_one, fetch_all=fetch_all
            )
        except Exception as e:
            self._logger.error(f"Query execution failed on {self.table_name}: {e}")
            raise DatabaseOperationError(f"Query failed: {e}")

    async def _fetch_value(self, query: str, *args, connection: Optional[asyncpg.Connection] = None) -> Any:
        """Run a query and return the first column of the first row."""
        row = await self._execute_query(query, *args, fetch_one=True, connection=connection)
        return row[0] if row else None

    def _row_to_model(self, row: Optional[asyncpg.Record]) -> Optional[ModelType]:
        """
        Convert a database row to a Pydantic model.

        Raises:
            EntityValidationError: If model validation fails
        """
        if not row:
            return None

        try:
            return self.model_class.model_validate(dict(row))
        except Exception as e:
            self._logger.error(f"Model validation failed: {e}")
            raise EntityValidationError(f"Failed to create {self.model_class.__name__}: {e}")

    def _rows_to_models(self, rows: Optional[List[asyncpg.Record]]) -> List[ModelType]:
        return [model for model in (self._row_to_model(row) for row in rows or []) if model]

    @staticmethod
    def _build_assignments(values: Dict[str, Any], start_index: int = 1) -> Tuple[str, List[Any]]:
        """
        Build a ``col = $n`` list for an UPDATE statement.

        Returns:
            The SET clause body and its parameters in order
        """
        clauses = []
        params = []
        for offset, (column, value) in enumerate(values.items()):
            clauses.append(f"{column} = ${start_index + offset}")
            params.append(value)
        return ", ".join(clauses), params

    async def get_by_id(self, entity_id: str) -> Optional[ModelType]:
        """Get an entity by its ID."""
        query = f"SELECT * FROM {self.table_name} WHERE id = $1"
        row = await self._execute_query(query, entity_id, fetch_one=True)
        return self._row_to_model(row)

    async def count(self, where_clause: str = "", *args) -> int:
        """
        Count entities with optional filter.

        Args:
            where_clause: Optional WHERE clause (without WHERE keyword)
            *args: Parameters for the WHERE clause
        """
        query = f"SELECT COUNT(*) FROM {self.table_name}"
        if where_clause:
            query += f" WHERE {where_clause}"
        value = await self._fetch_value(query, *args)
        return int(value or 0)

    async def update_fields(
        self,
        entity_id: str,
        values: Dict[str, Any],
        connection: Optional[asyncpg.Connection] = None,
    ) -> Optional[ModelType]:
        """
        Update the given columns of one row.

        Returns:
            Updated entity if found, None otherwise
        """
        if not values:
            return await self.get_by_id(entity_id)

        assignments, params = self._build_assignments(values)
        query = (
            f"UPDATE {self.table_name} SET {assignments} "
            f"WHERE id = ${len(params) + 1} RETURNING *"
        )
        row = await self._execute_query(query, *params, entity_id, fetch_one=True, connection=connection)
        return self._row_to_model(row)

    async def delete(self, entity_id: str) -> bool:
        """
        Delete an entity by its ID.

        Returns:
            True if deleted, False if not found
        """
        query = f"DELETE FROM {self.table_name} WHERE id = $1 RETURNING id"
        row = await self._execute_query(query, entity_id, fetch_one=True)
        return row is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """
        Create a database transaction context.

        Raises:
            DatabaseOperationError: If the transaction fails
        """
        async with self.get_connection() as conn:
            try:
                async with conn.transaction():
                    self._logger.debug("Transaction started")
                    yield conn
                    self._logger.debug("Transaction committed")
            except RepositoryError:
                raise
            except Exception as e:
                self._logger.error(f"Transaction failed and rolled back: {e}")
                raise DatabaseOperationError(f"Transaction failed: {e}")
