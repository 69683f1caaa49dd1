"""
Database connection utility for Supabase integration.

This module provides the asyncpg connection pool used by the repositories,
the service-role Supabase client used for auth administration and storage,
retry logic and health checks.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

import asyncpg
import tenacity
from asyncpg import Connection, Pool
from supabase import Client, create_client
from supabase.lib.client_options import ClientOptions
from tenacity import retry, stop_after_attempt, wait_exponential

from ..config import get_config

logger = logging.getLogger(__name__)


async def _init_connection(connection: Connection) -> None:
    """Decode json and jsonb columns into Python objects."""
    for type_name in ("json", "jsonb"):
        await connection.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class DatabaseConnectionError(Exception):
    """Raised when database connection fails."""
    pass


class SupabaseClient:
    """
    Supabase client wrapper with connection pooling and retry logic.

    The Supabase client is created with the service role key; row level
    security is enforced by the routers, not by the database.
    """

    def __init__(self):
        self.config = get_config()
        self._client: Optional[Client] = None
        self._pg_pool: Optional[Pool] = None
        self._connection_stats = {
            "total_connections": 0,
            "failed_connections": 0,
            "last_connection_time": None,
            "last_failure_time": None,
        }

    @property
    def client(self) -> Client:
        """
        Get the service-role Supabase client instance.

        Raises:
            DatabaseConnectionError: If client initialization fails.
        """
        if self._client is None:
            self._initialize_client()
        return self._client

    def _initialize_client(self) -> None:
        """Initialize the Supabase client with configuration."""
        try:
            options = ClientOptions(
                postgrest_client_timeout=self.config.supabase.timeout,
                storage_client_timeout=self.config.supabase.timeout,
                auto_refresh_token=False,
                persist_session=False,
            )

            self._client = create_client(
                self.config.supabase.url,
                self.config.supabase.service_role_key,
                options=options
            )

            self._connection_stats["last_connection_time"] = datetime.now(timezone.utc)
            self._connection_stats["total_connections"] += 1

            logger.info("Supabase client initialized successfully")

        except Exception as e:
            self._connection_stats["failed_connections"] += 1
            self._connection_stats["last_failure_time"] = datetime.now(timezone.utc)
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise DatabaseConnectionError(f"Client initialization failed: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=tenacity.retry_if_exception_type(DatabaseConnectionError),
        reraise=True,
    )
    async def get_postgres_pool(self) -> Pool:
        """
        Get or create the PostgreSQL connection pool.

        Raises:
            DatabaseConnectionError: If pool creation fails.
        """
        if self._pg_pool is None:
            await self._create_postgres_pool()
        return self._pg_pool

    async def _create_postgres_pool(self) -> None:
        """Create the PostgreSQL connection pool."""
        db = self.config.database
        try:
            self._pg_pool = await asyncpg.create_pool(
                db.url,
                min_size=max(1, db.pool_size // 2),
                max_size=db.pool_size,
                max_inactive_connection_lifetime=db.pool_recycle,
                timeout=db.pool_timeout,
                command_timeout=60,
                statement_cache_size=0,  # Supavisor transaction mode has no prepared statements
                ssl='require' if db.require_ssl else None,
                server_settings={'application_name': 'funnel_portal'},
                init=_init_connection,
            )
            self._connection_stats["total_connections"] += 1
            self._connection_stats["last_connection_time"] = datetime.now(timezone.utc)

            logger.info(f"PostgreSQL connection pool created with size {db.pool_size}")

        except Exception as e:
            self._connection_stats["failed_connections"] += 1
            self._connection_stats["last_failure_time"] = datetime.now(timezone.utc)
            logger.error(f"Failed to create PostgreSQL connection pool: {e}")
            raise DatabaseConnectionError(f"Pool creation failed: {e}")

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[Connection, None]:
        """
        Get a database connection from the pool.

        Raises:
            DatabaseConnectionError: If connection acquisition fails.
        """
        pool = await self.get_postgres_pool()
        try:
            connection = await pool.acquire(timeout=self.config.database.pool_timeout)
        except Exception as e:
            logger.error(f"Database connection error: {e}")
            raise DatabaseConnectionError(f"Connection failed: {e}")

        try:
            yield connection
        finally:
            await pool.release(connection)

    async def execute_query(
        self,
        query: str,
        *args,
        fetch_one: bool = False,
        fetch_all: bool = True
    ) -> Optional[Any]:
        """
        Execute a database query with automatic connection management.

        Args:
            query: SQL query to execute.
            *args: Query parameters.
            fetch_one: Whether to fetch only one row.
            fetch_all: Whether to fetch all rows.

        Returns:
            Query results or None.
        """
        async with self.get_connection() as conn:
            if fetch_one:
                return await conn.fetchrow(query, *args)
            if fetch_all:
                return await conn.fetch(query, *args)
            return await conn.execute(query, *args)

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the database connection.

        Returns:
            Dict containing health check results.
        """
        health_status = {
            "status": "unknown",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connection_stats": self._connection_stats.copy(),
            "tests": {}
        }

        try:
            start_time = time.time()
            client = self.client
            has_auth = hasattr(client, 'auth')
            has_storage = hasattr(client, 'storage')
            supabase_latency = (time.time() - start_time) * 1000

            health_status["tests"]["supabase_client"] = {
                "status": "healthy" if has_auth and has_storage else "unhealthy",
                "latency_ms": round(supabase_latency, 2),
            }
        except Exception as e:
            health_status["tests"]["supabase_client"] = {
                "status": "unhealthy",
                "error": str(e)
            }

        try:
            start_time = time.time()
            result = await self.execute_query("SELECT 1 as health_check", fetch_one=True)
            pg_latency = (time.time() - start_time) * 1000

            health_status["tests"]["postgresql_pool"] = {
                "status": "healthy" if result else "unhealthy",
                "latency_ms": round(pg_latency, 2),
            }
        except Exception as e:
            health_status["tests"]["postgresql_pool"] = {
                "status": "unhealthy",
                "error": str(e)
            }

        all_tests_healthy = all(
            test.get("status") == "healthy"
            for test in health_status["tests"].values()
        )
        health_status["status"] = "healthy" if all_tests_healthy else "unhealthy"

        return health_status

    async def close(self) -> None:
        """Close all database connections."""
        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None
            logger.info("PostgreSQL connection pool closed")

        self._client = None
        logger.info("Database connections closed")


# Global database client instance
db_client: Optional[SupabaseClient] = None


def get_db_client() -> SupabaseClient:
    """
    Get the global database client instance.

    Returns:
        SupabaseClient: The database client instance.
    """
    global db_client
    if db_client is None:
        db_client = SupabaseClient()
    return db_client


async def close_db_connections() -> None:
    """Close all database connections."""
    global db_client
    if db_client:
        await db_client.close()
        db_client = None
