"""
PostgreSQL Client Wrapper

asyncpg connection pool with explicit transaction scopes. Repositories run
single statements through ``query``/``query_row``/``execute`` and pass the
connection yielded by ``transaction()`` when several statements must commit
together.

Usage:
    from core.postgres_client import PostgresClientWrapper

    db = PostgresClientWrapper(service_name="credit_service")

    async with db.transaction() as conn:
        row = await db.query_row(
            "SELECT * FROM credit.user_credits WHERE user_id = $1 FOR UPDATE",
            [user_id],
            conn=conn,
        )
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper around an asyncpg pool.

    Provides:
    - Lazy pool creation from InfraConfig / overrides
    - Transaction scopes yielding a pinned connection
    - Dict-returning query helpers that accept an optional connection
    """

    def __init__(
        self,
        service_name: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            host: PostgreSQL host (defaults to InfraConfig)
            port: PostgreSQL port (defaults to 5432)
            database: Database name (defaults to 'postgres')
            username: Database username
            password: Database password
            min_size: Minimum pool size
            max_size: Maximum pool size
            config: Optional InfraConfig (loaded from environment if omitted)
        """
        config = config or InfraConfig.from_env()

        self.service_name = service_name
        self.host = host or config.postgres_host
        self.port = port or config.postgres_port
        self.database = database or config.postgres_db
        self.username = username or config.postgres_user
        self.password = password if password is not None else config.postgres_password
        self.min_size = min_size or config.postgres_min_pool
        self.max_size = max_size or config.postgres_max_pool

        self._pool: Optional[asyncpg.Pool] = None

        logger.info(f"PostgreSQL client initialized for {service_name}: {self.host}:{self.port}/{self.database}")

    @property
    def pool(self) -> asyncpg.Pool:
        """Get underlying asyncpg pool"""
        if self._pool is None:
            raise RuntimeError("PostgreSQL pool is not connected")
        return self._pool

    async def connect(self):
        """Create the connection pool (idempotent)"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.username,
            password=self.password,
            min_size=self.min_size,
            max_size=self.max_size,
            server_settings={"application_name": self.service_name},
        )
        logger.info(f"PostgreSQL pool ready ({self.min_size}-{self.max_size} connections)")

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()

    @asynccontextmanager
    async def transaction(self, isolation: str = "read_committed") -> AsyncIterator[asyncpg.Connection]:
        """
        Open a transaction on a pooled connection.

        Commits when the block exits normally, rolls back on any exception.
        Row locks taken with ``FOR UPDATE`` inside the block are held until then.
        """
        await self.connect()
        async with self.pool.acquire() as conn:
            async with conn.transaction(isolation=isolation):
                yield conn

    @asynccontextmanager
    async def _connection(self, conn: Optional[asyncpg.Connection]) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        await self.connect()
        async with self.pool.acquire() as acquired:
            yield acquired

    async def health_check(self) -> Optional[Dict]:
        """Check database health"""
        try:
            async with self._connection(None) as conn:
                await conn.fetchval("SELECT 1")
            return {"healthy": True}
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def query(
        self, sql: str, params: Optional[List[Any]] = None, conn: Optional[asyncpg.Connection] = None
    ) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        async with self._connection(conn) as c:
            rows = await c.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(
        self, sql: str, params: Optional[List[Any]] = None, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        async with self._connection(conn) as c:
            row = await c.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(
        self, sql: str, params: Optional[List[Any]] = None, conn: Optional[asyncpg.Connection] = None
    ) -> int:
        """Execute SQL statement and return the number of affected rows"""
        async with self._connection(conn) as c:
            status = await c.execute(sql, *(params or []))
        # asyncpg returns a command tag such as "UPDATE 1"
        try:
            return int(status.split()[-1])
        except (ValueError, IndexError):
            return 0

    async def run_script(self, script: str) -> None:
        """Run a multi-statement SQL script (no parameters) in one transaction"""
        async with self.transaction() as conn:
            await conn.execute(script)

    async def close(self):
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")
