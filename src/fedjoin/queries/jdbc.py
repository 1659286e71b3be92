"""
Query executor for sources addressed by a JDBC-style connection string.

Connection strings such as ``jdbc:postgresql://host:5432/db?user=u`` are
handed to asyncpg after the ``jdbc:`` prefix is stripped. No automatic
retries: a failed execution is reported once to the caller.
"""

from typing import Any, Dict, Optional

import asyncpg
import sqlparse
from asyncpg.pool import Pool

from fedjoin.core.errors import BackendConnectionError, ExecutionError
from fedjoin.core.logging import log_performance
from fedjoin.queries.base import BaseQuery


def split_statements(datasource_id: str, query: str) -> str:
    """
    Return the single statement held by ``query``.

    Raises:
        ExecutionError: if the populated text holds more than one statement
    """
    statements = [s.strip() for s in sqlparse.split(query) if s.strip()]
    if len(statements) != 1:
        raise ExecutionError(
            datasource_id,
            f"Expected exactly one SQL statement, got {len(statements)}",
        )
    return statements[0].rstrip(";").strip()


class JdbcQuery(BaseQuery):
    """
    Executes SQL over a pooled asyncpg connection.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.pool: Optional[Pool] = None

    @property
    def connection_string(self) -> str:
        return self.datasource.get("connection_string", "")

    @property
    def connection_identity(self) -> str:
        return self.connection_string

    @property
    def dsn(self) -> str:
        dsn = self.connection_string
        if dsn.startswith("jdbc:"):
            dsn = dsn[len("jdbc:"):]
        return dsn

    async def _init(self) -> None:
        """Create the connection pool and validate it with a trivial query."""
        self.logger.info("Connecting to JDBC datasource", datasource_id=self.datasource_id)
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                user=self.datasource.get("username"),
                password=self.datasource.get("password"),
                min_size=1,
                max_size=int(self.datasource.get("pool_size", 10)),
                command_timeout=float(self.datasource.get("timeout", 30)),
            )
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            self.logger.error("Failed to connect", datasource_id=self.datasource_id, error=str(e))
            if self.pool is not None:
                await self.pool.close()
                self.pool = None
            raise BackendConnectionError(self.datasource_id, f"Unable to connect: {e}", cause=e) from e

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
        await super().close()

    @log_performance("JDBC query execution")
    async def execute_raw(self, query: str) -> Dict[str, Any]:
        if self.pool is None:
            raise BackendConnectionError(self.datasource_id, "Not connected")

        statement = split_statements(self.datasource_id, query)
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(statement)
        except (OSError, asyncpg.InterfaceError) as e:
            raise BackendConnectionError(self.datasource_id, str(e), cause=e) from e
        except asyncpg.PostgresError as e:
            raise ExecutionError(self.datasource_id, str(e), cause=e) from e

        return {"result": [dict(row) for row in rows]}
