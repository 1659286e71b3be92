"""
MySQL query executor.

PyMySQL is a blocking driver, so every round trip runs in a worker thread.
One connection is kept per executor and guarded by a lock. No automatic
retries.
"""

import asyncio
from typing import Any, Dict, Optional

import pymysql
from pymysql.cursors import DictCursor

from fedjoin.core.errors import BackendConnectionError, ExecutionError
from fedjoin.core.logging import log_performance
from fedjoin.queries.base import BaseQuery
from fedjoin.queries.jdbc import split_statements

# Server error codes for rejected credentials / unknown database
_AUTH_ERRORS = {1044, 1045, 1049}


class MysqlQuery(BaseQuery):
    """
    Executes SQL against MySQL through PyMySQL.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.connection: Optional[pymysql.connections.Connection] = None
        self._conn_lock = asyncio.Lock()

    @property
    def connection_identity(self) -> str:
        return f"{self.datasource.get('host', '')}{self.datasource.get('dbname', '')}"

    def _connect(self) -> pymysql.connections.Connection:
        return pymysql.connect(
            host=self.datasource.get("host", "localhost"),
            port=int(self.datasource.get("port", 3306)),
            user=self.datasource.get("username"),
            password=self.datasource.get("password") or "",
            database=self.datasource.get("dbname"),
            connect_timeout=int(self.datasource.get("timeout", 10)),
            cursorclass=DictCursor,
            autocommit=True,
        )

    async def _init(self) -> None:
        self.logger.info(
            "Connecting to MySQL",
            datasource_id=self.datasource_id,
            host=self.datasource.get("host"),
            dbname=self.datasource.get("dbname"),
        )
        try:
            self.connection = await asyncio.to_thread(self._connect)
        except pymysql.err.MySQLError as e:
            self.logger.error("Failed to connect to MySQL", datasource_id=self.datasource_id, error=str(e))
            raise BackendConnectionError(self.datasource_id, f"Unable to connect: {e}", cause=e) from e

    async def close(self) -> None:
        if self.connection is not None:
            connection, self.connection = self.connection, None
            await asyncio.to_thread(connection.close)
        await super().close()

    def _fetch(self, statement: str) -> list:
        self.connection.ping(reconnect=True)
        with self.connection.cursor() as cursor:
            cursor.execute(statement)
            return list(cursor.fetchall())

    @log_performance("MySQL query execution")
    async def execute_raw(self, query: str) -> Dict[str, Any]:
        if self.connection is None:
            raise BackendConnectionError(self.datasource_id, "Not connected")

        statement = split_statements(self.datasource_id, query)
        try:
            async with self._conn_lock:
                rows = await asyncio.to_thread(self._fetch, statement)
        except pymysql.err.OperationalError as e:
            code = e.args[0] if e.args and isinstance(e.args[0], int) else 0
            # 2xxx are client side connection errors
            if code in _AUTH_ERRORS or code >= 2000:
                raise BackendConnectionError(self.datasource_id, str(e), cause=e) from e
            raise ExecutionError(self.datasource_id, str(e), cause=e) from e
        except pymysql.err.MySQLError as e:
            raise ExecutionError(self.datasource_id, str(e), cause=e) from e

        return {"result": rows}
