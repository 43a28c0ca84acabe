"""
MySQL / MariaDB source connector (aiomysql).
"""

from typing import Any, AsyncIterator, List, Optional
import asyncio
import errno
import logging
import socket

import aiomysql
import pymysql

from core.exceptions import (
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    ConnectorError,
    HostUnreachable,
    QueryError,
)
from ingestion.connectors.base import Row, SourceConnector
from ingestion.query_builder import Fragment, bind, compose

logger = logging.getLogger(__name__)

ER_ACCESS_DENIED = 1045
CR_CONN_HOST_ERROR = 2003
CR_UNKNOWN_HOST = 2005
CR_SERVER_GONE = 2006
CR_SERVER_LOST = 2013

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EHOSTDOWN}

_SYSTEM_SCHEMAS = "('information_schema', 'mysql', 'performance_schema', 'sys')"

_TABLES_SQL = (
    "SELECT TABLE_SCHEMA AS table_schema, TABLE_NAME AS table_name FROM information_schema.TABLES "
    f"WHERE TABLE_SCHEMA NOT IN {_SYSTEM_SCHEMAS} "
    "ORDER BY TABLE_SCHEMA, TABLE_NAME"
)

_COLUMNS_SQL = (
    "SELECT COLUMN_NAME AS column_name, DATA_TYPE AS data_type, IS_NULLABLE AS is_nullable, "
    "COLUMN_DEFAULT AS column_default, COLUMN_KEY = 'PRI' AS is_primary_key "
    "FROM information_schema.COLUMNS "
    "WHERE TABLE_NAME = {} AND TABLE_SCHEMA = COALESCE({}, DATABASE()) "
    "ORDER BY ORDINAL_POSITION"
)


class MySQLConnector(SourceConnector):
    """Connector for MySQL sources; results stream through an unbuffered cursor."""

    dialect = "mysql"

    @property
    def default_port(self) -> int:
        return self.settings.MYSQL_DEFAULT_PORT

    async def _connect(self, password: str):
        return await aiomysql.connect(
            host=self.descriptor.host,
            port=self.port,
            user=self.descriptor.user,
            password=password or "",
            db=self.descriptor.database,
            connect_timeout=self.settings.CONNECT_TIMEOUT_SECONDS,
            autocommit=True,
            charset="utf8mb4",
        )

    async def _query(self, sql: str, params: List[Any]) -> List[Row]:
        async with self._connection.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, tuple(params))
            rows = await cursor.fetchall()
        return list(rows)

    async def _stream(self, sql: str, params: List[Any], batch_size: int) -> AsyncIterator[List[Row]]:
        async with self._connection.cursor(aiomysql.SSDictCursor) as cursor:
            await cursor.execute(sql, tuple(params))
            while True:
                rows = await cursor.fetchmany(batch_size)
                if not rows:
                    break
                yield list(rows)

    async def _close(self, connection) -> None:
        connection.close()

    def _tables_statement(self) -> Fragment:
        return Fragment(_TABLES_SQL)

    def _columns_statement(self, schema: Optional[str], table: str) -> Fragment:
        return compose(_COLUMNS_SQL, bind(table), bind(schema))

    def classify_error(self, exc: Exception, phase: str) -> ConnectorError:
        code = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
        message = str(exc.args[1]) if len(exc.args) > 1 else str(exc)

        if code == ER_ACCESS_DENIED:
            return self.error(AuthFailed, f"Authentication failed for {self.describe()}", exc)
        if code == CR_UNKNOWN_HOST:
            return self.error(HostUnreachable, f"Unknown MySQL host {self.descriptor.host!r}", exc)
        if code == CR_CONN_HOST_ERROR:
            return self._classify_connect_failure(exc, exc.__cause__, message)
        if isinstance(exc, ConnectionRefusedError):
            return self.error(ConnectionRefused, f"Connection refused by {self.describe()}", exc)
        if phase == "query" and isinstance(exc, pymysql.err.MySQLError) and code not in (CR_SERVER_GONE, CR_SERVER_LOST):
            return self.error(QueryError, f"Query failed: {message}", exc, detail=message)

        detail = f"{type(exc).__name__}: {message}"
        logger.error(f"Unclassified MySQL error during {phase}: {detail}")
        return self.error(ConnectorError, f"MySQL {phase} failed: {detail}", exc, detail=detail)

    def _classify_connect_failure(self, exc: Exception, cause, message: str) -> ConnectorError:
        """
        Error 2003 covers every failed connect attempt.

        aiomysql raises it for socket errors and its own connect timeout and
        chains the real failure as ``__cause__``; pymysql only leaves the
        errno in the message.
        """
        if isinstance(cause, (asyncio.TimeoutError, TimeoutError)):
            return self.error(
                ConnectionTimeout,
                f"Connection to {self.describe()} timed out",
                exc,
                timeout=self.settings.CONNECT_TIMEOUT_SECONDS,
            )
        if isinstance(cause, ConnectionRefusedError) or "refused" in message.lower():
            return self.error(ConnectionRefused, f"Connection refused by {self.describe()}", exc)
        if isinstance(cause, socket.gaierror):
            return self.error(HostUnreachable, f"Unknown MySQL host {self.descriptor.host!r}", exc)
        if isinstance(cause, OSError) and cause.errno in _UNREACHABLE_ERRNOS:
            return self.error(HostUnreachable, f"No route to {self.describe()}", exc)
        return self.error(HostUnreachable, f"Cannot reach {self.describe()}: {message}", exc)
