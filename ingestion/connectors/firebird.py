"""
Firebird source connector (firebird-driver).

The driver is blocking, so every call runs in a worker thread. A connect
that outlives the timeout keeps running in its thread; when it eventually
succeeds the connection is closed instead of leaking.
"""

from typing import Any, AsyncIterator, List, Optional
import asyncio
import functools
import logging

from firebird.driver import connect as fb_connect
from firebird.driver import DatabaseError as FirebirdDatabaseError

from core.exceptions import (
    AuthFailed,
    ConnectionRefused,
    ConnectorError,
    HostUnreachable,
    QueryError,
)
from ingestion.connectors.base import Row, SourceConnector
from ingestion.query_builder import Fragment, bind, compose
from schemas.pipeline import ColumnInfo

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("user name and password are not defined", "login", "authentication")
_REFUSED_MARKERS = ("econnrefused", "connection refused", "10061")
_UNREACHABLE_MARKERS = (
    "enetunreach", "ehostunreach", "network is unreachable", "no route to host",
    "failed to locate host machine", "unknown host", "name or service not known",
)

_TABLES_SQL = (
    "SELECT TRIM(RDB$RELATION_NAME) AS table_name FROM RDB$RELATIONS "
    "WHERE COALESCE(RDB$SYSTEM_FLAG, 0) = 0 "
    "ORDER BY RDB$RELATION_NAME"
)

_COLUMNS_SQL = (
    "SELECT TRIM(rf.RDB$FIELD_NAME) AS column_name, f.RDB$FIELD_TYPE AS field_type, "
    "f.RDB$FIELD_SUB_TYPE AS field_sub_type, rf.RDB$NULL_FLAG AS null_flag, "
    "CAST(rf.RDB$DEFAULT_SOURCE AS VARCHAR(1024)) AS column_default, "
    "CASE WHEN EXISTS ("
    "SELECT 1 FROM RDB$RELATION_CONSTRAINTS rc "
    "JOIN RDB$INDEX_SEGMENTS s ON s.RDB$INDEX_NAME = rc.RDB$INDEX_NAME "
    "WHERE rc.RDB$RELATION_NAME = rf.RDB$RELATION_NAME "
    "AND rc.RDB$CONSTRAINT_TYPE = 'PRIMARY KEY' AND s.RDB$FIELD_NAME = rf.RDB$FIELD_NAME"
    ") THEN 1 ELSE 0 END AS is_primary_key "
    "FROM RDB$RELATION_FIELDS rf "
    "JOIN RDB$FIELDS f ON f.RDB$FIELD_NAME = rf.RDB$FIELD_SOURCE "
    "WHERE rf.RDB$RELATION_NAME = {} "
    "ORDER BY rf.RDB$FIELD_POSITION"
)

# RDB$FIELDS.RDB$FIELD_TYPE codes
_FIELD_TYPES = {
    7: "SMALLINT",
    8: "INTEGER",
    10: "FLOAT",
    12: "DATE",
    13: "TIME",
    14: "CHAR",
    16: "BIGINT",
    23: "BOOLEAN",
    27: "DOUBLE PRECISION",
    35: "TIMESTAMP",
    37: "VARCHAR",
    261: "BLOB",
}
# Exact numerics share the integer codes and differ by sub-type
_NUMERIC_SUB_TYPES = {1: "NUMERIC", 2: "DECIMAL"}


def _close_late_connection(future: "asyncio.Future") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close()
        logger.info("Closed Firebird connection that completed after the connect timeout")
    except Exception as e:
        logger.warning(f"Could not close late Firebird connection: {e}")


class FirebirdConnector(SourceConnector):
    """Connector for Firebird sources."""

    dialect = "firebird"
    test_query = "SELECT 1 FROM RDB$DATABASE"

    @property
    def default_port(self) -> int:
        return self.settings.FIREBIRD_DEFAULT_PORT

    @property
    def dsn(self) -> str:
        return f"{self.descriptor.host}/{self.port}:{self.descriptor.database}"

    def _connect_blocking(self, password: str):
        return fb_connect(self.dsn, user=self.descriptor.user, password=password or "")

    async def _connect(self, password: str):
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(self._connect_blocking, password))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_close_late_connection)
            raise

    @staticmethod
    def _rows(cursor, records) -> List[Row]:
        names = [d[0] for d in cursor.description]
        return [dict(zip(names, record)) for record in records]

    def _query_blocking(self, sql: str, params: List[Any]) -> List[Row]:
        with self._connection.cursor() as cursor:
            cursor.execute(sql, params)
            return self._rows(cursor, cursor.fetchall())

    async def _query(self, sql: str, params: List[Any]) -> List[Row]:
        return await asyncio.to_thread(self._query_blocking, sql, params)

    async def _stream(self, sql: str, params: List[Any], batch_size: int) -> AsyncIterator[List[Row]]:
        cursor = self._connection.cursor()
        try:
            await asyncio.to_thread(cursor.execute, sql, params)
            while True:
                records = await asyncio.to_thread(cursor.fetchmany, batch_size)
                if not records:
                    break
                yield self._rows(cursor, records)
        finally:
            await asyncio.to_thread(cursor.close)

    async def _close(self, connection) -> None:
        await asyncio.to_thread(connection.close)

    def _tables_statement(self) -> Fragment:
        return Fragment(_TABLES_SQL)

    def _columns_statement(self, schema: Optional[str], table: str) -> Fragment:
        # Firebird has no schemas; a qualifier is ignored
        return compose(_COLUMNS_SQL, bind(table))

    def _column_info(self, row: Row) -> ColumnInfo:
        code, sub_type = row.get("field_type"), row.get("field_sub_type")
        if code in (7, 8, 16) and sub_type in _NUMERIC_SUB_TYPES:
            data_type = _NUMERIC_SUB_TYPES[sub_type]
        else:
            data_type = _FIELD_TYPES.get(code, f"TYPE {code}")
        default = row.get("column_default")
        return ColumnInfo(
            name=row["column_name"],
            data_type=data_type,
            nullable=not row.get("null_flag"),
            default_value=default.strip() if isinstance(default, str) else None,
            is_primary_key=bool(row.get("is_primary_key")),
        )

    def classify_error(self, exc: Exception, phase: str) -> ConnectorError:
        message = str(exc)
        lowered = message.lower()

        if any(marker in lowered for marker in _REFUSED_MARKERS):
            return self.error(ConnectionRefused, f"Connection refused by {self.describe()}", exc)
        if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
            return self.error(HostUnreachable, f"No route to {self.describe()}", exc)
        if phase == "connect" and any(marker in lowered for marker in _AUTH_MARKERS):
            return self.error(AuthFailed, f"Authentication failed for {self.describe()}", exc)
        if phase == "query" and isinstance(exc, FirebirdDatabaseError):
            return self.error(QueryError, f"Query failed: {message}", exc, detail=message)

        detail = f"{type(exc).__name__}: {message}"
        logger.error(f"Unclassified Firebird error during {phase}: {detail}")
        return self.error(ConnectorError, f"Firebird {phase} failed: {detail}", exc, detail=detail)
