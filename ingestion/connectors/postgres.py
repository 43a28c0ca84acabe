"""
PostgreSQL source connector (asyncpg).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, List, Optional, Sequence
import errno
import logging
import socket

import asyncpg

from core.exceptions import (
    AuthFailed,
    CastError,
    ConnectionRefused,
    ConnectorError,
    HostUnreachable,
    QueryError,
)
from ingestion.connectors.base import Row, SourceConnector
from ingestion.query_builder import Fragment, bind, compose
from ingestion.transformers.rules import cast_value
from schemas.pipeline import CastTarget

logger = logging.getLogger(__name__)

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EHOSTDOWN}

_TABLES_SQL = (
    "SELECT table_schema, table_name FROM information_schema.tables "
    "WHERE table_type IN ('BASE TABLE', 'VIEW') "
    "AND table_schema NOT IN ('pg_catalog', 'information_schema') {} "
    "ORDER BY table_schema, table_name"
)

_COLUMNS_SQL = (
    "SELECT c.column_name, c.data_type, c.is_nullable, c.column_default, "
    "EXISTS ("
    "SELECT 1 FROM information_schema.table_constraints tc "
    "JOIN information_schema.key_column_usage kc "
    "ON kc.constraint_name = tc.constraint_name AND kc.table_schema = tc.table_schema "
    "AND kc.table_name = tc.table_name "
    "WHERE tc.constraint_type = 'PRIMARY KEY' AND kc.table_schema = c.table_schema "
    "AND kc.table_name = c.table_name AND kc.column_name = c.column_name"
    ") AS is_primary_key "
    "FROM information_schema.columns c "
    "WHERE c.table_name = {} AND c.table_schema = COALESCE({}, current_schema()) "
    "ORDER BY c.ordinal_position"
)

# Parameter type names reported by a prepared statement → conversion target
_PARAM_TARGETS = {
    "int2": CastTarget.INTEGER,
    "int4": CastTarget.INTEGER,
    "int8": CastTarget.INTEGER,
    "numeric": CastTarget.DECIMAL,
    "bool": CastTarget.BOOLEAN,
    "date": CastTarget.DATE,
    "text": CastTarget.TEXT,
    "varchar": CastTarget.TEXT,
    "bpchar": CastTarget.TEXT,
    "name": CastTarget.TEXT,
}


def coerce_param(value: Any, type_name: str) -> Any:
    """
    Convert a bound value to what asyncpg expects for the parameter type.

    asyncpg does not convert between Python types, so ``'100'`` bound to a
    numeric comparison must arrive as ``Decimal('100')``.
    """
    if value is None:
        return None
    if type_name in ("float4", "float8"):
        return float(cast_value(value, CastTarget.DECIMAL))
    if type_name in ("timestamp", "timestamptz") and isinstance(value, str):
        return datetime.fromisoformat(value)
    target = _PARAM_TARGETS.get(type_name)
    if target is None:
        return value
    if target == CastTarget.INTEGER:
        number = cast_value(value, CastTarget.DECIMAL)
        if number != number.to_integral_value():
            raise CastError(
                f"{value!r} is not a whole number",
                context={"value": repr(value), "target_type": type_name}
            )
        return int(number)
    if target == CastTarget.DATE and isinstance(value, (date, datetime)):
        return value.date() if isinstance(value, datetime) else value
    if target == CastTarget.DECIMAL and isinstance(value, Decimal):
        return value
    return cast_value(value, target)


class PostgresConnector(SourceConnector):
    """
    Connector for PostgreSQL sources.

    Bound values are coerced to the parameter types of the prepared
    statement; results are streamed through a server-side cursor.
    """

    dialect = "postgres"

    @property
    def default_port(self) -> int:
        return self.settings.POSTGRES_DEFAULT_PORT

    async def _connect(self, password: str):
        return await asyncpg.connect(
            host=self.descriptor.host,
            port=self.port,
            user=self.descriptor.user,
            password=password or None,
            database=self.descriptor.database,
            timeout=self.settings.CONNECT_TIMEOUT_SECONDS,
        )

    async def _prepare(self, sql: str, params: Sequence[Any]):
        statement = await self._connection.prepare(sql)
        types = statement.get_parameters()
        try:
            args = [coerce_param(value, t.name) for value, t in zip(params, types)]
        except (CastError, ValueError) as e:
            raise QueryError(
                f"Bound value does not fit the column type: {e}",
                context={"dialect": self.dialect},
                original_exception=e,
                hint=str(e),
            )
        return statement, args

    async def _query(self, sql: str, params: List[Any]) -> List[Row]:
        statement, args = await self._prepare(sql, params)
        records = await statement.fetch(*args)
        return [dict(record) for record in records]

    async def _stream(self, sql: str, params: List[Any], batch_size: int) -> AsyncIterator[List[Row]]:
        # Cursors only live inside a transaction
        async with self._connection.transaction(readonly=True):
            statement, args = await self._prepare(sql, params)
            batch: List[Row] = []
            async for record in statement.cursor(*args, prefetch=batch_size):
                batch.append(dict(record))
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
            if batch:
                yield batch

    async def _close(self, connection) -> None:
        await connection.close(timeout=5)

    def _tables_statement(self) -> Fragment:
        if self.default_schema:
            return compose(_TABLES_SQL, compose("AND table_schema = {}", bind(self.default_schema)))
        return compose(_TABLES_SQL, "")

    def _columns_statement(self, schema: Optional[str], table: str) -> Fragment:
        return compose(_COLUMNS_SQL, bind(table), bind(schema))

    def classify_error(self, exc: Exception, phase: str) -> ConnectorError:
        detail = f"{type(exc).__name__}: {exc}"

        if isinstance(exc, (asyncpg.InvalidPasswordError, asyncpg.InvalidAuthorizationSpecificationError)):
            return self.error(AuthFailed, f"Authentication failed for {self.describe()}", exc)
        if isinstance(exc, ConnectionRefusedError):
            return self.error(ConnectionRefused, f"Connection refused by {self.describe()}", exc)
        if isinstance(exc, socket.gaierror):
            return self.error(HostUnreachable, f"Host {self.descriptor.host!r} could not be resolved", exc)
        if isinstance(exc, OSError) and exc.errno in _UNREACHABLE_ERRNOS:
            return self.error(HostUnreachable, f"No route to {self.describe()}", exc)
        if phase == "query" and isinstance(exc, (asyncpg.PostgresError, asyncpg.InterfaceError)):
            return self.error(QueryError, f"Query failed: {exc}", exc, detail=str(exc))

        logger.error(f"Unclassified PostgreSQL error during {phase}: {detail}")
        return self.error(ConnectorError, f"PostgreSQL {phase} failed: {detail}", exc, detail=detail)
