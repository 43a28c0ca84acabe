"""
Source connector contract and the factory that hands out connector sessions.

A connector owns exactly one short-lived database connection. The factory's
``session()`` context manager is the only supported way to use one: it
decrypts the password immediately before connecting, bounds the connect
with a timeout, and disconnects on every exit path.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Type
import asyncio
import logging

from core.exceptions import (
    ConnectionTimeout,
    ConnectorError,
    UnsupportedDialect,
)
from core.messages import hint as localized_hint
from core.secrets import SecretCodec
from ingestion.query_builder import (
    Fragment,
    build_limit,
    compose,
    quote_ident,
    quote_table,
    render_statement,
    split_qualified,
)
from schemas.pipeline import ColumnInfo, ConnectionDescriptor, ConnectionTestResult, TableInfo

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class SourceConnector(ABC):
    """
    One connection to an external source.

    Subclasses implement the ``_connect``/``_query``/``_stream``/``_close``
    driver calls and ``classify_error``; this base class wraps them so that
    callers only ever see ``ConnectorError`` subclasses.
    """

    dialect: str = ""
    test_query: str = "SELECT 1"

    def __init__(self, descriptor: ConnectionDescriptor, settings, locale: Optional[str] = None):
        self.descriptor = descriptor
        self.settings = settings
        self.locale = locale or getattr(settings, "MESSAGE_LOCALE", "en")
        self._connection = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def default_port(self) -> Optional[int]:
        return None

    @property
    def port(self) -> Optional[int]:
        return self.descriptor.port or self.default_port

    def describe(self) -> str:
        """Connection target without credentials, for logs."""
        d = self.descriptor
        return f"{self.dialect}://{d.user or ''}@{d.host or ''}:{self.port or ''}/{d.database or ''}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self, password: str, timeout: float) -> None:
        try:
            self._connection = await asyncio.wait_for(self._connect(password), timeout)
        except asyncio.TimeoutError as e:
            raise self.error(
                ConnectionTimeout,
                f"Connection to {self.describe()} timed out after {timeout:g}s",
                e,
                timeout=timeout,
            )
        except ConnectorError:
            raise
        except Exception as e:
            raise self.classify_error(e, phase="connect")

        logger.info(f"Connected to {self.describe()}")

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        self._require_connection()
        try:
            return await self._query(sql, list(params))
        except ConnectorError:
            raise
        except Exception as e:
            raise self.classify_error(e, phase="query")

    async def stream(self, sql: str, params: Sequence[Any] = (), batch_size: int = 5000) -> AsyncIterator[List[Row]]:
        """Yield result rows in batches of at most ``batch_size``."""
        self._require_connection()
        iterator = self._stream(sql, list(params), batch_size).__aiter__()
        try:
            while True:
                try:
                    batch = await iterator.__anext__()
                except StopAsyncIteration:
                    return
                except ConnectorError:
                    raise
                except Exception as e:
                    raise self.classify_error(e, phase="query")
                yield batch
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def disconnect(self) -> None:
        """Close the connection if one is open. Never raises."""
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await self._close(connection)
            logger.debug(f"Disconnected from {self.describe()}")
        except Exception as e:
            logger.warning(f"Error while closing {self.describe()}: {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def default_schema(self) -> Optional[str]:
        """Schema an unqualified table name resolves to, when not the session default."""
        return None

    async def list_tables(self) -> List[TableInfo]:
        """User tables and views visible to the connection, system catalogs excluded."""
        rows = await self._catalog(self._tables_statement())
        return [TableInfo(schema=row.get("table_schema"), name=row["table_name"]) for row in rows]

    async def list_columns(self, table: str, schema: Optional[str] = None) -> List[ColumnInfo]:
        """
        Columns of ``table`` in ordinal order.

        ``table`` may be ``schema.table`` unless ``schema`` is given, in which
        case it is taken as a bare name. An unknown table yields an empty list.
        """
        if schema is not None:
            name = table
        else:
            segments = split_qualified(table, self.dialect)
            schema, name = (segments[0], segments[1]) if len(segments) == 2 else (self.default_schema, segments[0])
        rows = await self._catalog(self._columns_statement(schema, name))
        return [self._column_info(row) for row in rows]

    async def distinct_values(self, table: str, column: str, limit: int) -> List[str]:
        """Sorted non-null values of one column, at most ``limit`` of them, as text."""
        col = quote_ident(column, self.dialect)
        statement = compose(
            "SELECT DISTINCT {0} AS {1} FROM {2} WHERE {0} IS NOT NULL ORDER BY {0}",
            col,
            quote_ident("value", self.dialect),
            quote_table(table, self.default_schema, self.dialect),
        )
        sql, params = render_statement(build_limit(statement, limit, self.dialect), self.dialect)
        rows = await self.query(sql, params)
        values = [next(iter(row.values())) for row in rows]
        return ["" if value is None else str(value) for value in values]

    async def _catalog(self, statement: Fragment) -> List[Row]:
        sql, params = render_statement(statement, self.dialect)
        rows = await self.query(sql, params)
        # Catalog column names come back upper-cased from some drivers
        return [{key.lower(): value for key, value in row.items()} for row in rows]

    def _column_info(self, row: Row) -> ColumnInfo:
        default = row.get("column_default")
        return ColumnInfo(
            name=row["column_name"],
            data_type=str(row["data_type"]),
            nullable=str(row.get("is_nullable", "YES")).upper() in ("YES", "1", "TRUE"),
            default_value=None if default is None else str(default),
            is_primary_key=bool(row.get("is_primary_key")),
        )

    @abstractmethod
    def _tables_statement(self) -> Fragment:
        """Catalog query yielding ``table_schema`` and ``table_name``."""

    @abstractmethod
    def _columns_statement(self, schema: Optional[str], table: str) -> Fragment:
        """
        Catalog query for one table yielding ``column_name``, ``data_type``,
        ``is_nullable``, ``column_default`` and ``is_primary_key``.
        """

    # ------------------------------------------------------------------
    # Error normalization
    # ------------------------------------------------------------------

    def error(self, error_cls: Type[ConnectorError], message: str,
              original: Optional[Exception] = None, **values) -> ConnectorError:
        """Build a normalized error with its localized hint."""
        text = localized_hint(error_cls.error_kind, self.locale, self.dialect, **values)
        return error_cls(
            message,
            context={"dialect": self.dialect, "target": self.describe()},
            original_exception=original,
            hint=text,
        )

    @abstractmethod
    def classify_error(self, exc: Exception, phase: str) -> ConnectorError:
        """
        Map a native driver error to the connector taxonomy.

        ``phase`` is ``"connect"`` or ``"query"``; anything raised while
        querying that is not a connection problem is a ``QueryError``.
        """

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _connect(self, password: str):
        """Open and return a driver connection."""

    @abstractmethod
    async def _query(self, sql: str, params: List[Any]) -> List[Row]:
        pass

    @abstractmethod
    def _stream(self, sql: str, params: List[Any], batch_size: int) -> AsyncIterator[List[Row]]:
        pass

    @abstractmethod
    async def _close(self, connection) -> None:
        pass

    def _require_connection(self):
        if self._connection is None:
            raise ConnectorError(
                "Connector is not connected",
                context={"dialect": self.dialect, "target": self.describe()}
            )


class ConnectorFactory:
    """
    Creates connectors for connection descriptors.

    Args:
        settings: Application settings (timeouts, default ports, locale)
        codec: Secret codec used to decrypt stored passwords
        registry: Optional dialect → connector class override (tests)
    """

    def __init__(self, settings, codec: SecretCodec, registry: Optional[Dict[str, Type[SourceConnector]]] = None):
        self.settings = settings
        self.codec = codec
        if registry is None:
            from ingestion.connectors import default_registry
            registry = default_registry()
        self.registry = registry

    def create(self, descriptor: ConnectionDescriptor) -> SourceConnector:
        connector_cls = self.registry.get(descriptor.dialect)
        if connector_cls is None:
            raise UnsupportedDialect(
                f"Unsupported connection type: {descriptor.dialect!r}",
                context={"dialect": descriptor.dialect},
                hint=localized_hint("UnsupportedDialect", self.settings.MESSAGE_LOCALE, dialect=descriptor.dialect),
            )
        return connector_cls(descriptor, self.settings)

    def resolve_password(self, descriptor: ConnectionDescriptor) -> str:
        """
        Plaintext password for one connect call.

        A transient plaintext password wins; otherwise the stored blob is
        decrypted. Decryption problems propagate; an absent blob means the
        connection has no password.
        """
        if descriptor.password is not None:
            return descriptor.password.get_secret_value()
        if descriptor.encrypted_password:
            return self.codec.decrypt(descriptor.encrypted_password)
        return ""

    @asynccontextmanager
    async def session(self, descriptor: ConnectionDescriptor) -> AsyncIterator[SourceConnector]:
        connector = self.create(descriptor)
        try:
            password = self.resolve_password(descriptor)
            await connector.connect(password, self.settings.CONNECT_TIMEOUT_SECONDS)
            del password
            yield connector
        finally:
            await connector.disconnect()

    async def test_connection(self, descriptor: ConnectionDescriptor) -> ConnectionTestResult:
        """Connect and run the dialect's trivial query."""
        try:
            async with self.session(descriptor) as connector:
                await connector.query(connector.test_query)
        except ConnectorError as e:
            logger.warning(f"Connection test failed: {e.kind}: {e.message}")
            return ConnectionTestResult(ok=False, message=e.hint, error_kind=e.kind)

        return ConnectionTestResult(ok=True, message=f"{descriptor.dialect} connection succeeded")
