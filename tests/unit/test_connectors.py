"""
Unit tests for source connectors and connector sessions
"""

import asyncio
import errno
import socket
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pymysql
import pytest
from pydantic import SecretStr
from firebird.driver import DatabaseError as FirebirdDatabaseError

from core.exceptions import (
    AuthFailed,
    CastError,
    ConnectionRefused,
    ConnectionTimeout,
    ConnectorError,
    DecryptionError,
    HostUnreachable,
    InvalidIdentifier,
    QueryError,
    UnsupportedDialect,
)
from ingestion.connectors import default_registry
from ingestion.connectors.base import ConnectorFactory
from ingestion.connectors.firebird import FirebirdConnector
from ingestion.connectors.mysql import MySQLConnector
from ingestion.connectors.postgres import PostgresConnector, coerce_param
from ingestion.connectors.warehouse import WarehouseConnector
from ingestion.query_builder import build_select, quote_ident, quote_table, render_statement
from schemas.pipeline import ConnectionDescriptor


def descriptor(dialect, **extra):
    fields = {"host": "db.internal", "database": "shop", "user": "etl", **extra}
    return ConnectionDescriptor(dialect=dialect, **fields)


# ============================================================================
# Error classification
# ============================================================================

class TestPostgresErrors:

    @pytest.fixture
    def connector(self, test_settings):
        return PostgresConnector(descriptor("postgres"), test_settings)

    def test_bad_password(self, connector):
        error = connector.classify_error(asyncpg.InvalidPasswordError("password authentication failed"), "connect")
        assert isinstance(error, AuthFailed)
        assert error.kind == "AuthFailed"
        assert error.hint == "The server rejected the user name or password."

    def test_refused(self, connector):
        error = connector.classify_error(ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"), "connect")
        assert isinstance(error, ConnectionRefused)

    def test_unresolvable_host(self, connector):
        error = connector.classify_error(socket.gaierror(-2, "Name or service not known"), "connect")
        assert isinstance(error, HostUnreachable)

    def test_no_route(self, connector):
        error = connector.classify_error(OSError(errno.EHOSTUNREACH, "No route to host"), "connect")
        assert isinstance(error, HostUnreachable)

    def test_query_error_only_while_querying(self, connector):
        exc = asyncpg.UndefinedTableError('relation "sales" does not exist')
        assert isinstance(connector.classify_error(exc, "query"), QueryError)
        assert type(connector.classify_error(exc, "connect")) is ConnectorError

    def test_unknown_error(self, connector):
        error = connector.classify_error(RuntimeError("boom"), "connect")
        assert type(error) is ConnectorError
        assert error.kind == "Unknown"
        assert "boom" in error.hint

    def test_original_exception_kept(self, connector):
        exc = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        error = connector.classify_error(exc, "connect")
        assert error.original_exception is exc
        assert error.context["dialect"] == "postgres"

    def test_spanish_hint(self, test_settings):
        connector = PostgresConnector(descriptor("postgres"), test_settings, locale="es")
        error = connector.classify_error(ConnectionRefusedError(errno.ECONNREFUSED, "refused"), "connect")
        assert error.hint.startswith("El host rechazó la conexión")


class TestMySQLErrors:

    @pytest.fixture
    def connector(self, test_settings):
        return MySQLConnector(descriptor("mysql"), test_settings)

    def test_access_denied(self, connector):
        exc = pymysql.err.OperationalError(1045, "Access denied for user 'etl'@'10.0.0.1'")
        assert isinstance(connector.classify_error(exc, "connect"), AuthFailed)

    def test_refused(self, connector):
        exc = pymysql.err.OperationalError(2003, "Can't connect to MySQL server on 'db' ([Errno 111] Connection refused)")
        assert isinstance(connector.classify_error(exc, "connect"), ConnectionRefused)

    def test_unreachable(self, connector):
        exc = pymysql.err.OperationalError(2003, "Can't connect to MySQL server on 'db' ([Errno 113] No route to host)")
        assert isinstance(connector.classify_error(exc, "connect"), HostUnreachable)

    def test_unknown_host(self, connector):
        exc = pymysql.err.OperationalError(2005, "Unknown MySQL server host 'db'")
        assert isinstance(connector.classify_error(exc, "connect"), HostUnreachable)

    def test_bad_query(self, connector):
        exc = pymysql.err.ProgrammingError(1146, "Table 'shop.sales' doesn't exist")
        error = connector.classify_error(exc, "query")
        assert isinstance(error, QueryError)
        assert "doesn't exist" in error.hint

    def test_lost_connection_is_not_a_query_error(self, connector):
        exc = pymysql.err.OperationalError(2013, "Lost connection to MySQL server during query")
        assert type(connector.classify_error(exc, "query")) is ConnectorError

    def test_default_port(self, connector):
        assert connector.port == 3306

    def chained(self, cause):
        """aiomysql wraps socket failures in error 2003 and chains the original"""
        exc = pymysql.err.OperationalError(2003, "Can't connect to MySQL server on 'db.internal'")
        exc.__cause__ = cause
        return exc

    def test_chained_timeout(self, connector):
        error = connector.classify_error(self.chained(asyncio.TimeoutError()), "connect")
        assert isinstance(error, ConnectionTimeout)
        assert error.kind == "ConnectionTimeout"

    def test_chained_refusal(self, connector):
        cause = ConnectionRefusedError(errno.ECONNREFUSED, "Connect call failed ('10.0.0.5', 3306)")
        assert isinstance(connector.classify_error(self.chained(cause), "connect"), ConnectionRefused)

    def test_chained_dns_failure(self, connector):
        cause = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        error = connector.classify_error(self.chained(cause), "connect")
        assert isinstance(error, HostUnreachable)
        assert "Unknown MySQL host" in error.message

    def test_chained_no_route(self, connector):
        cause = OSError(errno.EHOSTUNREACH, "No route to host")
        error = connector.classify_error(self.chained(cause), "connect")
        assert isinstance(error, HostUnreachable)
        assert error.message.startswith("No route to")

    @pytest.mark.asyncio
    async def test_connect_classifies_chained_timeout(self, connector):
        async def give_up(password):
            raise self.chained(asyncio.TimeoutError())

        connector._connect = give_up
        with pytest.raises(ConnectionTimeout):
            await connector.connect("pw", timeout=5)
        assert not connector.is_connected


class FakeMySQLCursor:
    def __init__(self, rows):
        self.execute = AsyncMock()
        self.fetchall = AsyncMock(return_value=rows)
        self.fetchmany = AsyncMock(side_effect=[rows, []])

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class TestMySQLStatements:
    """Rendered SQL always goes through pymysql's %-interpolation"""

    @pytest.fixture
    def cursor(self):
        return FakeMySQLCursor([{"growth%": 12}])

    @pytest.fixture
    def connector(self, test_settings, cursor):
        connector = MySQLConnector(descriptor("mysql"), test_settings)
        connector._connection = MagicMock()
        connector._connection.cursor.return_value = cursor
        return connector

    def percent_statement(self):
        statement = build_select([quote_ident("growth%", "mysql")], quote_table("kpis", None, "mysql"), "mysql")
        return render_statement(statement, "mysql")

    @pytest.mark.asyncio
    async def test_query_without_params_passes_empty_tuple(self, connector, cursor):
        sql, params = self.percent_statement()
        assert sql == "SELECT `growth%%` FROM `kpis`"

        rows = await connector.query(sql, params)

        cursor.execute.assert_awaited_once_with(sql, ())
        # pymysql applies ``sql % args`` whenever args is not None
        assert sql % () == "SELECT `growth%` FROM `kpis`"
        assert rows == [{"growth%": 12}]

    @pytest.mark.asyncio
    async def test_stream_without_params_passes_empty_tuple(self, connector, cursor):
        sql, params = self.percent_statement()

        batches = [batch async for batch in connector.stream(sql, params, batch_size=10)]

        cursor.execute.assert_awaited_once_with(sql, ())
        assert batches == [[{"growth%": 12}]]

    @pytest.mark.asyncio
    async def test_params_become_a_tuple(self, connector, cursor):
        await connector.query("SELECT * FROM `kpis` WHERE `id` = %s", [7])
        cursor.execute.assert_awaited_once_with("SELECT * FROM `kpis` WHERE `id` = %s", (7,))


class TestFirebirdErrors:

    @pytest.fixture
    def connector(self, test_settings):
        return FirebirdConnector(descriptor("firebird", database="/data/shop.fdb"), test_settings)

    def test_dsn(self, connector):
        assert connector.dsn == "db.internal/3050:/data/shop.fdb"

    def test_refused(self, connector):
        exc = FirebirdDatabaseError("Unable to complete network request to host \"db\".\n-connect errno = 10061")
        error = connector.classify_error(exc, "connect")
        assert isinstance(error, ConnectionRefused)
        assert "Firebird server is running" in error.hint

    def test_unreachable_has_vpn_hint(self, connector):
        exc = FirebirdDatabaseError("Unable to complete network request to host \"db\".\n-Failed to locate host machine.")
        error = connector.classify_error(exc, "connect")
        assert isinstance(error, HostUnreachable)
        assert "VPN" in error.hint

    def test_auth(self, connector):
        exc = FirebirdDatabaseError("Your user name and password are not defined. Ask your database administrator")
        assert isinstance(connector.classify_error(exc, "connect"), AuthFailed)

    def test_query(self, connector):
        exc = FirebirdDatabaseError("Dynamic SQL Error\n-SQL error code = -204\n-Table unknown\n-SALES")
        assert isinstance(connector.classify_error(exc, "query"), QueryError)


class TestWarehouseConnector:

    def test_describe_has_no_credentials(self, test_settings):
        connector = WarehouseConnector(ConnectionDescriptor(dialect="excel"), test_settings)
        assert connector.describe() == f"excel://warehouse/{test_settings.WAREHOUSE_IMPORT_SCHEMA}"


class TestParameterCoercion:
    """asyncpg needs Python values that match the prepared parameter types"""

    def test_numeric(self):
        assert coerce_param("100", "numeric") == Decimal("100")

    def test_integer(self):
        assert coerce_param("5", "int4") == 5
        with pytest.raises(CastError):
            coerce_param("5.5", "int8")

    def test_date_and_bool(self):
        assert coerce_param("2024-01-02", "date") == date(2024, 1, 2)
        assert coerce_param("yes", "bool") is True

    def test_unknown_type_passes_through(self):
        assert coerce_param({"a": 1}, "jsonb") == {"a": 1}
        assert coerce_param(None, "int4") is None


# ============================================================================
# Sessions
# ============================================================================

class TestConnectorSession:

    @pytest.mark.asyncio
    async def test_disconnects_after_body_error(self, connector_factory, postgres_connection):
        with pytest.raises(ValueError):
            async with connector_factory.session(postgres_connection) as connector:
                assert connector.is_connected
                raise ValueError("body failed")

        assert connector_factory.disconnect_calls == 1
        assert not connector.is_connected

    @pytest.mark.asyncio
    async def test_transient_password_wins(self, connector_factory, postgres_connection):
        form = postgres_connection.model_copy(update={"password": SecretStr("typed-in")})
        async with connector_factory.session(form):
            pass
        assert connector_factory.passwords == ["typed-in"]

    @pytest.mark.asyncio
    async def test_no_password(self, connector_factory):
        async with connector_factory.session(descriptor("postgres")):
            pass
        assert connector_factory.passwords == [""]

    @pytest.mark.asyncio
    async def test_bad_blob_never_connects(self, connector_factory, postgres_connection):
        broken = postgres_connection.model_copy(update={"encrypted_password": "AAAA"})
        with pytest.raises(DecryptionError):
            async with connector_factory.session(broken):
                pass
        assert connector_factory.connect_calls == 0

    @pytest.mark.asyncio
    async def test_connect_timeout(self, test_settings):
        class HangingConnector(PostgresConnector):
            async def _connect(self, password):
                await asyncio.sleep(10)

        connector = HangingConnector(descriptor("postgres"), test_settings)
        with pytest.raises(ConnectionTimeout) as exc_info:
            await connector.connect("pw", timeout=0.01)

        assert exc_info.value.kind == "ConnectionTimeout"
        assert not connector.is_connected

    @pytest.mark.asyncio
    async def test_query_requires_connection(self, test_settings):
        connector = PostgresConnector(descriptor("postgres"), test_settings)
        with pytest.raises(ConnectorError):
            await connector.query("SELECT 1")

    def test_unsupported_dialect(self, test_settings, codec):
        factory = ConnectorFactory(test_settings, codec, registry={})
        with pytest.raises(UnsupportedDialect):
            factory.create(descriptor("mysql"))

    def test_default_registry(self):
        assert set(default_registry()) == {"postgres", "mysql", "firebird", "excel"}


class TestConnectionTest:

    @pytest.mark.asyncio
    async def test_success(self, connector_factory, postgres_connection):
        result = await connector_factory.test_connection(postgres_connection)

        assert result.ok is True
        assert connector_factory.queries == [("SELECT 1", [])]
        assert connector_factory.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_failure_is_a_result_not_an_exception(self, connector_factory, postgres_connection):
        connector_factory.connect_error = AuthFailed("rejected", hint="The server rejected the user name or password.")

        result = await connector_factory.test_connection(postgres_connection)

        assert result.ok is False
        assert result.error_kind == "AuthFailed"
        assert result.message == "The server rejected the user name or password."


# ============================================================================
# Catalog introspection
# ============================================================================

class TestIntrospection:
    """Catalog rows become TableInfo/ColumnInfo through the shared base logic"""

    @pytest.mark.asyncio
    async def test_list_tables(self, connector_factory, postgres_connection):
        connector_factory.rows = [
            {"TABLE_SCHEMA": "public", "TABLE_NAME": "sales"},
            {"table_schema": "crm", "table_name": "customers"},
        ]

        async with connector_factory.session(postgres_connection) as connector:
            tables = await connector.list_tables()

        assert [(t.schema_name, t.name) for t in tables] == [("public", "sales"), ("crm", "customers")]
        assert tables[0].columns is None

    @pytest.mark.asyncio
    async def test_list_columns_of_qualified_table(self, connector_factory, postgres_connection):
        connector_factory.rows = [
            {"column_name": "id", "data_type": "integer", "is_nullable": "NO",
             "column_default": "nextval('sales_id_seq'::regclass)", "is_primary_key": True},
            {"column_name": "region", "data_type": "text", "is_nullable": "YES",
             "column_default": None, "is_primary_key": False},
        ]

        async with connector_factory.session(postgres_connection) as connector:
            columns = await connector.list_columns('crm."sales.2024"')

        _, params = connector_factory.queries[0]
        assert params == ["sales.2024", "crm"]
        assert [c.name for c in columns] == ["id", "region"]
        assert columns[0].nullable is False
        assert columns[0].is_primary_key is True
        assert columns[0].default_value == "nextval('sales_id_seq'::regclass)"
        assert columns[1].nullable is True
        assert columns[1].default_value is None

    @pytest.mark.asyncio
    async def test_explicit_schema_takes_bare_name(self, connector_factory, postgres_connection):
        async with connector_factory.session(postgres_connection) as connector:
            assert await connector.list_columns("odd.name", schema="public") == []

        assert connector_factory.queries[0][1] == ["odd.name", "public"]

    @pytest.mark.asyncio
    async def test_distinct_values_are_bounded_text(self, connector_factory, postgres_connection):
        connector_factory.rows = [{"value": 1}, {"value": Decimal("2.50")}, {"value": None}]

        async with connector_factory.session(postgres_connection) as connector:
            values = await connector.distinct_values("sales", "region", 3)

        sql, params = connector_factory.queries[0]
        assert sql == (
            'SELECT DISTINCT "region" AS "value" FROM "sales" '
            'WHERE "region" IS NOT NULL ORDER BY "region" LIMIT 3'
        )
        assert params == []
        assert values == ["1", "2.50", ""]

    @pytest.mark.asyncio
    async def test_distinct_values_rejects_hostile_column(self, connector_factory, postgres_connection):
        async with connector_factory.session(postgres_connection) as connector:
            with pytest.raises(InvalidIdentifier):
                await connector.distinct_values("sales", "a;--", 10)

        assert connector_factory.queries == []


class TestCatalogStatements:
    """Per-dialect catalog SQL"""

    def test_postgres_columns_bind_table_and_schema(self, test_settings):
        connector = PostgresConnector(descriptor("postgres"), test_settings)
        sql, params = render_statement(connector._columns_statement(None, "sales"), "postgres")

        assert "FROM information_schema.columns c" in sql
        assert "c.table_name = $1 AND c.table_schema = COALESCE($2, current_schema())" in sql
        assert params == ["sales", None]

    def test_postgres_tables_skip_system_schemas(self, test_settings):
        connector = PostgresConnector(descriptor("postgres"), test_settings)
        sql, params = render_statement(connector._tables_statement(), "postgres")

        assert "NOT IN ('pg_catalog', 'information_schema')" in sql
        assert params == []

    def test_warehouse_is_pinned_to_import_schema(self, test_settings):
        connector = WarehouseConnector(descriptor("excel"), test_settings)
        sql, params = render_statement(connector._tables_statement(), "excel")

        assert "AND table_schema = $1" in sql
        assert params == [test_settings.WAREHOUSE_IMPORT_SCHEMA]
        assert connector.default_schema == test_settings.WAREHOUSE_IMPORT_SCHEMA

    @pytest.mark.asyncio
    async def test_mysql_columns(self, test_settings):
        cursor = FakeMySQLCursor([
            {"column_name": "id", "data_type": "int", "is_nullable": "NO",
             "column_default": None, "is_primary_key": 1},
            {"column_name": "growth%", "data_type": "decimal", "is_nullable": "YES",
             "column_default": "0.00", "is_primary_key": 0},
        ])
        connector = MySQLConnector(descriptor("mysql"), test_settings)
        connector._connection = MagicMock()
        connector._connection.cursor.return_value = cursor

        columns = await connector.list_columns("kpis")

        sql, args = cursor.execute.await_args.args
        assert "TABLE_NAME = %s AND TABLE_SCHEMA = COALESCE(%s, DATABASE())" in sql
        assert args == ("kpis", None)
        assert [(c.name, c.data_type, c.nullable, c.is_primary_key) for c in columns] == [
            ("id", "int", False, True),
            ("growth%", "decimal", True, False),
        ]
        assert columns[1].default_value == "0.00"

    @pytest.mark.asyncio
    async def test_firebird_columns_from_system_tables(self, test_settings):
        connector = FirebirdConnector(descriptor("firebird", database="/data/shop.fdb"), test_settings)
        connector._connection = object()
        connector._query = AsyncMock(return_value=[
            {"COLUMN_NAME": "ID", "FIELD_TYPE": 16, "FIELD_SUB_TYPE": 0, "NULL_FLAG": 1,
             "COLUMN_DEFAULT": None, "IS_PRIMARY_KEY": 1},
            {"COLUMN_NAME": "PRICE", "FIELD_TYPE": 16, "FIELD_SUB_TYPE": 2, "NULL_FLAG": None,
             "COLUMN_DEFAULT": "DEFAULT 0 ", "IS_PRIMARY_KEY": 0},
            {"COLUMN_NAME": "NAME", "FIELD_TYPE": 37, "FIELD_SUB_TYPE": None, "NULL_FLAG": None,
             "COLUMN_DEFAULT": None, "IS_PRIMARY_KEY": 0},
        ])

        columns = await connector.list_columns("PRODUCTS")

        sql, params = connector._query.await_args.args
        assert "FROM RDB$RELATION_FIELDS rf" in sql
        assert "rf.RDB$RELATION_NAME = ?" in sql
        assert params == ["PRODUCTS"]
        assert [(c.name, c.data_type, c.nullable, c.is_primary_key) for c in columns] == [
            ("ID", "BIGINT", False, True),
            ("PRICE", "DECIMAL", True, False),
            ("NAME", "VARCHAR", True, False),
        ]
        assert columns[1].default_value == "DEFAULT 0"

    @pytest.mark.asyncio
    async def test_firebird_tables_have_no_schema(self, test_settings):
        connector = FirebirdConnector(descriptor("firebird", database="/data/shop.fdb"), test_settings)
        connector._connection = object()
        connector._query = AsyncMock(return_value=[{"TABLE_NAME": "PRODUCTS"}])

        tables = await connector.list_tables()

        sql, _ = connector._query.await_args.args
        assert "FROM RDB$RELATIONS" in sql
        assert [(t.schema_name, t.name) for t in tables] == [(None, "PRODUCTS")]

    @pytest.mark.asyncio
    async def test_firebird_distinct_values_use_first(self, test_settings):
        connector = FirebirdConnector(descriptor("firebird", database="/data/shop.fdb"), test_settings)
        connector._connection = object()
        connector._query = AsyncMock(return_value=[{"value": "north"}])

        values = await connector.distinct_values("SALES", "REGION", 5)

        sql, _ = connector._query.await_args.args
        assert sql.startswith('SELECT FIRST 5 DISTINCT "REGION" AS "value" FROM "SALES"')
        assert values == ["north"]
