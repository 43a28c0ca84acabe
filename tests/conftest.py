"""
Pytest configuration and fixtures

No fixture needs a live database: the run store lives in memory, connectors
are fakes driven through the real ConnectorFactory session, and the loader
records what it would have written.
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import uuid

from core.config import Settings
from core.exceptions import ConnectorError, LoadError
from core.secrets import SecretCodec
from ingestion.connectors.base import ConnectorFactory, SourceConnector
from ingestion.loaders.warehouse_loader import target_table_name
from ingestion.query_builder import Fragment, bind, compose
from ingestion.run_state import ALLOWED_PREDECESSORS, NON_TERMINAL_STATUSES, RunRecord, RunStateStore
from ingestion.transformers.rules import WarningLog
from models.base import RunStatus
from schemas.pipeline import ConnectionDescriptor, PipelineDescriptor, SinkMode

TEST_KEY = "test-encryption-key-with-32-chars!!"
NOW = datetime(2024, 1, 15, 10, 30, 0)


# ============================================================================
# Run store
# ============================================================================

class InMemoryRunStore(RunStateStore):
    """Run-state store with the same conditional-update semantics as the SQL one."""

    def __init__(self, clock=lambda: NOW):
        self.clock = clock
        self.records: Dict[str, Dict[str, Any]] = {}
        self.writes = 0
        self.progress: List[int] = []

    def add(self, status: RunStatus = RunStatus.PENDING, updated_at: Optional[datetime] = None,
            run_id: Optional[str] = None) -> str:
        run_id = run_id or str(uuid.uuid4())
        self.records[run_id] = {
            "id": run_id,
            "status": status,
            "updated_at": updated_at or self.clock(),
            "error_message": None,
            "rows_written": 0,
        }
        return run_id

    async def get(self, run_id) -> Optional[RunRecord]:
        data = self.records.get(str(run_id))
        if data is None:
            return None
        return RunRecord(
            id=data["id"],
            status=data["status"],
            updated_at=data["updated_at"],
            error_message=data["error_message"],
            rows_written=data["rows_written"],
        )

    async def transition(self, run_id, to, error_message=None, rows_written=None,
                         updated_before=None, **fields) -> bool:
        data = self.records.get(str(run_id))
        if data is None or data["status"] not in ALLOWED_PREDECESSORS[to]:
            return False
        if updated_before is not None and not data["updated_at"] < updated_before:
            return False
        self.writes += 1
        data["status"] = to
        data["updated_at"] = self.clock()
        if error_message is not None:
            data["error_message"] = error_message
        if rows_written is not None:
            data["rows_written"] = rows_written
        data.update(fields)
        return True

    async def record_progress(self, run_id, rows_written: int) -> bool:
        data = self.records.get(str(run_id))
        if data is None or data["status"] != RunStatus.PROCESSING:
            return False
        self.writes += 1
        self.progress.append(rows_written)
        data["rows_written"] = rows_written
        data["updated_at"] = self.clock()
        return True

    async def list_stale(self, cutoff: datetime) -> List[RunRecord]:
        return [
            await self.get(run_id)
            for run_id, data in self.records.items()
            if data["status"] in NON_TERMINAL_STATUSES and data["updated_at"] < cutoff
        ]


# ============================================================================
# Connectors
# ============================================================================

class FakeConnector(SourceConnector):
    """Connector whose driver is the owning FakeConnectorFactory."""

    dialect = "postgres"

    def __init__(self, descriptor, settings, factory: "FakeConnectorFactory"):
        super().__init__(descriptor, settings)
        self.dialect = descriptor.dialect
        self.factory = factory

    async def _connect(self, password: str):
        self.factory.connect_calls += 1
        self.factory.passwords.append(password)
        if self.factory.connect_error is not None:
            raise self.factory.connect_error
        return object()

    async def _query(self, sql, params):
        self.factory.queries.append((sql, params))
        if self.factory.query_error is not None:
            raise self.factory.query_error
        return [dict(row) for row in self.factory.rows]

    async def _stream(self, sql, params, batch_size):
        self.factory.queries.append((sql, params))
        rows = [dict(row) for row in self.factory.rows]
        try:
            for start in range(0, len(rows), batch_size):
                yield rows[start:start + batch_size]
            if self.factory.query_error is not None:
                raise self.factory.query_error
        finally:
            self.factory.events.append("stream_closed")

    async def _close(self, connection) -> None:
        self.factory.disconnect_calls += 1
        self.factory.events.append("disconnect")

    def _tables_statement(self):
        return Fragment("SELECT table_schema, table_name FROM catalog_tables")

    def _columns_statement(self, schema, table):
        return compose("SELECT * FROM catalog_columns WHERE table_name = {} AND table_schema = {}",
                       bind(table), bind(schema))

    def classify_error(self, exc, phase):
        if isinstance(exc, ConnectorError):
            return exc
        return ConnectorError(f"{phase} failed: {exc}", original_exception=exc)


class FakeConnectorFactory(ConnectorFactory):
    """Real session()/test_connection() logic over fake connectors, with spies."""

    def __init__(self, settings, codec=None, rows=None):
        super().__init__(settings, codec or SecretCodec(TEST_KEY), registry={})
        self.rows: List[Dict[str, Any]] = list(rows or [])
        self.connect_error: Optional[Exception] = None
        self.query_error: Optional[Exception] = None
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.passwords: List[str] = []
        self.queries: List[tuple] = []
        self.events: List[str] = []

    def create(self, descriptor):
        return FakeConnector(descriptor, self.settings, self)


# ============================================================================
# Loader
# ============================================================================

class FakeWriter:
    def __init__(self, table_name, mode, run_id, columns, column_types, warnings, fail_after=None):
        self.table_name = table_name
        self.mode = mode
        self.run_id = run_id
        self.columns = columns
        self.column_types = column_types
        self.warnings = warnings if warnings is not None else WarningLog()
        self.fail_after = fail_after
        self.rows: List[Dict[str, Any]] = []
        self.rows_written = 0
        self.created = False
        self.finished = False
        self.aborted = False

    async def write(self, rows):
        self.created = True
        if self.fail_after is not None and self.rows_written + len(rows) > self.fail_after:
            raise LoadError("Insert failed", context={"table_name": self.table_name},
                            rows_written=self.rows_written)
        self.rows.extend(rows)
        self.rows_written += len(rows)
        return self.rows_written

    async def finish(self):
        self.created = True
        self.finished = True
        return self.rows_written

    async def abort(self):
        self.aborted = True


class FakeLoader:
    def __init__(self, schema="etl_output", batch_size=1000, fail_after=None):
        self.schema = schema
        self.batch_size = batch_size
        self.fail_after = fail_after
        self.writers: List[FakeWriter] = []

    def writer(self, table_name, mode=SinkMode.REPLACE, run_id=None, columns=None,
               column_types=None, warnings=None):
        writer = FakeWriter(target_table_name(table_name, run_id), mode, run_id, columns,
                            column_types, warnings, fail_after=self.fail_after)
        self.writers.append(writer)
        return writer


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    return Settings(
        ENCRYPTION_KEY=TEST_KEY,
        CONNECT_TIMEOUT_SECONDS=0.5,
        ETL_BATCH_SIZE=2,
        ETL_FETCH_SIZE=2,
        ETL_PREVIEW_LIMIT=50,
        STALE_RUN_MINUTES=12,
        STALE_SWEEP_INTERVAL_MINUTES=0,
        MESSAGE_LOCALE="en",
    )


@pytest.fixture
def codec():
    return SecretCodec(TEST_KEY)


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def connector_factory(test_settings, codec):
    return FakeConnectorFactory(test_settings, codec)


@pytest.fixture
def fake_loader():
    return FakeLoader()


@pytest.fixture
def postgres_connection(codec):
    return ConnectionDescriptor(
        dialect="postgres",
        host="db.example.com",
        port=5432,
        database="shop",
        user="analyst",
        encrypted_password=codec.encrypt("s3cret"),
    )


@pytest.fixture
def sales_pipeline():
    """source(sales) → filter(amount > 100) → cast(amount → decimal) → sink(sales_filtered)"""
    return PipelineDescriptor.model_validate({
        "id": "sales-pipeline",
        "nodes": [
            {"id": "src", "kind": "source", "config": {"table": "sales", "columns": ["id", "region", "amount"]}},
            {"id": "flt", "kind": "filter", "config": {"conditions": [
                {"column": "amount", "operator": ">", "value": 100}
            ]}},
            {"id": "cst", "kind": "cast", "config": {"column": "amount", "targetType": "decimal"}},
            {"id": "out", "kind": "sink"},
        ],
        "edges": [
            {"from": "src", "to": "flt"},
            {"from": "flt", "to": "cst"},
            {"from": "cst", "to": "out"},
        ],
        "sink": {"tableName": "sales_filtered"},
    })


@pytest.fixture
def cyclic_pipeline():
    return PipelineDescriptor.model_validate({
        "nodes": [
            {"id": "src", "kind": "source", "config": {"table": "sales", "columns": ["amount"]}},
            {"id": "a", "kind": "cast", "config": {"column": "amount", "targetType": "integer"}},
            {"id": "b", "kind": "cast", "config": {"column": "amount", "targetType": "decimal"}},
            {"id": "out", "kind": "sink"},
        ],
        "edges": [
            {"from": "src", "to": "a"},
            {"from": "a", "to": "b"},
            {"from": "b", "to": "a"},
            {"from": "b", "to": "out"},
        ],
        "sink": {"tableName": "loop"},
    })


@pytest.fixture
def stale_clock():
    """A clock 20 minutes after NOW"""
    return lambda: NOW + timedelta(minutes=20)
