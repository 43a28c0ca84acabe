"""
Write result rows into warehouse tables in bounded batches.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import logging
import re

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    MetaData,
    Numeric,
    Table,
    Text,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import CreateSchema, DropTable

from core.exceptions import CastError, LoadError
from ingestion.transformers.rules import WarningLog, cast_value
from schemas.pipeline import CastTarget, SinkMode

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 63
STAGING_SUFFIX = "__stg_"

SQL_TYPES = {
    CastTarget.INTEGER: BigInteger,
    CastTarget.DECIMAL: Numeric,
    CastTarget.TEXT: Text,
    CastTarget.DATE: Date,
    CastTarget.BOOLEAN: Boolean,
}

# Inferred-only type for timestamp values; never a cast target
TIMESTAMP = "timestamp"


def sanitize_name(name: Any, fallback: str = "column") -> str:
    """Lowercase ``[a-z0-9_]`` name of at most 63 characters."""
    cleaned = re.sub(r"[^a-zA-Z0-9_]", "_", str(name or "").strip()).lower()
    cleaned = cleaned[:MAX_IDENTIFIER_LENGTH]
    return cleaned or fallback


def run_suffix(run_id: Any) -> str:
    return str(run_id or "").replace("-", "")[:8] or "manual"


def target_table_name(table_name: Optional[str], run_id: Any, now: Optional[datetime] = None) -> str:
    """Sanitized sink table name; an empty name becomes ``run_<timestamp>_<run8>``."""
    if table_name and table_name.strip():
        return sanitize_name(table_name, fallback="result")
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d%H%M%S")
    return f"run_{stamp}_{run_suffix(run_id)}"


def infer_type(value: Any):
    if isinstance(value, bool):
        return CastTarget.BOOLEAN
    if isinstance(value, int):
        return CastTarget.INTEGER
    if isinstance(value, (Decimal, float)):
        return CastTarget.DECIMAL
    if isinstance(value, datetime):
        return TIMESTAMP
    if isinstance(value, date):
        return CastTarget.DATE
    return CastTarget.TEXT


def coerce(value: Any, column_type) -> Any:
    if value is None:
        return None
    if column_type == TIMESTAMP:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        try:
            return datetime.fromisoformat(str(value).strip())
        except ValueError:
            raise CastError(
                f"{value!r} is not a timestamp",
                context={"value": repr(value), "target_type": TIMESTAMP}
            )
    if column_type == CastTarget.DECIMAL and isinstance(value, float):
        return Decimal(str(value))
    return cast_value(value, column_type)


class TableWriter:
    """
    Writes one run's rows to one target table.

    ``replace`` loads into a staging table and swaps it in on ``finish()``,
    so the existing target is untouched unless the whole load succeeds.
    ``truncate`` and ``append`` write to the target directly.
    """

    def __init__(
        self,
        loader: "WarehouseLoader",
        table_name: str,
        mode: SinkMode,
        run_id: Any,
        columns: Optional[Sequence[str]] = None,
        column_types: Optional[Dict[str, CastTarget]] = None,
        warnings: Optional[WarningLog] = None,
    ):
        self.loader = loader
        self.schema = loader.schema
        self.table_name = table_name
        self.mode = SinkMode(mode)
        self.run_id = run_id
        self.declared_columns = list(columns) if columns is not None else None
        self.declared_types = dict(column_types or {})
        self.warnings = warnings if warnings is not None else WarningLog()

        self.rows_written = 0
        self._table: Optional[Table] = None
        self._names: Dict[str, str] = {}  # row key → physical column
        self._types: Dict[str, Any] = {}  # row key → CastTarget or TIMESTAMP

        if self.mode == SinkMode.REPLACE:
            base = table_name[:MAX_IDENTIFIER_LENGTH - len(STAGING_SUFFIX) - 8]
            self.write_table = f"{base}{STAGING_SUFFIX}{run_suffix(run_id)}"
        else:
            self.write_table = table_name

    @property
    def engine(self) -> AsyncEngine:
        return self.loader.engine

    @property
    def columns(self) -> List[str]:
        return list(self._names.values())

    # ------------------------------------------------------------------
    # Table definition
    # ------------------------------------------------------------------

    def _define(self, sample: List[Dict[str, Any]]) -> Table:
        keys = self.declared_columns
        if keys is None:
            keys = list(sample[0].keys()) if sample else []

        used = set()
        columns = []
        for key in keys:
            name = sanitize_name(key)
            base, n = name, 2
            while name in used:
                suffix = f"_{n}"
                name = f"{base[:MAX_IDENTIFIER_LENGTH - len(suffix)]}{suffix}"
                n += 1
            used.add(name)

            column_type = self.declared_types.get(key)
            if column_type is None:
                first = next((row.get(key) for row in sample if row.get(key) is not None), None)
                column_type = infer_type(first) if first is not None else CastTarget.TEXT

            self._names[key] = name
            self._types[key] = column_type
            sql_type = DateTime(timezone=True) if column_type == TIMESTAMP else SQL_TYPES[column_type]()
            columns.append(Column(name, sql_type, nullable=True))

        return Table(self.write_table, MetaData(), *columns, schema=self.schema)

    async def _ensure_table(self, sample: List[Dict[str, Any]]) -> None:
        if self._table is not None:
            return
        table = self._define(sample)
        try:
            async with self.engine.begin() as conn:
                await conn.execute(CreateSchema(self.schema, if_not_exists=True))
                if self.mode == SinkMode.REPLACE:
                    await conn.execute(DropTable(table, if_exists=True))
                    await conn.run_sync(table.create)
                else:
                    await conn.run_sync(table.create, checkfirst=True)
                    if self.mode == SinkMode.TRUNCATE:
                        await conn.execute(text(f"TRUNCATE TABLE {self._qualified(conn, self.write_table)}"))
        except SQLAlchemyError as e:
            raise self._error(f"Could not prepare table {self.schema}.{self.write_table}", e)

        self._table = table
        logger.info(
            f"Prepared {self.schema}.{self.write_table} ({self.mode.value}) "
            f"with {len(table.columns)} columns"
        )

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _coerce_row(self, row: Dict[str, Any], row_number: int) -> Dict[str, Any]:
        out = {}
        for key, name in self._names.items():
            try:
                out[name] = coerce(row.get(key), self._types[key])
            except CastError as e:
                self.warnings.add("sink", row_number, e.message, name)
                out[name] = None
        return out

    async def write(self, rows: List[Dict[str, Any]]) -> int:
        """Insert rows in chunks of ``batch_size``, one transaction per chunk."""
        await self._ensure_table(rows)
        if not rows or not self._names:
            return self.rows_written

        batch_size = self.loader.batch_size
        for start in range(0, len(rows), batch_size):
            chunk = [
                self._coerce_row(row, self.rows_written + i + 1)
                for i, row in enumerate(rows[start:start + batch_size])
            ]
            try:
                async with self.engine.begin() as conn:
                    await conn.execute(self._table.insert(), chunk)
            except SQLAlchemyError as e:
                raise self._error(f"Insert into {self.schema}.{self.write_table} failed", e)
            self.rows_written += len(chunk)
            logger.debug(f"Wrote {len(chunk)} rows to {self.schema}.{self.write_table} ({self.rows_written} total)")

        return self.rows_written

    async def finish(self) -> int:
        """Create the table if nothing was written and swap staging into place."""
        await self._ensure_table([])
        if self.mode == SinkMode.REPLACE:
            target = Table(self.table_name, MetaData(), schema=self.schema)
            try:
                async with self.engine.begin() as conn:
                    await conn.execute(DropTable(target, if_exists=True))
                    await conn.execute(text(
                        f"ALTER TABLE {self._qualified(conn, self.write_table)} "
                        f"RENAME TO {conn.dialect.identifier_preparer.quote(self.table_name)}"
                    ))
            except SQLAlchemyError as e:
                raise self._error(f"Could not replace {self.schema}.{self.table_name}", e)

        logger.info(f"Loaded {self.rows_written} rows into {self.schema}.{self.table_name}")
        return self.rows_written

    async def abort(self) -> None:
        """Drop the staging table of a failed ``replace`` load. Never raises."""
        if self.mode != SinkMode.REPLACE or self._table is None:
            return
        try:
            async with self.engine.begin() as conn:
                await conn.execute(DropTable(self._table, if_exists=True))
        except SQLAlchemyError as e:
            logger.warning(f"Could not drop staging table {self.schema}.{self.write_table}: {e}")

    # ------------------------------------------------------------------

    def _qualified(self, conn, table_name: str) -> str:
        prep = conn.dialect.identifier_preparer
        return f"{prep.quote_schema(self.schema)}.{prep.quote(table_name)}"

    def _error(self, message: str, original: Exception) -> LoadError:
        logger.error(f"{message}: {original}")
        return LoadError(
            message,
            context={"table_name": f"{self.schema}.{self.table_name}", "mode": self.mode.value},
            original_exception=original,
            rows_written=self.rows_written,
        )


class WarehouseLoader:
    """
    Creates table writers for one warehouse schema.

    Args:
        engine: Async engine for the warehouse database
        schema: Target schema (created on first use)
        batch_size: Rows per INSERT transaction
    """

    def __init__(self, engine: AsyncEngine, schema: str, batch_size: int = 1000):
        self.engine = engine
        self.schema = sanitize_name(schema, fallback="public")
        self.batch_size = max(1, batch_size)

    def writer(
        self,
        table_name: Optional[str],
        mode: SinkMode = SinkMode.REPLACE,
        run_id: Any = None,
        columns: Optional[Sequence[str]] = None,
        column_types: Optional[Dict[str, CastTarget]] = None,
        warnings: Optional[WarningLog] = None,
    ) -> TableWriter:
        return TableWriter(
            self,
            target_table_name(table_name, run_id),
            mode,
            run_id,
            columns=columns,
            column_types=column_types,
            warnings=warnings,
        )
