# ============================================================================
# File: ingestion/runner.py
# Description: Pipeline executor with run-state tracking
# ============================================================================
"""
Pipeline Runner - executes a compiled pipeline against its source and
writes the result into the warehouse.

This module provides:
- Run-state transitions (pending → processing → completed|failed)
- Validation before any connector is opened
- Batched streaming from the source, in-memory rules, batched inserts
- Progress heartbeats so healthy long runs are not reaped as stale
- Structured results: every failure ends the run record in ``failed`` with
  a non-empty message and returns ``{ok: false, errorKind, message}``
"""

from contextlib import aclosing
from typing import Any, Optional
import logging

from core.config import settings as default_settings
from core.exceptions import ETLException, RunStateConflict
from ingestion.compiler import CompiledPipeline, compile_pipeline
from ingestion.connectors.base import ConnectorFactory
from ingestion.loaders.warehouse_loader import TableWriter, WarehouseLoader
from ingestion.run_state import RunId, RunStateStore
from ingestion.transformers.rules import RowInterpreter, WarningLog
from models.base import RunStatus
from schemas.pipeline import (
    ConnectionDescriptor,
    ExecutionResult,
    PipelineDescriptor,
    PreviewResult,
)

logger = logging.getLogger(__name__)


def warehouse_connection() -> ConnectionDescriptor:
    """Descriptor for pipelines over imported spreadsheet tables."""
    return ConnectionDescriptor(dialect="excel")


class PipelineRunner:
    """
    Pipeline executor.

    Responsibilities:
    - Claim the run record (pending → processing) or refuse to run
    - Compile before connecting; validation failures never open a connector
    - Own the connector session for the whole run and always release it
    - Record partial progress and finish the run record in a terminal state
    """

    def __init__(
        self,
        store: RunStateStore,
        connectors: ConnectorFactory,
        loader: WarehouseLoader,
        settings=None,
    ):
        self.store = store
        self.connectors = connectors
        self.loader = loader
        self.settings = settings or default_settings

    def compile(self, descriptor: PipelineDescriptor, connection: ConnectionDescriptor,
                limit: Optional[int] = None) -> CompiledPipeline:
        default_schema = self.settings.WAREHOUSE_IMPORT_SCHEMA if connection.dialect == "excel" else None
        return compile_pipeline(descriptor, connection.dialect, default_schema=default_schema, limit=limit)

    async def run(
        self,
        run_id: RunId,
        descriptor: PipelineDescriptor,
        connection: Optional[ConnectionDescriptor] = None,
    ) -> ExecutionResult:
        """
        Execute a pipeline for an existing ``pending`` run record.

        Args:
            run_id: Id of the run record to drive
            descriptor: Pipeline graph
            connection: Source connection; omitted for spreadsheet pipelines

        Returns:
            ExecutionResult (success or structured failure)

        Raises:
            RunStateConflict: If the record is missing or not pending
        """
        connection = connection or warehouse_connection()
        run_key = str(run_id)

        # --------------------------------------------------
        # PHASE 1: CLAIM THE RUN
        # --------------------------------------------------
        if not await self.store.transition(run_id, RunStatus.PROCESSING):
            raise RunStateConflict(
                f"Run {run_key} is not pending",
                context={"run_id": run_key}
            )
        logger.info(f"Run {run_key}: processing pipeline {descriptor.id or '<unsaved>'}")

        writer: Optional[TableWriter] = None
        warnings = WarningLog()
        rows_skipped = 0

        try:
            # --------------------------------------------------
            # PHASE 2: COMPILE (no connector is opened on failure)
            # --------------------------------------------------
            compiled = self.compile(descriptor, connection)
            sql, params = compiled.render()
            interpreter = RowInterpreter(compiled.steps, compiled.options)
            writer = self.loader.writer(
                compiled.sink.table_name,
                mode=compiled.sink.mode,
                run_id=run_key,
                columns=compiled.columns,
                column_types=compiled.column_types,
                warnings=warnings,
            )
            logger.debug(f"Run {run_key}: {sql}")

            # --------------------------------------------------
            # PHASE 3: EXTRACT → TRANSFORM → LOAD, BATCH BY BATCH
            # --------------------------------------------------
            rows_read = 0
            async with self.connectors.session(connection) as connector:
                batches = connector.stream(sql, params, batch_size=self.settings.ETL_FETCH_SIZE)
                # Closed before the session disconnects, also when a write fails
                async with aclosing(batches):
                    async for batch in batches:
                        rows, skipped = interpreter.apply(batch, warnings, offset=rows_read)
                        rows_read += len(batch)
                        rows_skipped += skipped
                        await writer.write(rows)
                        await self.store.record_progress(run_id, writer.rows_written)

            # --------------------------------------------------
            # PHASE 4: FINALIZE
            # --------------------------------------------------
            rows_written = await writer.finish()

        except ETLException as e:
            return await self._fail(run_id, e, writer, warnings, rows_skipped)

        except Exception as e:
            logger.exception(f"Run {run_key}: unexpected error")
            return await self._fail(run_id, e, writer, warnings, rows_skipped)

        await self.store.transition(
            run_id,
            RunStatus.COMPLETED,
            rows_written=rows_written,
            rows_skipped=rows_skipped,
            warnings=warnings.entries or None,
            destination_schema=self.loader.schema,
            destination_table=writer.table_name,
        )
        if warnings.count:
            logger.warning(f"Run {run_key}: {warnings.count} row warnings")
        logger.info(
            f"Run {run_key} completed: {rows_written} rows into "
            f"{self.loader.schema}.{writer.table_name}, {rows_skipped} skipped"
        )
        return ExecutionResult.success(
            rows_written=rows_written,
            table_name=writer.table_name,
            run_id=run_key,
            warnings=warnings.count,
            rows_skipped=rows_skipped,
        )

    async def _fail(self, run_id: RunId, error: Exception, writer: Optional[TableWriter],
                    warnings: WarningLog, rows_skipped: int) -> ExecutionResult:
        rows_written = writer.rows_written if writer is not None else 0
        if writer is not None:
            await writer.abort()

        result = ExecutionResult.failure(error, run_id=str(run_id), rows_written=rows_written)
        context: Any = error.to_dict() if isinstance(error, ETLException) else {"error": repr(error)}
        logger.error(f"Run {run_id} failed: {result.error_kind}: {result.message}", extra={"error_context": context})

        await self.store.transition(
            run_id,
            RunStatus.FAILED,
            error_message=result.message,
            rows_written=rows_written,
            error_kind=result.error_kind,
            rows_skipped=rows_skipped,
            warnings=warnings.entries or None,
        )
        return result

    async def preview(
        self,
        descriptor: PipelineDescriptor,
        connection: Optional[ConnectionDescriptor] = None,
        limit: Optional[int] = None,
    ) -> PreviewResult:
        """
        Compile with a row limit, run in-memory steps and return the rows.

        Nothing is written and no run record is involved; errors propagate.
        """
        connection = connection or warehouse_connection()
        limit = min(limit or self.settings.ETL_PREVIEW_LIMIT, self.settings.ETL_PREVIEW_LIMIT)

        compiled = self.compile(descriptor, connection, limit=limit)
        sql, params = compiled.render()
        warnings = WarningLog()

        async with self.connectors.session(connection) as connector:
            rows = await connector.query(sql, params)

        rows, skipped = RowInterpreter(compiled.steps, compiled.options).apply(rows, warnings)
        columns = compiled.columns if compiled.columns is not None else (list(rows[0].keys()) if rows else [])
        return PreviewResult(columns=columns, rows=rows, warnings=warnings.entries, rows_skipped=skipped)
