"""
ETL execution engine.

This package turns a pipeline descriptor into rows in a warehouse table:

Modules:
    query_builder: Identifier quoting and dialect-aware WHERE/JOIN/SELECT composition
    compiler: Graph validation and folding into one SELECT plus in-memory steps
    runner: Executor driving run state, connector session, rules and loader
    run_state: Status record store (pending → processing → completed|failed)
    reconciler: Reaps runs and imports that stopped making progress
    scheduler: APScheduler job that sweeps stale records periodically
    spreadsheet: CSV/Excel import into the warehouse

Subpackages:
    connectors: Per-dialect source connectors (PostgreSQL, MySQL, Firebird, warehouse)
    transformers: Rule interpreter (in memory) and SQL push-down rendering
    loaders: Batched warehouse table writer

Architecture:
    1. Compile - validate the graph and build the SQL before any connection opens
    2. Extract - stream the SELECT from the source in batches
    3. Transform - apply rules that could not be pushed into SQL
    4. Load - insert batches into a staging or target table

Usage:
    from ingestion.runner import PipelineRunner
    from ingestion.connectors import ConnectorFactory
    from ingestion.loaders.warehouse_loader import WarehouseLoader
    from ingestion.run_state import SQLAlchemyRunStore

Example:
    runner = PipelineRunner(
        store=SQLAlchemyRunStore(async_session_maker, ETLRun),
        connectors=ConnectorFactory(settings, SecretCodec(settings.ENCRYPTION_KEY)),
        loader=WarehouseLoader(engine, settings.WAREHOUSE_OUTPUT_SCHEMA),
    )
    result = await runner.run(run.id, pipeline, connection)

    print(f"Wrote {result.rows_written} rows to {result.table_name}")

Error Handling:
    Every failure is an ETLException subclass from core.exceptions; the
    runner turns it into a failed run record and a structured result.
"""

__all__ = [
    "PipelineCompiler",
    "PipelineRunner",
    "ConnectorFactory",
    "WarehouseLoader",
    "SQLAlchemyRunStore",
    "StaleRunReconciler",
    "StaleRunScheduler",
    "SpreadsheetImporter",
]
