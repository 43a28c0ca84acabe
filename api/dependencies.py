"""
FastAPI dependencies: sessions, settings and engine components.

Routes only ever receive collaborators through these providers, so tests
swap them with ``app.dependency_overrides``.
"""

from datetime import timedelta
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, settings
from core.database import async_session_maker, engine
from core.secrets import SecretCodec
from ingestion.connectors import ConnectorFactory
from ingestion.loaders.warehouse_loader import WarehouseLoader
from ingestion.reconciler import StaleRunReconciler
from ingestion.run_state import SQLAlchemyRunStore
from ingestion.runner import PipelineRunner
from ingestion.spreadsheet import SpreadsheetImporter
from models.data_table import DataTable
from models.etl_run import ETLRun


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


def get_settings() -> Settings:
    return settings


def get_session_factory() -> async_sessionmaker:
    return async_session_maker


def get_codec(config: Settings = Depends(get_settings)) -> SecretCodec:
    return SecretCodec(config.ENCRYPTION_KEY)


def get_connector_factory(
    config: Settings = Depends(get_settings),
    codec: SecretCodec = Depends(get_codec),
) -> ConnectorFactory:
    return ConnectorFactory(config, codec)


def get_run_store(factory: async_sessionmaker = Depends(get_session_factory)) -> SQLAlchemyRunStore:
    return SQLAlchemyRunStore(factory, ETLRun)


def get_import_store(factory: async_sessionmaker = Depends(get_session_factory)) -> SQLAlchemyRunStore:
    return SQLAlchemyRunStore(factory, DataTable)


def get_runner(
    config: Settings = Depends(get_settings),
    store: SQLAlchemyRunStore = Depends(get_run_store),
    connectors: ConnectorFactory = Depends(get_connector_factory),
) -> PipelineRunner:
    loader = WarehouseLoader(engine, config.WAREHOUSE_OUTPUT_SCHEMA, config.ETL_BATCH_SIZE)
    return PipelineRunner(store, connectors, loader, config)


def get_importer(
    config: Settings = Depends(get_settings),
    store: SQLAlchemyRunStore = Depends(get_import_store),
) -> SpreadsheetImporter:
    loader = WarehouseLoader(engine, config.WAREHOUSE_IMPORT_SCHEMA, config.ETL_BATCH_SIZE)
    return SpreadsheetImporter(store, loader)


def get_run_reconciler(
    config: Settings = Depends(get_settings),
    store: SQLAlchemyRunStore = Depends(get_run_store),
) -> StaleRunReconciler:
    return StaleRunReconciler(store, timedelta(minutes=config.STALE_RUN_MINUTES))


def get_import_reconciler(
    config: Settings = Depends(get_settings),
    store: SQLAlchemyRunStore = Depends(get_import_store),
) -> StaleRunReconciler:
    return StaleRunReconciler(store, timedelta(minutes=config.STALE_RUN_MINUTES))
