"""
Connector for spreadsheet imports already materialized in the warehouse.

An "excel" source is a table the import pipeline wrote into the warehouse
schema, so it is read with the PostgreSQL connector against the
application's own database.
"""

import asyncpg

from ingestion.connectors.postgres import PostgresConnector


class WarehouseConnector(PostgresConnector):
    """Reads imported spreadsheet tables from the warehouse database."""

    dialect = "excel"

    @property
    def default_schema(self) -> str:
        return self.settings.WAREHOUSE_IMPORT_SCHEMA

    def describe(self) -> str:
        return f"excel://warehouse/{self.settings.WAREHOUSE_IMPORT_SCHEMA}"

    async def _connect(self, password: str):
        return await asyncpg.connect(
            dsn=self.settings.warehouse_dsn,
            timeout=self.settings.CONNECT_TIMEOUT_SECONDS,
        )
