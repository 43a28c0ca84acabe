"""
Source connectors, one per supported dialect.

Driver modules are imported when the registry is built rather than at
package import.
"""

from typing import Dict, Type

from ingestion.connectors.base import ConnectorFactory, Row, SourceConnector


def default_registry() -> Dict[str, Type[SourceConnector]]:
    from ingestion.connectors.firebird import FirebirdConnector
    from ingestion.connectors.mysql import MySQLConnector
    from ingestion.connectors.postgres import PostgresConnector
    from ingestion.connectors.warehouse import WarehouseConnector

    return {
        "postgres": PostgresConnector,
        "mysql": MySQLConnector,
        "firebird": FirebirdConnector,
        "excel": WarehouseConnector,
    }


__all__ = ["ConnectorFactory", "Row", "SourceConnector", "default_registry"]
