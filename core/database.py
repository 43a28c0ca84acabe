"""
Warehouse engine and session management with SQLAlchemy async

The warehouse holds the run/import status tables (public schema), pipeline
results (``WAREHOUSE_OUTPUT_SCHEMA``) and spreadsheet imports
(``WAREHOUSE_IMPORT_SCHEMA``).
"""

from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlalchemy.schema import CreateSchema
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_warehouse_engine(url: Optional[str] = None) -> AsyncEngine:
    # Each batch insert runs in its own short transaction; no pooled connections kept idle
    return create_async_engine(url or settings.DATABASE_URL, echo=False, poolclass=NullPool)


def warehouse_schemas() -> Tuple[str, ...]:
    """Schemas whose tables are created at runtime, never by migrations"""
    return tuple(dict.fromkeys((settings.WAREHOUSE_OUTPUT_SCHEMA, settings.WAREHOUSE_IMPORT_SCHEMA)))


async def create_warehouse_schemas(conn: AsyncConnection) -> None:
    for schema in warehouse_schemas():
        await conn.execute(CreateSchema(schema, if_not_exists=True))
        logger.info(f"Schema {schema} ready")


engine = create_warehouse_engine()

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
