"""
Create the run/import status tables and the warehouse schemas.

Development shortcut for ``alembic upgrade head`` plus schema creation.
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import create_warehouse_engine, create_warehouse_schemas
from core.logging import setup_logging
from models import Base

setup_logging()
logger = logging.getLogger(__name__)


async def init_database():
    engine = create_warehouse_engine()
    try:
        async with engine.begin() as conn:
            await create_warehouse_schemas(conn)
            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Status tables ready: {', '.join(sorted(Base.metadata.tables))}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_database())
