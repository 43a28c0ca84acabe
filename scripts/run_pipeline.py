"""
Script to run one pipeline JSON file from the command line

Usage:
    python scripts/run_pipeline.py pipeline.json --connection connection.json
    python scripts/run_pipeline.py pipeline.json --preview
"""

import argparse
import asyncio
import json
import sys
import os
import logging
import uuid

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import async_session_maker, engine
from core.exceptions import ETLException
from core.logging import setup_logging
from core.secrets import SecretCodec
from ingestion.connectors import ConnectorFactory
from ingestion.loaders.warehouse_loader import WarehouseLoader
from ingestion.run_state import SQLAlchemyRunStore
from ingestion.runner import PipelineRunner
from models.base import RunStatus
from models.etl_run import ETLRun
from schemas.pipeline import ConnectionDescriptor, ExecutionResult, PipelineDescriptor

setup_logging()
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run an ETL pipeline descriptor")
    parser.add_argument("pipeline", help="Path to the pipeline JSON file")
    parser.add_argument("--connection", help="Path to the connection JSON file (omit for spreadsheet sources)")
    parser.add_argument("--preview", action="store_true", help="Print preview rows instead of writing")
    parser.add_argument("--limit", type=int, default=None, help="Preview row limit")
    return parser.parse_args(argv)


def load_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


async def run_pipeline(args) -> int:
    """Run or preview the pipeline; returns the process exit code"""
    pipeline = PipelineDescriptor.model_validate(load_json(args.pipeline))
    connection = ConnectionDescriptor.model_validate(load_json(args.connection)) if args.connection else None

    runner = PipelineRunner(
        store=SQLAlchemyRunStore(async_session_maker, ETLRun),
        connectors=ConnectorFactory(settings, SecretCodec(settings.ENCRYPTION_KEY)),
        loader=WarehouseLoader(engine, settings.WAREHOUSE_OUTPUT_SCHEMA, settings.ETL_BATCH_SIZE),
    )

    try:
        if args.preview:
            preview = await runner.preview(pipeline, connection, limit=args.limit)
            print(json.dumps(preview.model_dump(by_alias=True, mode="json"), indent=2))
            return 0

        async with async_session_maker() as session:
            run = ETLRun(id=uuid.uuid4(), pipeline_id=pipeline.id, status=RunStatus.PENDING)
            session.add(run)
            await session.commit()

        result = await runner.run(run.id, pipeline, connection)
    except ETLException as e:
        result = ExecutionResult.failure(e)
    finally:
        await engine.dispose()

    print(json.dumps(result.to_response(), indent=2))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(run_pipeline(parse_args())))
