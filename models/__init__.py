"""
SQLAlchemy ORM models for the status records the engine reads and writes.

Models:
    base: Base declarative class and the RunStatus enum
    etl_run: One pipeline execution (status, progress, failure)
    data_table: One spreadsheet import and its warehouse table

Usage:
    from models import ETLRun, DataTable
    from models.base import RunStatus

Example:
    run = ETLRun(pipeline_id="sales-daily", status=RunStatus.PENDING)
    session.add(run)
    await session.commit()

Both records share the same lifecycle: pending → processing → completed|failed,
with terminal states never left again.
"""

from models.base import Base, RunStatus, TERMINAL_STATUSES
from models.etl_run import ETLRun
from models.data_table import DataTable

__all__ = [
    "Base",
    "RunStatus",
    "TERMINAL_STATUSES",
    "ETLRun",
    "DataTable",
]
