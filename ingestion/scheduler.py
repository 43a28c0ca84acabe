import logging
from datetime import timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from ingestion.reconciler import StaleRunReconciler
from ingestion.run_state import SQLAlchemyRunStore
from models.data_table import DataTable
from models.etl_run import ETLRun

logger = logging.getLogger(__name__)


def build_reconcilers(session_factory: async_sessionmaker, minutes: Optional[float] = None) -> Dict[str, StaleRunReconciler]:
    """One reconciler per status table: ETL runs and spreadsheet imports."""
    threshold = timedelta(minutes=minutes if minutes is not None else settings.STALE_RUN_MINUTES)
    return {
        "etl_runs": StaleRunReconciler(SQLAlchemyRunStore(session_factory, ETLRun), threshold),
        "data_tables": StaleRunReconciler(SQLAlchemyRunStore(session_factory, DataTable), threshold),
    }


class StaleRunScheduler:
    """Periodically reaps runs and imports that stopped making progress."""

    def __init__(self, reconcilers: Dict[str, StaleRunReconciler], interval_minutes: Optional[float] = None):
        self.scheduler = AsyncIOScheduler()
        self.reconcilers = reconcilers
        self.interval_minutes = (
            interval_minutes if interval_minutes is not None else settings.STALE_SWEEP_INTERVAL_MINUTES
        )

    async def sweep(self) -> Dict[str, int]:
        """Job body: sweep every status table, one failure does not stop the others"""
        results = {}
        for name, reconciler in self.reconcilers.items():
            try:
                results[name] = await reconciler.sweep()
            except Exception as e:
                logger.error(f"Scheduler: stale sweep of {name} failed - {e}")
                results[name] = 0
        return results

    def start(self):
        """Start the scheduler"""
        if self.interval_minutes <= 0:
            logger.info("Stale-run sweep disabled")
            return
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="stale_run_sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Stale-run scheduler started (every {self.interval_minutes:g} min)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Stale-run scheduler stopped")
