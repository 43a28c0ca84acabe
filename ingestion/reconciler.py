"""
Stale-run reconciler.

Runs execute inside a request; a crashed or killed request leaves its
record in ``processing`` with nothing left to finish it. The reconciler
reaps such records: non-terminal and not updated for longer than the
threshold means ``failed`` with a timeout message.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
import logging

from core.exceptions import StaleTimeout
from ingestion.run_state import RunId, RunStateStore
from models.base import RunStatus

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = timedelta(minutes=12)


class ReconcileOutcome(str, Enum):
    REAPED = "reaped"
    ALREADY_TERMINAL = "already_terminal"
    NOT_STALE = "not_stale"
    NOT_FOUND = "not_found"


class StaleRunReconciler:
    """
    Marks abandoned runs as failed.

    Args:
        store: Status store for ETL runs or spreadsheet imports
        threshold: Age of ``updated_at`` after which a non-terminal record is stale
        clock: Returns the current time (naive UTC, like the status columns)
    """

    def __init__(
        self,
        store: RunStateStore,
        threshold: timedelta = DEFAULT_THRESHOLD,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.threshold = threshold
        self.clock = clock

    def timeout_error(self) -> StaleTimeout:
        minutes = self.threshold.total_seconds() / 60
        return StaleTimeout(
            f"Run timed out: no progress for more than {minutes:g} minutes",
            context={"threshold_minutes": minutes},
        )

    async def reconcile(self, run_id: RunId) -> ReconcileOutcome:
        """Reap one record if it is stale. Terminal records are never written."""
        record = await self.store.get(run_id)
        if record is None:
            return ReconcileOutcome.NOT_FOUND
        if record.is_terminal:
            return ReconcileOutcome.ALREADY_TERMINAL

        cutoff = self.clock() - self.threshold
        if record.updated_at is not None and record.updated_at >= cutoff:
            return ReconcileOutcome.NOT_STALE

        return await self._reap(run_id, cutoff)

    async def sweep(self) -> int:
        """Reap every stale record. Returns how many were marked failed."""
        cutoff = self.clock() - self.threshold
        reaped = 0
        for record in await self.store.list_stale(cutoff):
            if await self._reap(record.id, cutoff) == ReconcileOutcome.REAPED:
                reaped += 1
        if reaped:
            logger.warning(f"Stale sweep marked {reaped} run(s) as failed")
        return reaped

    async def _reap(self, run_id: RunId, cutoff: datetime) -> ReconcileOutcome:
        error = self.timeout_error()
        # The record may have progressed or finished since it was read
        changed = await self.store.transition(
            run_id,
            RunStatus.FAILED,
            error_message=error.message,
            updated_before=cutoff,
            error_kind=error.kind,
        )
        if not changed:
            record = await self.store.get(run_id)
            if record is None:
                return ReconcileOutcome.NOT_FOUND
            return ReconcileOutcome.ALREADY_TERMINAL if record.is_terminal else ReconcileOutcome.NOT_STALE

        logger.warning(f"Run {run_id} marked failed: {error.message}")
        return ReconcileOutcome.REAPED
