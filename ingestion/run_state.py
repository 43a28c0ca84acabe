"""
Run/import status records.

The executor and the reconciler only ever touch a record through this
contract. Every transition is one conditional UPDATE guarded by the allowed
predecessor states, so a terminal record can never be moved again, even by
two writers racing each other.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.base import RunStatus, TERMINAL_STATUSES
from models.etl_run import ETLRun

logger = logging.getLogger(__name__)

RunId = Union[str, uuid.UUID]

# target status → states it may be entered from
ALLOWED_PREDECESSORS: Dict[RunStatus, tuple] = {
    RunStatus.PROCESSING: (RunStatus.PENDING,),
    RunStatus.COMPLETED: (RunStatus.PROCESSING,),
    RunStatus.FAILED: (RunStatus.PENDING, RunStatus.PROCESSING),
}

NON_TERMINAL_STATUSES = (RunStatus.PENDING, RunStatus.PROCESSING)


@dataclass
class RunRecord:
    """Status view of an ETL run or spreadsheet import."""
    id: str
    status: RunStatus
    updated_at: Optional[datetime]
    error_message: Optional[str] = None
    rows_written: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RunStateStore(ABC):
    """Reads status records and writes status transitions."""

    @abstractmethod
    async def get(self, run_id: RunId) -> Optional[RunRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        run_id: RunId,
        to: RunStatus,
        error_message: Optional[str] = None,
        rows_written: Optional[int] = None,
        updated_before: Optional[datetime] = None,
        **fields: Any,
    ) -> bool:
        """
        Move a record to ``to`` if its current status allows it.

        Args:
            run_id: Record id
            to: Target status
            error_message: Stored with the transition (failures)
            rows_written: Final or partial row count
            updated_before: Only transition if the record was last updated
                before this instant (stale reaping)
            **fields: Extra columns to set, ignored where the record has none

        Returns:
            True if exactly one record changed, False otherwise
        """

    @abstractmethod
    async def record_progress(self, run_id: RunId, rows_written: int) -> bool:
        """Bump ``updated_at`` and ``rows_written`` while the record is processing."""

    @abstractmethod
    async def list_stale(self, cutoff: datetime) -> List[RunRecord]:
        """Non-terminal records last updated before ``cutoff``."""


def _uuid(run_id: RunId) -> uuid.UUID:
    return run_id if isinstance(run_id, uuid.UUID) else uuid.UUID(str(run_id))


class SQLAlchemyRunStore(RunStateStore):
    """
    Run-state store over a status table.

    Works for any model with ``id``, ``status``, ``updated_at``,
    ``rows_written`` and ``error_message`` columns (``ETLRun``, ``DataTable``).
    Each call uses its own short session so status writes are never held
    back by the caller's transaction.
    """

    def __init__(self, session_factory: async_sessionmaker, model=ETLRun, clock=datetime.utcnow):
        self.session_factory = session_factory
        self.model = model
        self.clock = clock

    def _record(self, row) -> RunRecord:
        return RunRecord(
            id=str(row.id),
            status=RunStatus(row.status),
            updated_at=row.updated_at,
            error_message=row.error_message,
            rows_written=row.rows_written or 0,
        )

    async def get(self, run_id: RunId) -> Optional[RunRecord]:
        async with self.session_factory() as session:
            row = await session.get(self.model, _uuid(run_id))
            return self._record(row) if row is not None else None

    async def _update(self, session: AsyncSession, stmt) -> bool:
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount == 1

    async def transition(
        self,
        run_id: RunId,
        to: RunStatus,
        error_message: Optional[str] = None,
        rows_written: Optional[int] = None,
        updated_before: Optional[datetime] = None,
        **fields: Any,
    ) -> bool:
        to = RunStatus(to)
        allowed = ALLOWED_PREDECESSORS.get(to)
        if not allowed:
            raise ValueError(f"No transition leads to {to.value!r}")

        now = self.clock()
        values: Dict[str, Any] = {"status": to, "updated_at": now}
        if error_message is not None:
            values["error_message"] = error_message
        if rows_written is not None:
            values["rows_written"] = rows_written
        if to.is_terminal and hasattr(self.model, "completed_at"):
            values["completed_at"] = now
        for key, value in fields.items():
            if hasattr(self.model, key):
                values[key] = value

        stmt = (
            update(self.model)
            .where(self.model.id == _uuid(run_id), self.model.status.in_(allowed))
            .values({getattr(self.model, key): value for key, value in values.items()})
            .execution_options(synchronize_session=False)
        )
        if updated_before is not None:
            stmt = stmt.where(self.model.updated_at < updated_before)

        async with self.session_factory() as session:
            changed = await self._update(session, stmt)

        if changed:
            logger.info(f"{self.model.__tablename__} {run_id}: → {to.value}")
        else:
            logger.debug(f"{self.model.__tablename__} {run_id}: transition to {to.value} not applied")
        return changed

    async def record_progress(self, run_id: RunId, rows_written: int) -> bool:
        stmt = (
            update(self.model)
            .where(self.model.id == _uuid(run_id), self.model.status == RunStatus.PROCESSING)
            .values(rows_written=rows_written, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            return await self._update(session, stmt)

    async def list_stale(self, cutoff: datetime) -> List[RunRecord]:
        stmt = (
            select(self.model)
            .where(self.model.status.in_(NON_TERMINAL_STATUSES), self.model.updated_at < cutoff)
            .order_by(self.model.updated_at)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [self._record(row) for row in result.scalars().all()]
