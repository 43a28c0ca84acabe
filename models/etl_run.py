from sqlalchemy import Column, String, DateTime, Integer, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from models.base import Base, RunStatus, run_status_column_type


class ETLRun(Base):
    """
    One execution of a pipeline.

    Purpose:
    - Status record the runner moves pending → processing → completed|failed
    - Progress heartbeat (updated_at, rows_written) watched by the reconciler
    - Failure explanation for the caller (error_kind, error_message)
    """
    __tablename__ = "etl_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_id = Column(String(100), nullable=True, index=True)

    status = Column(run_status_column_type(), default=RunStatus.PENDING, nullable=False, index=True)

    # Destination
    destination_schema = Column(String(63), nullable=True)
    destination_table = Column(String(63), nullable=True)

    # Statistics
    rows_written = Column(Integer, nullable=False, default=0)
    rows_skipped = Column(Integer, nullable=False, default=0)
    warnings = Column(JSONB, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_kind = Column(String(50), nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_etl_run_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return f"<ETLRun {self.id} {self.status}>"
