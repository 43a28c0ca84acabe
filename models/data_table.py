from sqlalchemy import Column, String, DateTime, Integer, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from datetime import datetime
import uuid
from models.base import Base, RunStatus, run_status_column_type


class DataTable(Base):
    """
    A spreadsheet (CSV/Excel) imported into the warehouse.

    The physical table lives in WAREHOUSE_IMPORT_SCHEMA and is what pipelines
    read through the ``excel`` dialect.
    """
    __tablename__ = "data_tables"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)

    status = Column(
        "import_status",
        run_status_column_type(),
        default=RunStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Physical location
    physical_schema = Column(String(63), nullable=True)
    physical_table = Column(String(63), nullable=True)
    source_file = Column(Text, nullable=True)  # path of the uploaded file

    rows_written = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_data_table_status_updated", "import_status", "updated_at"),
    )

    def __repr__(self):
        return f"<DataTable {self.name} {self.status}>"
