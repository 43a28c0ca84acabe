from sqlalchemy import Enum
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class RunStatus(str, enum.Enum):
    """Status of an ETL run or spreadsheet import"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


def run_status_column_type() -> Enum:
    """Stores the lowercase values so other services can read the column as text."""
    return Enum(
        RunStatus,
        name="run_status",
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )
