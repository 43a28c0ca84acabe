"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, SecretStr, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID

from models.base import RunStatus
from schemas.pipeline import CamelModel, ConnectionDescriptor, PipelineDescriptor, TableInfo


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    runs: Dict[str, int] = Field(default_factory=dict, description="ETL run count per status")
    imports: Dict[str, int] = Field(default_factory=dict, description="Import count per status")
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Unhealthy without a database"""
        if not values.get("database_connected", False):
            return "unhealthy"
        return v or "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "runs": {"pending": 0, "processing": 1, "completed": 42, "failed": 3},
                "imports": {"completed": 7},
                "status": "healthy",
            }
        }


# ============================================================================
# ETL Schemas
# ============================================================================

class RunPipelineRequest(CamelModel):
    """Body of POST /etl/run. ``connection`` is omitted for spreadsheet pipelines."""
    pipeline: PipelineDescriptor
    connection: Optional[ConnectionDescriptor] = None


class PreviewRequest(CamelModel):
    pipeline: PipelineDescriptor
    connection: Optional[ConnectionDescriptor] = None
    limit: Optional[int] = Field(None, ge=1)


class RunRecordResponse(CamelModel):
    """An ETL run record"""
    id: UUID
    pipeline_id: Optional[str] = None
    status: RunStatus
    destination_schema: Optional[str] = None
    destination_table: Optional[str] = None
    rows_written: int = 0
    rows_skipped: int = 0
    warnings: Optional[List[Dict[str, Any]]] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MarkStaleResponse(CamelModel):
    """Outcome of a reconciler call"""
    ok: bool = True
    status: RunStatus
    stale: bool
    message: Optional[str] = None


# ============================================================================
# Import Schemas
# ============================================================================

class ProcessImportRequest(CamelModel):
    """Optional overrides for POST /imports/{id}/process"""
    table_name: Optional[str] = None


# ============================================================================
# Connection Schemas
# ============================================================================

class EncryptPasswordRequest(CamelModel):
    password: SecretStr


class EncryptPasswordResponse(CamelModel):
    encrypted_password: str


class MetadataRequest(CamelModel):
    """
    Catalog lookup for the pipeline editor.

    Without ``table`` every visible table is listed; ``includeColumns`` adds
    their columns. With ``table`` only that table is returned, with columns.
    """
    connection: ConnectionDescriptor
    table: Optional[str] = Field(None, min_length=1)
    include_columns: bool = False


class MetadataResponse(CamelModel):
    ok: bool = True
    dialect: str
    tables: List[TableInfo]


class DistinctValuesRequest(CamelModel):
    connection: ConnectionDescriptor
    table: str = Field(..., min_length=1)
    column: str = Field(..., min_length=1)
    limit: Optional[int] = Field(None, ge=1)


class DistinctValuesResponse(CamelModel):
    ok: bool = True
    values: List[str]
