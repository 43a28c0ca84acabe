"""
Spreadsheet import endpoints
"""

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_import_reconciler, get_importer
from api.routes.etl import mark_stale
from ingestion.reconciler import StaleRunReconciler
from ingestion.spreadsheet import SpreadsheetImporter
from models.data_table import DataTable
from schemas.api import MarkStaleResponse, ProcessImportRequest
from pathlib import Path
from typing import Optional
from uuid import UUID
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/imports", tags=["Imports"])


@router.post("/{data_table_id}/process")
async def process_import(
    data_table_id: UUID,
    body: Optional[ProcessImportRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    importer: SpreadsheetImporter = Depends(get_importer),
):
    """Load the uploaded file of a pending data table into the warehouse."""
    data_table = await db.get(DataTable, data_table_id)
    if data_table is None:
        raise HTTPException(status_code=404, detail=f"Import {data_table_id} not found")
    if not data_table.source_file:
        raise HTTPException(status_code=400, detail="The import has no uploaded file")

    table_name = body.table_name if body else None
    result = await importer.process(data_table_id, Path(data_table.source_file), table_name=table_name)
    return result.to_response()


@router.post("/{data_table_id}/mark-stale", response_model=MarkStaleResponse)
async def mark_import_stale(
    data_table_id: UUID,
    reconciler: StaleRunReconciler = Depends(get_import_reconciler),
):
    """Fail the import if it has been non-terminal without progress past the threshold."""
    return await mark_stale(reconciler, data_table_id, "Import")
