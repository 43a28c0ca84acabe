"""
Pipeline execution, preview and run-record endpoints
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_run_reconciler, get_runner
from ingestion.reconciler import ReconcileOutcome, StaleRunReconciler
from ingestion.runner import PipelineRunner
from models.base import RunStatus
from models.etl_run import ETLRun
from schemas.api import MarkStaleResponse, PreviewRequest, RunPipelineRequest, RunRecordResponse
from schemas.pipeline import PreviewResult
from uuid import UUID
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/etl", tags=["ETL"])


async def mark_stale(reconciler: StaleRunReconciler, record_id: UUID, label: str) -> MarkStaleResponse:
    """Shared body of the mark-stale endpoints"""
    outcome = await reconciler.reconcile(record_id)
    if outcome == ReconcileOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"{label} {record_id} not found")

    record = await reconciler.store.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"{label} {record_id} not found")
    messages = {
        ReconcileOutcome.REAPED: reconciler.timeout_error().message,
        ReconcileOutcome.NOT_STALE: "Still within the processing window",
        ReconcileOutcome.ALREADY_TERMINAL: None,
    }
    return MarkStaleResponse(
        status=record.status,
        stale=outcome == ReconcileOutcome.REAPED,
        message=messages[outcome],
    )


@router.post("/run")
async def run_pipeline(
    body: RunPipelineRequest,
    db: AsyncSession = Depends(get_db),
    runner: PipelineRunner = Depends(get_runner),
):
    """
    Create a pending run record and execute the pipeline.

    Always answers 200 once the run record exists; the body is
    ``{ok: true, rowsWritten, tableName}`` or ``{ok: false, errorKind, message}``.
    """
    run = ETLRun(id=uuid.uuid4(), pipeline_id=body.pipeline.id, status=RunStatus.PENDING)
    db.add(run)
    await db.commit()

    logger.info(f"POST /etl/run - run {run.id} for pipeline {body.pipeline.id or '<unsaved>'}")
    result = await runner.run(run.id, body.pipeline, body.connection)
    return result.to_response()


@router.post("/preview", response_model=PreviewResult)
async def preview_pipeline(
    body: PreviewRequest,
    runner: PipelineRunner = Depends(get_runner),
):
    """Rows the pipeline would produce, up to the preview limit. Nothing is written."""
    return await runner.preview(body.pipeline, body.connection, limit=body.limit)


@router.get("/runs/{run_id}", response_model=RunRecordResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    run = await db.get(ETLRun, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return RunRecordResponse.model_validate(run)


@router.post("/runs/{run_id}/mark-stale", response_model=MarkStaleResponse)
async def mark_run_stale(
    run_id: UUID,
    reconciler: StaleRunReconciler = Depends(get_run_reconciler),
):
    """Fail the run if it has been non-terminal without progress past the threshold."""
    return await mark_stale(reconciler, run_id, "Run")
