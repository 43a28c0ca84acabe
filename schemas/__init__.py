"""
Pydantic schemas for pipeline descriptors and API payloads.

Schemas:
    pipeline: Pipeline graph, rule configs, connection descriptor, results
    api: API request/response models

Features:
    - camelCase JSON aliases matching the pipeline editor
    - Discriminated node union keyed on ``kind``
    - Allow-listed enums for operators, join types and cast targets

Usage:
    from schemas.pipeline import PipelineDescriptor, ConnectionDescriptor
    from schemas.api import RunPipelineRequest, HealthResponse

Example:
    pipeline = PipelineDescriptor.model_validate(payload)
    assert pipeline.sink.table_name == "sales_filtered"
"""

__all__ = [
    "PipelineDescriptor",
    "ConnectionDescriptor",
    "ExecutionResult",
    "PreviewResult",
    "RunPipelineRequest",
    "PreviewRequest",
    "RunRecordResponse",
    "HealthResponse",
]
