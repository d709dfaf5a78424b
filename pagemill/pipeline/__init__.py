"""Pipeline package: single-URL pipeline, batch orchestration and retry policy."""

from pagemill.pipeline.batch import (
    BatchItemResult,
    BatchOrchestrator,
    BatchResult,
    BatchSummary,
    RetryBatch,
    RetryItem,
)
from pagemill.pipeline.retry import RetryPolicy, retry_with_backoff
from pagemill.pipeline.service import Pipeline, PipelineResult, PipelineStats, new_request_id

__all__ = [
    "Pipeline",
    "PipelineResult",
    "PipelineStats",
    "new_request_id",
    "BatchOrchestrator",
    "BatchResult",
    "BatchItemResult",
    "BatchSummary",
    "RetryBatch",
    "RetryItem",
    "RetryPolicy",
    "retry_with_backoff",
]
