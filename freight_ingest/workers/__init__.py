"""Long-running pipeline workers."""

from freight_ingest.workers.scheduler import (
    PeriodicJob,
    PipelineRuntime,
    PipelineScheduler,
    build_jobs,
    create_runtime,
)

__all__ = [
    "PeriodicJob",
    "PipelineRuntime",
    "PipelineScheduler",
    "build_jobs",
    "create_runtime",
]
