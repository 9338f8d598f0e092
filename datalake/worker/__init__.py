from datalake.worker.pipeline import (
    PERMANENT_ERRORS,
    InvalidDescriptorError,
    JobWorker,
    WorkerOutcome,
    default_worker_id,
)
from datalake.worker.runner import build_worker, main

__all__ = [
    "PERMANENT_ERRORS",
    "InvalidDescriptorError",
    "JobWorker",
    "WorkerOutcome",
    "build_worker",
    "default_worker_id",
    "main",
]
