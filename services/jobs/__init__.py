"""
Job Tracking

In-memory job registry, stage state machine and progress reporting.

Usage:
    from services.jobs import JobRegistry, ProgressHelper

    registry = JobRegistry(broadcaster)
    job_id = registry.create_job()
    progress = ProgressHelper(registry, job_id)
    progress.start()
"""

from .models import (
    STAGE_BANDS,
    Job,
    JobStatus,
    ProgressDetails,
    ProgressUpdate,
    Stage,
    StageBand,
)
from .progress import ProgressHelper
from .registry import DEFAULT_MAX_AGE_MS, JobRegistry, generate_job_id
from .sweeper import StaleJobSweeper

__all__ = [
    "DEFAULT_MAX_AGE_MS",
    "STAGE_BANDS",
    "Job",
    "JobRegistry",
    "JobStatus",
    "ProgressDetails",
    "ProgressHelper",
    "ProgressUpdate",
    "Stage",
    "StageBand",
    "StaleJobSweeper",
    "generate_job_id",
]
