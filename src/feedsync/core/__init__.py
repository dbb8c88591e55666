"""Core job machinery: leases, fetch pipeline, job runner and scheduler."""

from .jobs import (
    TASK_BACKFILL,
    TASK_CLEANUP,
    TASK_FETCH,
    TASK_KEYS,
    BackfillPayload,
    BackfillProgress,
    CleanupPayload,
    CleanupProgress,
    FetchPayload,
    FetchProgress,
    JobOutcome,
    JobRunner,
    TaskStatusView,
)
from .leases import TaskLease, decode_blob, encode_blob
from .pipeline import FetchPipeline, FetchSummary
from .scheduler import JobScheduler

__all__ = [
    "TASK_BACKFILL",
    "TASK_CLEANUP",
    "TASK_FETCH",
    "TASK_KEYS",
    "BackfillPayload",
    "BackfillProgress",
    "CleanupPayload",
    "CleanupProgress",
    "FetchPayload",
    "FetchPipeline",
    "FetchProgress",
    "FetchSummary",
    "JobOutcome",
    "JobRunner",
    "JobScheduler",
    "TaskLease",
    "TaskStatusView",
    "decode_blob",
    "encode_blob",
]
