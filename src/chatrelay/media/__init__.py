"""Media generation jobs: provider adapter, descriptor store, resumable poller."""

from .adapter import (
    Failed,
    JobStatus,
    MediaJobError,
    Queued,
    Running,
    SiliconFlowMediaAdapter,
    Submission,
    Succeeded,
    TimedOut,
)
from .poller import Cancelled, JobOutcome, PollerState, ResumableJobPoller
from .prompts import optimize_prompt_with_context
from .store import DescriptorStore, InMemoryDescriptorStore, JsonFileDescriptorStore

__all__ = [
    "Cancelled",
    "DescriptorStore",
    "Failed",
    "InMemoryDescriptorStore",
    "JobOutcome",
    "JobStatus",
    "JsonFileDescriptorStore",
    "MediaJobError",
    "PollerState",
    "Queued",
    "ResumableJobPoller",
    "Running",
    "SiliconFlowMediaAdapter",
    "Submission",
    "Succeeded",
    "TimedOut",
    "optimize_prompt_with_context",
]
