"""
Ingest package exports.
"""

from .context import IngestContext
from .job_state import JobState, JobStateManager, ProcessingPhase
from .payload import ChunkingOptions, JobPayload
from .pipeline import DocumentPipeline, PipelineResult
from .worker import JobOutcome, JobRunner, get_job_status

__all__ = [
    "IngestContext",
    "JobState",
    "JobStateManager",
    "ProcessingPhase",
    "ChunkingOptions",
    "JobPayload",
    "DocumentPipeline",
    "PipelineResult",
    "JobOutcome",
    "JobRunner",
    "get_job_status",
]
