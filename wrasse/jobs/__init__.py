"""Job archival package."""

from wrasse.jobs.types import ArchiveStage, JobState, StreamKind
from wrasse.jobs.models import (
    Account,
    Claim,
    Job,
    JobAuth,
    JobQuery,
    PaginationCursor,
    StreamRecord,
)

__all__ = [
    "ArchiveStage",
    "JobState",
    "StreamKind",
    "Account",
    "Claim",
    "Job",
    "JobAuth",
    "JobQuery",
    "PaginationCursor",
    "StreamRecord",
]
