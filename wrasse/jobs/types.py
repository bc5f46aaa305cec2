"""Job archival type definitions."""

from enum import Enum


class JobState(str, Enum):
    """Job lifecycle states reported by the job directory."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"


class StreamKind(str, Enum):
    """Result streams exported for every archived job."""

    ERRORS = "errors"
    FAILED_INPUTS = "failed_inputs"
    INPUTS = "inputs"
    OUTPUTS = "outputs"

    @property
    def filename(self) -> str:
        """File name used both in scratch space and in the object store."""
        return _STREAM_FILES[self]

    @property
    def content_type(self) -> str:
        """Content type the exported file is uploaded with."""
        if self is StreamKind.ERRORS:
            return "application/x-json-stream; type=job-error"
        return "text/plain"


_STREAM_FILES = {
    StreamKind.ERRORS: "err.txt",
    StreamKind.FAILED_INPUTS: "fail.txt",
    StreamKind.INPUTS: "in.txt",
    StreamKind.OUTPUTS: "out.txt",
}


class ArchiveStage(str, Enum):
    """Archiver pipeline stages, in execution order."""

    SCRATCH_CREATED = "scratch-created"
    HEARTBEAT_STARTED = "heartbeat-started"
    IDENTITY_RESOLVED = "identity-resolved"
    ERRORS_EXPORTED = "errors-exported"
    FAILED_INPUTS_EXPORTED = "failed-inputs-exported"
    INPUTS_EXPORTED = "inputs-exported"
    OUTPUTS_EXPORTED = "outputs-exported"
    MANIFEST_UPLOADED = "manifest-uploaded"
    STREAMS_UPLOADED = "streams-uploaded"
    LIVE_MARKER_DELETED = "live-marker-deleted"
    ARCHIVE_MARKED_DONE = "archive-marked-done"
    MANIFEST_REUPLOADED = "manifest-reuploaded"
    SCRATCH_CLEANED = "scratch-cleaned"
