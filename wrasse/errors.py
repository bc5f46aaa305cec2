"""Exception hierarchy shared by the daemon and its service clients."""

from typing import Optional


class WrasseError(Exception):
    """Base class for all daemon errors."""


class ServiceError(WrasseError):
    """A remote service answered with an error (or could not be reached)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_transient(self) -> bool:
        """5xx and 429 responses are worth retrying; everything else is not."""
        if self.status_code is None:
            return False
        return self.status_code >= 500 or self.status_code == 429


class ResourceNotFoundError(ServiceError):
    """The addressed resource does not exist."""


class JobNotFoundError(ResourceNotFoundError):
    """The job record is gone from the directory."""


class DirectoryDoesNotExistError(ServiceError):
    """An object store write targeted a directory that does not exist."""


class VersionMismatchError(ServiceError):
    """A compare-and-swap write lost: the version token no longer matches."""


class AccountNotFoundError(WrasseError):
    """The identity service has no account for the job owner."""


class ClaimLostError(WrasseError):
    """This instance no longer holds the claim it tried to renew."""


class ExportIncompleteError(WrasseError):
    """A paginated result stream stopped delivering before its expected count."""

    def __init__(self, stream: str, seen: int, expected: int):
        super().__init__(
            f"{stream}: stream stalled after {seen} of {expected} records"
        )
        self.stream = stream
        self.seen = seen
        self.expected = expected


class QueueClosedError(WrasseError):
    """An item was pushed into a work queue after close()."""


class ArchiveError(WrasseError):
    """An archiver pipeline stage failed; the remaining stages were skipped."""

    def __init__(self, job_id: str, stage: str, cause: BaseException):
        super().__init__(f"job {job_id}: stage {stage} failed: {cause}")
        self.job_id = job_id
        self.stage = stage
        self.cause = cause
