"""Job archival data models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from wrasse.jobs.types import JobState
from wrasse.utils.time import format_timestamp, parse_timestamp


@dataclass
class JobAuth:
    """Credentials the job was submitted with."""

    login: Optional[str] = None
    token: Optional[str] = None
    uuid: Optional[str] = None


@dataclass
class Job:
    """A job record as held by the job directory."""

    id: str
    owner: str
    state: JobState
    phases: list[dict[str, Any]] = field(default_factory=list)
    auth: JobAuth = field(default_factory=JobAuth)

    # Claim field: identity of the instance archiving this job
    wrasse: Optional[str] = None

    # Lifecycle timestamps
    time_created: Optional[datetime] = None
    time_archive_started: Optional[datetime] = None
    time_archive_done: Optional[datetime] = None

    # Version token of the record, for compare-and-swap updates
    etag: Optional[str] = None

    # The record exactly as the directory returned it
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def archived(self) -> bool:
        return self.time_archive_done is not None

    @property
    def output_phase(self) -> int:
        """Index of the phase whose outputs are the job's outputs."""
        return max(len(self.phases) - 1, 0)

    @classmethod
    def from_record(cls, value: dict[str, Any], etag: Optional[str] = None) -> "Job":
        """Build a Job from a directory record."""
        auth = value.get("auth") or {}
        return cls(
            id=value["jobId"],
            owner=value["owner"],
            state=JobState(value.get("state", JobState.RUNNING.value)),
            phases=list(value.get("phases") or []),
            auth=JobAuth(
                login=auth.get("login"),
                token=auth.get("token"),
                uuid=auth.get("uuid"),
            ),
            wrasse=value.get("wrasse") or None,
            time_created=parse_timestamp(value.get("timeCreated")),
            time_archive_started=parse_timestamp(value.get("timeArchiveStarted")),
            time_archive_done=parse_timestamp(value.get("timeArchiveDone")),
            etag=etag,
            raw=dict(value),
        )

    def translate(self) -> dict[str, Any]:
        """Public representation of the job, uploaded as the owner's job.json."""
        raw = self.raw
        state = self.state.value
        if self.state is JobState.QUEUED:
            state = JobState.RUNNING.value

        public: dict[str, Any] = {
            "id": self.id,
            "name": raw.get("name") or "",
            "state": state,
            "cancelled": bool(raw.get("timeCancelled")),
            "inputDone": bool(raw.get("timeInputDone")),
            "stats": raw.get("stats"),
            "timeCreated": raw.get("timeCreated"),
            "timeDone": raw.get("timeDone"),
            "timeArchiveStarted": format_timestamp(self.time_archive_started),
            "timeArchiveDone": format_timestamp(self.time_archive_done),
            "phases": self.phases,
            "options": raw.get("options"),
        }
        return {k: v for k, v in public.items() if v is not None}


@dataclass
class Claim:
    """Ownership of a job's archival: who holds it, since when, at which version."""

    job_id: str
    owner: Optional[str] = None
    last_update: Optional[datetime] = None
    version: Optional[str] = None

    @property
    def is_held(self) -> bool:
        return self.owner is not None

    def expires_at(self, takeover_time: timedelta) -> Optional[datetime]:
        if self.last_update is None:
            return None
        return self.last_update + takeover_time

    def is_expired(self, now: datetime, takeover_time: timedelta) -> bool:
        """A claim with no renewal for takeover_time (or no timestamp) is expired."""
        if self.last_update is None:
            return True
        return now - self.last_update >= takeover_time


@dataclass
class StreamRecord:
    """Per-record metadata from a result stream page."""

    id: str
    count: Optional[int] = None  # Only present on the first page


@dataclass
class PaginationCursor:
    """Progress through one result stream."""

    last_seen_id: Optional[str] = None
    expected_count: int = 0
    seen_count: int = 0
    stalled_pages: int = 0

    @property
    def complete(self) -> bool:
        return self.seen_count >= self.expected_count

    def advance(self, record: StreamRecord) -> None:
        if not self.expected_count and record.count:
            self.expected_count = record.count
        self.last_seen_id = record.id
        self.seen_count += 1


@dataclass
class Account:
    """Owner account as resolved by the identity service."""

    uuid: str
    login: str


@dataclass
class JobQuery:
    """Filter for job directory listings.

    Claim filters: ``wrasse`` selects jobs held by that identity,
    ``wrasse_not`` excludes one holder, ``wrasse_present`` selects jobs that
    are (True) or are not (False) claimed at all.
    """

    state: Optional[JobState] = None
    archived: Optional[bool] = None
    owner: Optional[str] = None
    wrasse: Optional[str] = None
    wrasse_not: Optional[str] = None
    wrasse_present: Optional[bool] = None
    archive_started_before: Optional[datetime] = None
    archived_before: Optional[datetime] = None
    limit: int = 1000

    def to_params(self) -> dict[str, Any]:
        """Query-string parameters for the directory's listing endpoint."""
        params: dict[str, Any] = {"limit": self.limit}
        if self.state is not None:
            params["state"] = self.state.value
        if self.archived is not None:
            params["archived"] = "true" if self.archived else "false"
        if self.owner:
            params["owner"] = self.owner
        if self.wrasse:
            params["wrasse"] = self.wrasse
        if self.wrasse_not:
            params["wrasseNot"] = self.wrasse_not
        if self.wrasse_present is not None:
            params["wrassePresent"] = "true" if self.wrasse_present else "false"
        if self.archive_started_before is not None:
            params["archiveStartedBefore"] = format_timestamp(self.archive_started_before)
        if self.archived_before is not None:
            params["archivedBefore"] = format_timestamp(self.archived_before)
        return params

    def matches(self, job: Job) -> bool:
        """Evaluate the filter against a job (boundaries are inclusive)."""
        if self.state is not None and job.state is not self.state:
            return False
        if self.archived is not None and job.archived is not self.archived:
            return False
        if self.owner and job.owner != self.owner:
            return False
        if self.wrasse and job.wrasse != self.wrasse:
            return False
        if self.wrasse_not and job.wrasse == self.wrasse_not:
            return False
        if self.wrasse_present is not None and (job.wrasse is not None) is not self.wrasse_present:
            return False
        if self.archive_started_before is not None:
            if job.time_archive_started is None or job.time_archive_started > self.archive_started_before:
                return False
        if self.archived_before is not None:
            if job.time_archive_done is None or job.time_archive_done > self.archived_before:
                return False
        return True
