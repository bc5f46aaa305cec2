"""Job directory client: job records, claim field and result streams."""

from typing import Any, AsyncIterator, Optional, Protocol
from urllib.parse import quote

import structlog

from wrasse.errors import JobNotFoundError, ResourceNotFoundError
from wrasse.jobs.models import Job, JobQuery, StreamRecord
from wrasse.repositories.http import HttpRepository

logger = structlog.get_logger(__name__)


class JobDirectory(Protocol):
    """Operations the daemon needs from the job directory.

    Listings and stream fetches are async iterators: exhausting the iterator
    is the end signal, an exception is the error signal.
    """

    def list_jobs(self, query: JobQuery) -> AsyncIterator[Job]:
        """Lazily yield every job matching the query."""
        ...

    async def get_job(self, job_id: str) -> Job:
        """Fetch one job. Raises JobNotFoundError if it is gone."""
        ...

    async def archive_start(
        self, job_id: str, wrasse: Optional[str], etag: Optional[str] = None
    ) -> Job:
        """Set (or clear, with None) the claim field and stamp timeArchiveStarted.

        With an etag the write only succeeds if the record is still at that
        version; otherwise VersionMismatchError is raised.
        """
        ...

    async def archive_done(self, job_id: str) -> None:
        """Stamp timeArchiveDone."""
        ...

    async def delete_job(self, job_id: str) -> None:
        """Delete the job record. Deleting a missing record is not an error."""
        ...

    def fetch_errors(
        self, job_id: str, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        """One page of error objects after marker."""
        ...

    def fetch_failed_inputs(
        self, job_id: str, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        """One page of failed input keys after marker."""
        ...

    def fetch_inputs(
        self, job_id: str, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        """One page of input keys after marker."""
        ...

    def fetch_outputs(
        self, job_id: str, phase: int, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        """One page of output keys of the given phase after marker."""
        ...


def _job_path(job_id: str, suffix: str = "") -> str:
    return f"/jobs/{quote(job_id, safe='')}{suffix}"


class HttpJobDirectory(HttpRepository):
    """JSON-over-HTTP job directory client.

    Endpoints:
    - GET    /jobs?state=&archived=&owner=&wrasse=&...&marker=   listing page
    - GET    /jobs/{id}
    - POST   /jobs/{id}/archive/start  (If-Match: etag)
    - POST   /jobs/{id}/archive/done
    - DELETE /jobs/{id}
    - GET    /jobs/{id}/errors | /failures | /inputs | /phases/{n}/outputs
    """

    service = "directory"

    async def list_jobs(self, query: JobQuery) -> AsyncIterator[Job]:
        params = query.to_params()
        marker: Optional[str] = None

        while True:
            if marker:
                params["marker"] = marker
            response = await self._request("GET", "/jobs", params=params)
            body = response.json()

            for entry in body.get("jobs", []):
                yield Job.from_record(entry["value"], entry.get("etag"))

            marker = body.get("next")
            if not marker:
                return

    async def get_job(self, job_id: str) -> Job:
        try:
            response = await self._request("GET", _job_path(job_id))
        except ResourceNotFoundError as e:
            raise JobNotFoundError(f"job {job_id} not found", e.status_code, e.code) from e
        body = response.json()
        return Job.from_record(body["value"], body.get("etag"))

    async def archive_start(
        self, job_id: str, wrasse: Optional[str], etag: Optional[str] = None
    ) -> Job:
        headers = {"if-match": etag} if etag else {}
        try:
            response = await self._request(
                "POST",
                _job_path(job_id, "/archive/start"),
                json={"wrasse": wrasse},
                headers=headers,
            )
        except ResourceNotFoundError as e:
            raise JobNotFoundError(f"job {job_id} not found", e.status_code, e.code) from e
        body = response.json()
        return Job.from_record(body["value"], body.get("etag"))

    async def archive_done(self, job_id: str) -> None:
        try:
            await self._request("POST", _job_path(job_id, "/archive/done"))
        except ResourceNotFoundError as e:
            raise JobNotFoundError(f"job {job_id} not found", e.status_code, e.code) from e

    async def delete_job(self, job_id: str) -> None:
        try:
            await self._request("DELETE", _job_path(job_id))
        except ResourceNotFoundError:
            logger.debug("delete_job: already gone", job_id=job_id)

    async def _fetch_page(
        self, job_id: str, suffix: str, field: str, marker: Optional[str]
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        params = {"marker": marker} if marker else {}
        try:
            response = await self._request("GET", _job_path(job_id, suffix), params=params)
        except ResourceNotFoundError as e:
            raise JobNotFoundError(f"job {job_id} not found", e.status_code, e.code) from e

        for record in response.json().get("records", []):
            yield record.get(field), StreamRecord(
                id=str(record["_id"]), count=record.get("_count")
            )

    def fetch_errors(
        self, job_id: str, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        return self._fetch_page(job_id, "/errors", "value", marker)

    def fetch_failed_inputs(
        self, job_id: str, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        return self._fetch_page(job_id, "/failures", "key", marker)

    def fetch_inputs(
        self, job_id: str, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        return self._fetch_page(job_id, "/inputs", "key", marker)

    def fetch_outputs(
        self, job_id: str, phase: int, marker: Optional[str] = None
    ) -> AsyncIterator[tuple[Any, StreamRecord]]:
        return self._fetch_page(job_id, f"/phases/{phase}/outputs", "key", marker)
