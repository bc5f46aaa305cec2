"""Cleanup sweep: delete job records once they have lingered after archival."""

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from prometheus_client import Counter

from wrasse.config import Settings
from wrasse.errors import ResourceNotFoundError
from wrasse.jobs.claims import ClaimManager
from wrasse.jobs.models import Job, JobQuery
from wrasse.jobs.queue import WorkQueue
from wrasse.jobs.types import JobState
from wrasse.repositories.directory import JobDirectory
from wrasse.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)

JOBS_PURGED_TOTAL = Counter(
    "wrasse_jobs_purged_total",
    "Job records deleted by the cleanup sweep",
    ["status"],  # deleted, failed
)


def is_lingered(job: Job, now: datetime, linger_time: timedelta) -> bool:
    """True once the job was archived at least linger_time ago."""
    if job.time_archive_done is None:
        return False
    return now - job.time_archive_done >= linger_time


@dataclass
class CleanupResult:
    """Outcome of one cleanup sweep."""

    deleted: int = 0
    errors: int = 0


class CleanupSweeper:
    """Deletes records of jobs this instance archived, after the linger window."""

    def __init__(
        self,
        directory: JobDirectory,
        claims: ClaimManager,
        settings: Settings,
        clock: Clock = utc_now,
    ):
        self._directory = directory
        self._claims = claims
        self._settings = settings
        self._clock = clock

    def _query(self, now: datetime) -> JobQuery:
        query = JobQuery(
            state=JobState.DONE,
            archived=True,
            owner=self._settings.job_owner,
            archived_before=now - self._settings.linger_time,
            limit=self._settings.list_page_limit,
        )
        if self._claims.embedded:
            query.wrasse = self._claims.instance_id
        return query

    async def sweep(self) -> CleanupResult:
        logger.debug("cleanup_jobs: entered")
        now = self._clock()
        result = CleanupResult()

        def on_error(job: Job, error: Exception) -> None:
            result.errors += 1
            JOBS_PURGED_TOTAL.labels(status="failed").inc()
            logger.warning(
                "job_purge_failed",
                job_id=job.id,
                error=str(error),
                error_type=type(error).__name__,
            )

        async def purge(job: Job) -> None:
            await self._purge(job)
            result.deleted += 1

        queue: WorkQueue[Job] = WorkQueue(
            purge,
            limit=self._settings.queue_limit,
            name="cleanup",
            on_error=on_error,
        )

        try:
            async for job in self._directory.list_jobs(self._query(now)):
                if not is_lingered(job, now, self._settings.linger_time):
                    continue
                if not await self._claims.holds(job):
                    continue
                queue.push(job)
        finally:
            queue.close()
            await queue.join()

        logger.debug("cleanup_jobs: done", deleted=result.deleted, errors=result.errors)
        return result

    async def _purge(self, job: Job) -> None:
        try:
            await self._directory.delete_job(job.id)
        except ResourceNotFoundError:
            logger.debug("job_already_deleted", job_id=job.id)
        await self._claims.forget(job.id)
        JOBS_PURGED_TOTAL.labels(status="deleted").inc()
        logger.info("job_purged", job_id=job.id)
