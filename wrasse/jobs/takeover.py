"""Takeover sweep: recover jobs whose claim holder went quiet."""

from dataclasses import dataclass

import structlog

from wrasse.config import Settings
from wrasse.jobs.claims import ClaimManager
from wrasse.jobs.models import Job, JobQuery
from wrasse.jobs.types import JobState
from wrasse.repositories.directory import JobDirectory
from wrasse.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class TakeoverResult:
    """Outcome of one takeover sweep."""

    released: int = 0
    adopted: int = 0
    errors: int = 0


class TakeoverSweeper:
    """
    Resets stale claims held by other instances.

    Two disjoint sets are swept:
    - unarchived done jobs: the claim is cleared, so the next find round of
      any instance picks the job up again
    - archived jobs whose holder never ran cleanup (timeArchiveDone older
      than linger + takeover time): the claim is moved to this instance, so
      its own cleanup sweep deletes the record
    """

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

    def _base_query(self, archived: bool) -> JobQuery:
        now = self._clock()
        query = JobQuery(
            state=JobState.DONE,
            archived=archived,
            owner=self._settings.job_owner,
            limit=self._settings.list_page_limit,
        )
        # Claim filters only exist server-side when the claim is on the record
        if self._claims.embedded:
            query.wrasse_present = True
            query.wrasse_not = self._claims.instance_id
            query.archive_started_before = now - self._settings.takeover_time
        return query

    async def sweep(self) -> TakeoverResult:
        logger.debug("takeover_jobs: entered")
        result = TakeoverResult()
        await self._release_unarchived(result)
        await self._adopt_archived(result)
        logger.debug(
            "takeover_jobs: done",
            released=result.released,
            adopted=result.adopted,
            errors=result.errors,
        )
        return result

    async def _release_unarchived(self, result: TakeoverResult) -> None:
        async for job in self._directory.list_jobs(self._base_query(archived=False)):
            try:
                if await self._claims.release_stale(job):
                    result.released += 1
            except Exception as e:
                result.errors += 1
                self._log_failure(job, "release", e)

    async def _adopt_archived(self, result: TakeoverResult) -> None:
        query = self._base_query(archived=True)
        cutoff = self._clock() - (self._settings.linger_time + self._settings.takeover_time)
        query.archived_before = cutoff

        async for job in self._directory.list_jobs(query):
            if job.time_archive_done is None:
                logger.warning("archived_job_without_done_time", job_id=job.id)
                continue
            if job.time_archive_done > cutoff:
                continue

            try:
                if await self._claims.adopt_stale(job):
                    result.adopted += 1
            except Exception as e:
                result.errors += 1
                self._log_failure(job, "adopt", e)

    @staticmethod
    def _log_failure(job: Job, action: str, error: Exception) -> None:
        logger.warning(
            "claim_reset_failed",
            job_id=job.id,
            action=action,
            error=str(error),
            error_type=type(error).__name__,
        )
