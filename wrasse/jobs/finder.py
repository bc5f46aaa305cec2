"""Finder: discover done jobs and claim them for archival."""

from typing import Callable, Optional

import structlog

from wrasse.config import Settings
from wrasse.jobs.claims import ClaimManager
from wrasse.jobs.models import Job, JobQuery
from wrasse.jobs.types import JobState
from wrasse.repositories.directory import JobDirectory

logger = structlog.get_logger(__name__)


class JobFinder:
    """Lists unarchived done jobs and claims the ones that are free."""

    def __init__(
        self,
        directory: JobDirectory,
        claims: ClaimManager,
        settings: Settings,
        in_flight: Optional[Callable[[str], bool]] = None,
    ):
        """
        Args:
            directory: Job directory client
            claims: Claim manager for this instance
            settings: Daemon settings (owner scope, page size)
            in_flight: Tells whether a job is already being archived locally
        """
        self._directory = directory
        self._claims = claims
        self._settings = settings
        self._in_flight = in_flight or (lambda job_id: False)

    def _query(self) -> JobQuery:
        return JobQuery(
            state=JobState.DONE,
            archived=False,
            owner=self._settings.job_owner,
            limit=self._settings.list_page_limit,
        )

    async def find(self) -> list[Job]:
        """
        Claim every free candidate.

        Returns:
            Jobs this instance claimed in this round

        Raises:
            Exception: Listing failures; the caller retries next interval
        """
        logger.debug("find_jobs: entered")
        claimed: list[Job] = []
        seen = 0

        async for job in self._directory.list_jobs(self._query()):
            seen += 1
            if self._in_flight(job.id):
                continue

            try:
                claim = await self._claims.try_claim(job)
            except Exception as e:
                logger.warning(
                    "job_claim_failed",
                    job_id=job.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if claim is not None:
                claimed.append(job)

        logger.debug("find_jobs: done", candidates=seen, claimed=len(claimed))
        return claimed
