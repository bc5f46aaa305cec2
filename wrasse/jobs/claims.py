"""Claim protocol: who archives which job.

A claim is ``(owner, last_update, version)`` for a job id. It lives either on
the job record itself (``wrasse`` / ``timeArchiveStarted`` / record etag) or
in a separate claim store. Every change is a compare-and-swap against the
version that was read, so racing instances can never both win: the loser
gets VersionMismatchError and moves on.
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog
from prometheus_client import Counter

from wrasse.errors import ClaimLostError, VersionMismatchError
from wrasse.jobs.models import Claim, Job
from wrasse.repositories.claim_store import ClaimStore
from wrasse.repositories.directory import JobDirectory
from wrasse.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)

CLAIMS_TOTAL = Counter(
    "wrasse_claims_total",
    "Claim attempts by outcome",
    ["outcome"],  # claimed, skipped, lost
)
CLAIM_RESETS_TOTAL = Counter(
    "wrasse_claim_resets_total",
    "Stale claims reset by the takeover sweep",
    ["action"],  # released, adopted
)


class ClaimBackend(Protocol):
    """Where claims are stored."""

    # True when the claim is the job record's own field, so directory
    # listings can filter on it server-side
    embedded: bool

    async def read(self, job: Job) -> Claim:
        """Claim for a job that was just listed."""
        ...

    async def refresh(self, job_id: str) -> Claim:
        """Re-read the claim from its source of truth."""
        ...

    async def write(
        self, job_id: str, owner: Optional[str], expected: Claim, now: datetime
    ) -> Claim:
        """Compare-and-swap the claim. Raises VersionMismatchError on a lost race."""
        ...

    async def forget(self, job_id: str) -> None:
        """Drop whatever is stored for a deleted job."""
        ...


def claim_from_job(job: Job) -> Claim:
    return Claim(
        job_id=job.id,
        owner=job.wrasse,
        last_update=job.time_archive_started,
        version=job.etag,
    )


class EmbeddedClaimBackend:
    """Claims held in the job record's ``wrasse`` field."""

    embedded = True

    def __init__(self, directory: JobDirectory):
        self._directory = directory

    async def read(self, job: Job) -> Claim:
        return claim_from_job(job)

    async def refresh(self, job_id: str) -> Claim:
        return claim_from_job(await self._directory.get_job(job_id))

    async def write(
        self, job_id: str, owner: Optional[str], expected: Claim, now: datetime
    ) -> Claim:
        # The directory stamps timeArchiveStarted itself
        job = await self._directory.archive_start(job_id, owner, etag=expected.version)
        return claim_from_job(job)

    async def forget(self, job_id: str) -> None:
        return None


class StoreClaimBackend:
    """Claims held in a separate versioned key-value store."""

    embedded = False

    def __init__(self, store: ClaimStore):
        self._store = store

    async def read(self, job: Job) -> Claim:
        return await self.refresh(job.id)

    async def refresh(self, job_id: str) -> Claim:
        claim = await self._store.get(job_id)
        return claim if claim is not None else Claim(job_id=job_id)

    async def write(
        self, job_id: str, owner: Optional[str], expected: Claim, now: datetime
    ) -> Claim:
        return await self._store.put(job_id, owner, now, expected.version)

    async def forget(self, job_id: str) -> None:
        await self._store.delete(job_id)


class ClaimManager:
    """Claim decisions for one daemon instance."""

    def __init__(
        self,
        backend: ClaimBackend,
        instance_id: str,
        takeover_time: timedelta,
        clock: Clock = utc_now,
    ):
        self._backend = backend
        self._instance_id = instance_id
        self._takeover_time = takeover_time
        self._clock = clock

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def embedded(self) -> bool:
        return self._backend.embedded

    def is_expired(self, claim: Claim) -> bool:
        return claim.is_expired(self._clock(), self._takeover_time)

    async def try_claim(self, job: Job) -> Optional[Claim]:
        """Claim a job for this instance.

        Unclaimed and expired claims are taken, including an expired claim of
        this instance left behind by a failed run or a restart. Any live claim
        is left alone, so a failed job waits for takeover. Returns the new
        claim, or None if the job was skipped or the race was lost.
        """
        log = logger.bind(job_id=job.id, instance_id=self._instance_id)
        claim = await self._backend.read(job)

        if not claim.is_held:
            reason = "unclaimed"
        elif self.is_expired(claim):
            reason = "expired"
        else:
            log.debug("claim_skipped", owner=claim.owner)
            CLAIMS_TOTAL.labels(outcome="skipped").inc()
            return None

        try:
            won = await self._backend.write(job.id, self._instance_id, claim, self._clock())
        except VersionMismatchError:
            log.debug("claim_race_lost", previous_owner=claim.owner)
            CLAIMS_TOTAL.labels(outcome="lost").inc()
            return None

        log.info("job_claimed", reason=reason, previous_owner=claim.owner)
        CLAIMS_TOTAL.labels(outcome="claimed").inc()
        return won

    async def renew(self, job_id: str) -> Claim:
        """Heartbeat: bump last_update on a claim this instance holds.

        Raises ClaimLostError if someone else holds it now, JobNotFoundError if
        the job is gone and VersionMismatchError if it changed mid-renewal.
        """
        claim = await self._backend.refresh(job_id)
        if claim.owner != self._instance_id:
            raise ClaimLostError(f"job {job_id} is held by {claim.owner!r}")
        return await self._backend.write(job_id, self._instance_id, claim, self._clock())

    async def holds(self, job: Job) -> bool:
        claim = await self._backend.read(job)
        return claim.owner == self._instance_id

    async def release_stale(self, job: Job) -> bool:
        """Reset a stale foreign claim to unowned so any finder can pick the job up."""
        return await self._reset_stale(job, None, "released")

    async def adopt_stale(self, job: Job) -> bool:
        """Reset a stale foreign claim to this instance."""
        return await self._reset_stale(job, self._instance_id, "adopted")

    async def forget(self, job_id: str) -> None:
        await self._backend.forget(job_id)

    async def _reset_stale(self, job: Job, owner: Optional[str], action: str) -> bool:
        log = logger.bind(job_id=job.id, instance_id=self._instance_id)
        claim = await self._backend.read(job)

        if not claim.is_held or claim.owner == self._instance_id:
            return False
        if not self.is_expired(claim):
            return False

        try:
            await self._backend.write(job.id, owner, claim, self._clock())
        except VersionMismatchError:
            log.debug("claim_reset_race_lost", previous_owner=claim.owner)
            return False

        log.info("claim_reset", action=action, previous_owner=claim.owner)
        CLAIM_RESETS_TOTAL.labels(action=action).inc()
        return True
