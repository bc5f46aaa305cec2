"""Per-job claim renewal while the archiver runs."""

import asyncio
from typing import Optional

import structlog
from prometheus_client import Counter

from wrasse.core.resilience import RetryConfig, with_retry
from wrasse.jobs.claims import ClaimManager

logger = structlog.get_logger(__name__)

HEARTBEATS_TOTAL = Counter(
    "wrasse_heartbeats_total",
    "Claim renewals",
    ["status"],  # success, failure
)


class Heartbeater:
    """
    Renews a job's claim every ``interval`` seconds until stopped.

    The first renewal happens immediately. A renewal that still fails after
    its retries ends the heartbeat for good: the claim is left to go stale
    and the takeover sweep reassigns the job later.
    """

    def __init__(
        self,
        claims: ClaimManager,
        job_id: str,
        interval: float = 0.5,
        retries: int = 3,
    ):
        self._claims = claims
        self._job_id = job_id
        self._interval = interval
        self._retry = RetryConfig(
            max_attempts=retries + 1,
            base_delay_seconds=min(interval, 0.5),
            max_delay_seconds=5.0,
        )
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self.renewals = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None or self._stopped:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the pending renewal. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        log = logger.bind(job_id=self._job_id)

        while not self._stopped:
            try:
                await with_retry(
                    lambda: self._claims.renew(self._job_id),
                    self._retry,
                    name="heartbeat",
                )
            except Exception as e:
                HEARTBEATS_TOTAL.labels(status="failure").inc()
                log.debug("heartbeat_stopped", error=str(e), error_type=type(e).__name__)
                return

            self.renewals += 1
            HEARTBEATS_TOTAL.labels(status="success").inc()
            await asyncio.sleep(self._interval)
