"""Daemon: runs the finder, takeover and cleanup loops and the archival queue."""

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from prometheus_client import Counter, Gauge

from wrasse import __version__
from wrasse.config import Settings
from wrasse.jobs.archiver import Archiver
from wrasse.jobs.claims import ClaimBackend, ClaimManager
from wrasse.jobs.cleanup import CleanupSweeper
from wrasse.jobs.finder import JobFinder
from wrasse.jobs.models import Job
from wrasse.jobs.queue import WorkQueue
from wrasse.jobs.takeover import TakeoverSweeper
from wrasse.repositories.directory import JobDirectory
from wrasse.repositories.identity import IdentityService
from wrasse.repositories.object_store import ObjectStore
from wrasse.utils.time import Clock, utc_now

logger = structlog.get_logger(__name__)

LOOP_RUNS_TOTAL = Counter(
    "wrasse_loop_runs_total",
    "Poll loop iterations",
    ["loop", "status"],  # status: completed, failure
)
ARCHIVE_QUEUE_DEPTH = Gauge(
    "wrasse_archive_queue_depth",
    "Claimed jobs waiting for an archiver slot",
)


class Daemon:
    """
    One wrasse instance.

    Three poll loops (find, takeover, cleanup) each wait poll_interval after
    every iteration, whether it succeeded or failed, so a failing sweep
    never stalls the others. Claimed jobs are archived through a work queue
    bounded by queue_limit.
    """

    def __init__(
        self,
        settings: Settings,
        directory: JobDirectory,
        object_store: ObjectStore,
        identity: IdentityService,
        claims: ClaimManager,
        clock: Clock = utc_now,
    ):
        self._settings = settings
        self._claims = claims
        self._in_flight: set[str] = set()

        self.finder = JobFinder(
            directory, claims, settings, in_flight=self._in_flight.__contains__
        )
        self.takeover = TakeoverSweeper(directory, claims, settings, clock=clock)
        self.cleanup = CleanupSweeper(directory, claims, settings, clock=clock)
        self.archiver = Archiver(directory, object_store, identity, claims, settings)

        self.queue: WorkQueue[Job] = WorkQueue(
            self._archive,
            limit=settings.queue_limit,
            name="archive",
            on_error=self._on_archive_error,
        )

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def instance_id(self) -> str:
        return self._claims.instance_id

    @property
    def is_running(self) -> bool:
        return self._running

    def in_flight(self, job_id: str) -> bool:
        return job_id in self._in_flight

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Run until stop() is called."""
        await self.start()
        await self._stop_event.wait()
        await self.shutdown()

    async def start(self) -> None:
        if self._running:
            logger.warning("Daemon already running")
            return

        interval = self._settings.poll_interval_s
        logger.info(
            "daemon_started",
            instance_id=self.instance_id,
            version=__version__,
            claim_mode=self._settings.claim_mode,
            poll_interval_s=interval,
            takeover_time_s=self._settings.takeover_time_s,
            linger_time_s=self._settings.linger_time_s,
            queue_limit=self._settings.queue_limit,
        )

        self._stop_event.clear()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._poll_loop("find", self.find_once, interval)),
            asyncio.create_task(self._poll_loop("takeover", self.takeover.sweep, interval)),
            asyncio.create_task(self._poll_loop("cleanup", self.cleanup.sweep, interval)),
        ]

    def stop(self) -> None:
        """Ask run() to return. Safe from signal handlers."""
        self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop the loops and drain (or, after the timeout, abandon) the archives."""
        if not self._running:
            return

        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self.queue.close()
        try:
            await asyncio.wait_for(self.queue.join(), timeout=self._settings.shutdown_timeout_s)
        except asyncio.TimeoutError:
            # Abandoned claims go stale and are taken over
            logger.warning("archive_drain_timeout", inflight=len(self._in_flight))
            await self.queue.abort()

        self._running = False
        logger.info("daemon_stopped", instance_id=self.instance_id)

    # =========================================================================
    # Loops
    # =========================================================================

    async def find_once(self) -> list[Job]:
        """One find round: claim free jobs and queue them for archival."""
        jobs = await self.finder.find()
        for job in jobs:
            if job.id in self._in_flight:
                continue
            self._in_flight.add(job.id)
            self.queue.push(job)
        ARCHIVE_QUEUE_DEPTH.set(self.queue.npending)
        return jobs

    async def _poll_loop(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
    ) -> None:
        """Run tick every interval until stop_event is set."""
        while not self._stop_event.is_set():
            try:
                await tick()
                LOOP_RUNS_TOTAL.labels(loop=name, status="completed").inc()
            except Exception as e:
                logger.error(
                    "poll_loop_error",
                    loop=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                LOOP_RUNS_TOTAL.labels(loop=name, status="failure").inc()

            # Wait for next tick (interruptible)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

    # =========================================================================
    # Archival
    # =========================================================================

    async def _archive(self, job: Job) -> None:
        try:
            await self.archiver.archive(job)
        finally:
            self._in_flight.discard(job.id)
            ARCHIVE_QUEUE_DEPTH.set(self.queue.npending)

    def _on_archive_error(self, job: Job, error: Exception) -> None:
        # Already logged by the archiver with the failing stage
        logger.debug("archive_queue_error", job_id=job.id, error=str(error))


def create_daemon(
    settings: Settings,
    directory: JobDirectory,
    object_store: ObjectStore,
    identity: IdentityService,
    claim_backend: ClaimBackend,
    clock: Clock = utc_now,
) -> Daemon:
    """Wire a daemon and its claim manager from the service clients."""
    claims = ClaimManager(
        claim_backend,
        instance_id=settings.instance_id,
        takeover_time=settings.takeover_time,
        clock=clock,
    )
    return Daemon(settings, directory, object_store, identity, claims, clock=clock)
