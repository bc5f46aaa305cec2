"""Archiver pipeline: export a claimed job's results to the object store."""

import asyncio
import base64
import hashlib
import json
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog
from prometheus_client import Counter, Gauge, Histogram

from wrasse.config import Settings
from wrasse.errors import (
    ArchiveError,
    DirectoryDoesNotExistError,
    ResourceNotFoundError,
    WrasseError,
)
from wrasse.jobs.claims import ClaimManager
from wrasse.jobs.export import export_stream, json_line, key_line
from wrasse.jobs.heartbeat import Heartbeater
from wrasse.jobs.models import Account, Job
from wrasse.jobs.types import ArchiveStage, StreamKind
from wrasse.repositories.directory import JobDirectory
from wrasse.repositories.identity import IdentityService
from wrasse.repositories.object_store import Body, ObjectStore

logger = structlog.get_logger(__name__)

JOB_ROOT_FMT = "/{login}/jobs/{job_id}"
JOB_MANIFEST_FMT = JOB_ROOT_FMT + "/job.json"
JOB_LIVE_FMT = JOB_ROOT_FMT + "/live"
ADMIN_JOB_FMT = "{root}/{created:%Y}/{created:%m}/{created:%d}/{created:%H}/{job_id}"

MANIFEST_FILENAME = "job.json"
MANIFEST_CONTENT_TYPE = "application/json"
UPLOAD_CHUNK_SIZE = 64 * 1024

# Upload order of the exported streams
UPLOAD_ORDER = (
    StreamKind.OUTPUTS,
    StreamKind.ERRORS,
    StreamKind.INPUTS,
    StreamKind.FAILED_INPUTS,
)

ARCHIVES_TOTAL = Counter(
    "wrasse_archives_total",
    "Archiver pipeline runs",
    ["status"],  # succeeded, failed
)
ARCHIVE_STAGE_FAILURES = Counter(
    "wrasse_archive_stage_failures_total",
    "Archiver pipeline failures by stage",
    ["stage"],
)
ARCHIVES_INFLIGHT = Gauge(
    "wrasse_archives_inflight",
    "Jobs currently being archived",
)
ARCHIVE_DURATION = Histogram(
    "wrasse_archive_duration_seconds",
    "Duration of successful archiver runs",
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)


@dataclass
class ArchiveContext:
    """Per-job state shared by the pipeline stages."""

    job: Job
    log: structlog.stdlib.BoundLogger
    work_dir: Optional[Path] = None
    account: Optional[Account] = None
    heartbeat: Optional[Heartbeater] = None
    files: dict[StreamKind, Path] = field(default_factory=dict)
    completed: list[ArchiveStage] = field(default_factory=list)

    @property
    def login(self) -> str:
        if self.account is None:
            raise WrasseError(f"job {self.job.id}: owner identity not resolved")
        return self.account.login


StageHandler = Callable[[ArchiveContext], Awaitable[None]]


def _md5_base64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


async def _read_chunks(path: Path) -> AsyncIterator[bytes]:
    with open(path, "rb") as fh:
        while True:
            chunk = await asyncio.to_thread(fh.read, UPLOAD_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk


class Archiver:
    """
    Runs the archival stages for one claimed job at a time.

    Stages run strictly in order. The first failure aborts the rest and is
    raised as ArchiveError; the heartbeat is stopped and the scratch
    directory removed either way. The claim is never touched here: a failed
    job keeps its claim until it goes stale and the takeover sweep frees it.
    Rerunning a job is safe since every export overwrites its file.
    """

    def __init__(
        self,
        directory: JobDirectory,
        object_store: ObjectStore,
        identity: IdentityService,
        claims: ClaimManager,
        settings: Settings,
    ):
        self._directory = directory
        self._object_store = object_store
        self._identity = identity
        self._claims = claims
        self._settings = settings

    @property
    def stages(self) -> list[tuple[ArchiveStage, StageHandler]]:
        return [
            (ArchiveStage.SCRATCH_CREATED, self._create_scratch_dir),
            (ArchiveStage.HEARTBEAT_STARTED, self._start_heartbeat),
            (ArchiveStage.IDENTITY_RESOLVED, self._resolve_identity),
            (ArchiveStage.ERRORS_EXPORTED, self._export_errors),
            (ArchiveStage.FAILED_INPUTS_EXPORTED, self._export_failed_inputs),
            (ArchiveStage.INPUTS_EXPORTED, self._export_inputs),
            (ArchiveStage.OUTPUTS_EXPORTED, self._export_outputs),
            (ArchiveStage.MANIFEST_UPLOADED, self._upload_manifest),
            (ArchiveStage.STREAMS_UPLOADED, self._upload_streams),
            (ArchiveStage.LIVE_MARKER_DELETED, self._delete_live_marker),
            (ArchiveStage.ARCHIVE_MARKED_DONE, self._mark_archive_done),
            (ArchiveStage.MANIFEST_REUPLOADED, self._reupload_manifests),
            (ArchiveStage.SCRATCH_CLEANED, self._clean_scratch_dir),
        ]

    async def __call__(self, job: Job) -> ArchiveContext:
        return await self.archive(job)

    async def archive(self, job: Job) -> ArchiveContext:
        """Archive one job. Raises ArchiveError naming the failed stage."""
        log = logger.bind(job_id=job.id, instance_id=self._claims.instance_id)
        ctx = ArchiveContext(job=job, log=log)
        started = time.monotonic()

        log.info("job_archive_started", owner=job.owner)
        ARCHIVES_INFLIGHT.inc()
        try:
            for stage, handler in self.stages:
                try:
                    await handler(ctx)
                except Exception as e:
                    ARCHIVE_STAGE_FAILURES.labels(stage=stage.value).inc()
                    raise ArchiveError(job.id, stage.value, e) from e
                ctx.completed.append(stage)
                log.debug("archive_stage_done", stage=stage.value)
        except ArchiveError as e:
            ARCHIVES_TOTAL.labels(status="failed").inc()
            log.error(
                "job_archive_failed",
                stage=e.stage,
                error=str(e.cause),
                error_type=type(e.cause).__name__,
            )
            raise
        finally:
            ARCHIVES_INFLIGHT.dec()
            if ctx.heartbeat is not None:
                await ctx.heartbeat.stop()
            if ctx.work_dir is not None and ArchiveStage.SCRATCH_CLEANED not in ctx.completed:
                shutil.rmtree(ctx.work_dir, ignore_errors=True)

        duration = time.monotonic() - started
        ARCHIVES_TOTAL.labels(status="succeeded").inc()
        ARCHIVE_DURATION.observe(duration)
        log.info("job_archived", duration_s=round(duration, 3))
        return ctx

    # =========================================================================
    # Local scratch space
    # =========================================================================

    async def _create_scratch_dir(self, ctx: ArchiveContext) -> None:
        work_dir = Path(self._settings.scratch_dir) / ctx.job.id
        # Leftovers of an earlier, crashed run are discarded
        shutil.rmtree(work_dir, ignore_errors=True)
        work_dir.mkdir(parents=True, exist_ok=True)
        ctx.work_dir = work_dir

    async def _clean_scratch_dir(self, ctx: ArchiveContext) -> None:
        if ctx.work_dir is not None:
            shutil.rmtree(ctx.work_dir)

    # =========================================================================
    # Claim and identity
    # =========================================================================

    async def _start_heartbeat(self, ctx: ArchiveContext) -> None:
        ctx.heartbeat = Heartbeater(
            self._claims,
            ctx.job.id,
            interval=self._settings.heartbeat_interval_s,
            retries=self._settings.heartbeat_retries,
        )
        ctx.heartbeat.start()

    async def _resolve_identity(self, ctx: ArchiveContext) -> None:
        ctx.account = await self._identity.resolve_owner(ctx.job.owner)
        ctx.log.debug("owner_resolved", login=ctx.account.login)

    # =========================================================================
    # Result stream exports
    # =========================================================================

    async def _export(self, ctx: ArchiveContext, kind: StreamKind, fetch_page, format_line) -> None:
        assert ctx.work_dir is not None
        path = ctx.work_dir / kind.filename
        cursor = await export_stream(
            fetch_page,
            path,
            stream=kind.value,
            format_line=format_line,
            max_stalled_pages=self._settings.export_max_stalled_pages,
        )
        ctx.files[kind] = path
        ctx.log.debug("stream_exported", stream=kind.value, records=cursor.seen_count)

    async def _export_errors(self, ctx: ArchiveContext) -> None:
        job_id = ctx.job.id
        await self._export(
            ctx,
            StreamKind.ERRORS,
            lambda marker: self._directory.fetch_errors(job_id, marker=marker),
            json_line,
        )

    async def _export_failed_inputs(self, ctx: ArchiveContext) -> None:
        job_id = ctx.job.id
        await self._export(
            ctx,
            StreamKind.FAILED_INPUTS,
            lambda marker: self._directory.fetch_failed_inputs(job_id, marker=marker),
            key_line,
        )

    async def _export_inputs(self, ctx: ArchiveContext) -> None:
        job_id = ctx.job.id
        await self._export(
            ctx,
            StreamKind.INPUTS,
            lambda marker: self._directory.fetch_inputs(job_id, marker=marker),
            key_line,
        )

    async def _export_outputs(self, ctx: ArchiveContext) -> None:
        job_id = ctx.job.id
        phase = ctx.job.output_phase
        await self._export(
            ctx,
            StreamKind.OUTPUTS,
            lambda marker: self._directory.fetch_outputs(job_id, phase, marker=marker),
            key_line,
        )

    # =========================================================================
    # Uploads
    # =========================================================================

    def _owner_headers(self, job: Job) -> dict[str, str]:
        headers = {"access-control-allow-origin": "*"}
        if job.auth.token:
            headers["authorization"] = f"Token {job.auth.token}"
        return headers

    async def _put_owner_object(
        self,
        ctx: ArchiveContext,
        key: str,
        body: Body,
        content_type: str,
        size: Optional[int] = None,
        md5: Optional[str] = None,
    ) -> None:
        """Write into the owner's job directory; a vanished directory is not an error."""
        try:
            await self._object_store.put(
                key,
                body,
                content_type=content_type,
                size=size,
                md5=md5,
                headers=self._owner_headers(ctx.job),
            )
        except DirectoryDoesNotExistError:
            ctx.log.debug("job_directory_not_found", key=key)
            return
        ctx.log.debug("object_uploaded", key=key)

    async def _upload_manifest(self, ctx: ArchiveContext) -> None:
        assert ctx.work_dir is not None
        data = json.dumps(ctx.job.translate()).encode("utf-8")
        (ctx.work_dir / MANIFEST_FILENAME).write_bytes(data)
        key = JOB_MANIFEST_FMT.format(login=ctx.login, job_id=ctx.job.id)
        await self._put_owner_object(
            ctx,
            key,
            data,
            MANIFEST_CONTENT_TYPE,
            size=len(data),
            md5=_md5_base64(data),
        )

    async def _upload_streams(self, ctx: ArchiveContext) -> None:
        root = JOB_ROOT_FMT.format(login=ctx.login, job_id=ctx.job.id)
        for kind in UPLOAD_ORDER:
            path = ctx.files[kind]
            await self._put_owner_object(
                ctx,
                f"{root}/{kind.filename}",
                _read_chunks(path),
                kind.content_type,
                size=path.stat().st_size,
            )

    async def _delete_live_marker(self, ctx: ArchiveContext) -> None:
        login = ctx.job.auth.login or ctx.login
        key = JOB_LIVE_FMT.format(login=login, job_id=ctx.job.id)
        try:
            await self._object_store.unlink(key)
        except ResourceNotFoundError:
            ctx.log.debug("live_marker_missing", key=key)

    async def _mark_archive_done(self, ctx: ArchiveContext) -> None:
        await self._directory.archive_done(ctx.job.id)
        # Re-read so the final manifest carries timeArchiveDone
        ctx.job = await self._directory.get_job(ctx.job.id)

    async def _reupload_manifests(self, ctx: ArchiveContext) -> None:
        await self._upload_manifest(ctx)
        await self._upload_admin_manifest(ctx)

    async def _upload_admin_manifest(self, ctx: ArchiveContext) -> None:
        job = ctx.job
        created = job.time_created or job.time_archive_done
        if created is None:
            raise ValueError(f"job {job.id} has no creation time")

        directory = ADMIN_JOB_FMT.format(
            root=self._settings.admin_archive_root.rstrip("/"),
            created=created,
            job_id=job.id,
        )
        headers = {"access-control-allow-origin": "*"}
        data = json.dumps(job.raw).encode("utf-8")

        await self._object_store.mkdirp(directory, headers=headers)
        await self._object_store.put(
            f"{directory}/job.json",
            data,
            content_type=MANIFEST_CONTENT_TYPE,
            size=len(data),
            md5=_md5_base64(data),
            headers=headers,
        )
        ctx.log.debug("admin_manifest_uploaded", directory=directory)
