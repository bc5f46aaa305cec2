"""Tests for the archiver pipeline."""

import asyncio
import base64
import hashlib
import json
from pathlib import Path
from unittest.mock import patch

import pytest
import structlog

from wrasse.errors import ArchiveError, ServiceError, WrasseError
from wrasse.jobs.archiver import UPLOAD_CHUNK_SIZE, ArchiveContext, Archiver, _read_chunks
from wrasse.jobs.types import ArchiveStage

INPUTS = ["/U1/stor/a", "/U1/stor/b", "/U1/stor/c"]
OUTPUTS = ["/U1/jobs/J1/stor/o1", "/U1/jobs/J1/stor/o2"]
ADMIN_MANIFEST = "/poseidon/stor/job_archives/2014/03/04/05/J1/job.json"


@pytest.fixture
def archiver(directory, object_store, identity, claims, settings):
    return Archiver(directory, object_store, identity, claims, settings)


@pytest.fixture
def claimed_job(directory, object_store):
    directory.add_job(
        "J1",
        inputs=INPUTS,
        outputs=OUTPUTS,
        errors=[{"phaseNum": 0, "what": "map", "code": "TaskError"}],
        failures=["/U1/stor/c"],
        wrasse="wrasse-a",
        timeArchiveStarted="2014-03-04T05:06:07.000Z",
    )
    object_store.objects["/U1/jobs/J1/live"] = b""
    return directory.job("J1")


def _scratch(settings, job_id="J1") -> Path:
    return Path(settings.scratch_dir) / job_id


class TestArchiverHappyPath:
    @pytest.mark.asyncio
    async def test_archives_all_streams(self, archiver, claimed_job, object_store):
        await archiver.archive(claimed_job)

        assert object_store.text("/U1/jobs/J1/in.txt") == "".join(k + "\n" for k in INPUTS)
        assert object_store.text("/U1/jobs/J1/out.txt") == "".join(k + "\n" for k in OUTPUTS)
        assert object_store.text("/U1/jobs/J1/fail.txt") == "/U1/stor/c\n"
        assert json.loads(object_store.text("/U1/jobs/J1/err.txt")) == {
            "phaseNum": 0,
            "what": "map",
            "code": "TaskError",
        }

    @pytest.mark.asyncio
    async def test_runs_every_stage_in_order(self, archiver, claimed_job):
        ctx = await archiver.archive(claimed_job)

        assert ctx.completed == list(ArchiveStage)

    @pytest.mark.asyncio
    async def test_upload_order(self, archiver, claimed_job, object_store):
        await archiver.archive(claimed_job)

        assert object_store.puts == [
            "/U1/jobs/J1/job.json",
            "/U1/jobs/J1/out.txt",
            "/U1/jobs/J1/err.txt",
            "/U1/jobs/J1/in.txt",
            "/U1/jobs/J1/fail.txt",
            "/U1/jobs/J1/job.json",
            ADMIN_MANIFEST,
        ]

    @pytest.mark.asyncio
    async def test_marks_done_and_deletes_live_marker(
        self, archiver, claimed_job, directory, object_store, clock
    ):
        await archiver.archive(claimed_job)

        assert "/U1/jobs/J1/live" not in object_store.objects
        assert directory.job("J1").time_archive_done == clock()

    @pytest.mark.asyncio
    async def test_final_manifest_carries_archive_done(self, archiver, claimed_job, object_store):
        await archiver.archive(claimed_job)

        manifest = json.loads(object_store.text("/U1/jobs/J1/job.json"))
        assert manifest["id"] == "J1"
        assert manifest["state"] == "done"
        assert manifest["timeArchiveDone"] == "2014-03-04T05:06:07.000Z"
        assert "auth" not in manifest

        meta = object_store.meta["/U1/jobs/J1/job.json"]
        data = object_store.objects["/U1/jobs/J1/job.json"]
        assert meta["md5"] == base64.b64encode(hashlib.md5(data).digest()).decode()
        assert meta["content_type"] == "application/json"

    @pytest.mark.asyncio
    async def test_admin_manifest_is_raw_record(self, archiver, claimed_job, object_store):
        await archiver.archive(claimed_job)

        admin = json.loads(object_store.text(ADMIN_MANIFEST))
        assert admin["jobId"] == "J1"
        assert admin["auth"]["login"] == "U1"
        assert admin["timeArchiveDone"] == "2014-03-04T05:06:07.000Z"
        assert "/poseidon/stor/job_archives/2014/03/04/05/J1" in object_store.dirs

    @pytest.mark.asyncio
    async def test_owner_writes_use_job_token(self, archiver, claimed_job, object_store):
        await archiver.archive(claimed_job)

        headers = object_store.meta["/U1/jobs/J1/out.txt"]["headers"]
        assert headers["authorization"] == "Token token-J1"
        assert headers["access-control-allow-origin"] == "*"
        assert object_store.meta["/U1/jobs/J1/err.txt"]["content_type"] == (
            "application/x-json-stream; type=job-error"
        )

    @pytest.mark.asyncio
    async def test_scratch_dir_removed(self, archiver, claimed_job, settings):
        await archiver.archive(claimed_job)

        assert not _scratch(settings).exists()

    @pytest.mark.asyncio
    async def test_outputs_of_last_phase(self, archiver, directory, object_store, claims):
        directory.add_job("J2", phases=3, outputs=["/U1/jobs/J2/stor/final"])
        directory.set_stream("J2", "outputs/0", ["/U1/jobs/J2/stor/intermediate"])
        await claims.try_claim(directory.job("J2"))

        await archiver.archive(directory.job("J2"))

        assert object_store.text("/U1/jobs/J2/out.txt") == "/U1/jobs/J2/stor/final\n"
        assert ("J2", "outputs/2", None) in directory.fetch_calls


class TestArchiverTolerance:
    @pytest.mark.asyncio
    async def test_missing_job_directory_is_not_an_error(
        self, archiver, claimed_job, object_store, directory
    ):
        object_store.missing_dirs.add("/U1/jobs/J1")

        await archiver.archive(claimed_job)

        assert object_store.puts == [ADMIN_MANIFEST]
        assert directory.job("J1").archived

    @pytest.mark.asyncio
    async def test_missing_live_marker_is_not_an_error(
        self, archiver, claimed_job, object_store, directory
    ):
        del object_store.objects["/U1/jobs/J1/live"]

        await archiver.archive(claimed_job)

        assert directory.job("J1").archived

    @pytest.mark.asyncio
    async def test_owner_login_comes_from_identity(
        self, archiver, directory, object_store, identity, claims
    ):
        identity.logins["U2"] = "bob"
        directory.add_job("J3", owner="U2", login="bob", inputs=["/bob/stor/x"])
        await claims.try_claim(directory.job("J3"))

        await archiver.archive(directory.job("J3"))

        assert object_store.text("/bob/jobs/J3/in.txt") == "/bob/stor/x\n"
        assert identity.calls == ["U2"]


class TestArchiverFailures:
    @pytest.mark.asyncio
    async def test_unknown_owner_aborts(self, archiver, claimed_job, identity, object_store, settings):
        identity.logins.clear()

        with pytest.raises(ArchiveError) as exc_info:
            await archiver.archive(claimed_job)

        assert exc_info.value.stage == "identity-resolved"
        assert object_store.puts == []
        assert not _scratch(settings).exists()

    @pytest.mark.asyncio
    async def test_failure_keeps_claim_and_stops_heartbeat(
        self, archiver, claimed_job, directory
    ):
        directory.failures["archive_done"] = ServiceError("bad request", 400)

        with pytest.raises(ArchiveError) as exc_info:
            await archiver.archive(claimed_job)

        assert exc_info.value.stage == "archive-marked-done"
        assert isinstance(exc_info.value.cause, ServiceError)
        assert directory.records["J1"]["wrasse"] == "wrasse-a"
        assert not directory.job("J1").archived

        version = directory.versions["J1"]
        await asyncio.sleep(0.05)
        assert directory.versions["J1"] == version

    @pytest.mark.asyncio
    async def test_incomplete_export_aborts(self, archiver, claimed_job, directory, object_store):
        directory.undelivered[("J1", "inputs")] = 1

        with pytest.raises(ArchiveError) as exc_info:
            await archiver.archive(claimed_job)

        assert exc_info.value.stage == "inputs-exported"
        assert object_store.puts == []

    @pytest.mark.asyncio
    async def test_rerun_after_failure_is_idempotent(
        self, archiver, claimed_job, directory, object_store, settings
    ):
        directory.failures["archive_done"] = ServiceError("bad request", 400)
        with pytest.raises(ArchiveError):
            await archiver.archive(claimed_job)

        del directory.failures["archive_done"]
        await archiver.archive(directory.job("J1"))

        assert object_store.text("/U1/jobs/J1/in.txt") == "".join(k + "\n" for k in INPUTS)
        assert directory.job("J1").archived
        assert not _scratch(settings).exists()

    @pytest.mark.asyncio
    async def test_leftover_scratch_files_are_discarded(self, archiver, claimed_job, settings):
        leftover = _scratch(settings)
        leftover.mkdir(parents=True)
        (leftover / "in.txt").write_text("half written\n")

        ctx = await archiver.archive(claimed_job)

        assert ArchiveStage.SCRATCH_CLEANED in ctx.completed
        assert not leftover.exists()


class TestArchiveHelpers:
    def test_login_before_identity_raises(self, claimed_job):
        ctx = ArchiveContext(job=claimed_job, log=structlog.get_logger())

        with pytest.raises(WrasseError):
            ctx.login

    @pytest.mark.asyncio
    async def test_read_chunks_off_the_event_loop(self, tmp_path):
        path = tmp_path / "out.txt"
        data = b"x" * (UPLOAD_CHUNK_SIZE * 2 + 10)
        path.write_bytes(data)

        with patch("wrasse.jobs.archiver.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            chunks = [chunk async for chunk in _read_chunks(path)]

        assert [len(chunk) for chunk in chunks] == [UPLOAD_CHUNK_SIZE, UPLOAD_CHUNK_SIZE, 10]
        assert b"".join(chunks) == data
        assert to_thread.call_count == 4
