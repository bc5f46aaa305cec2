"""Tests for the cleanup sweep."""

from datetime import timedelta

import pytest

from tests.fakes import T0
from wrasse.errors import ResourceNotFoundError, ServiceError
from wrasse.jobs.cleanup import CleanupSweeper, is_lingered
from wrasse.jobs.models import Claim, Job
from wrasse.jobs.takeover import TakeoverSweeper
from wrasse.utils.time import format_timestamp

DONE = format_timestamp(T0)
LINGER = timedelta(hours=4)


@pytest.fixture
def sweeper(directory, claims, settings, clock):
    return CleanupSweeper(directory, claims, settings, clock=clock)


def _archived(directory, job_id, wrasse="wrasse-a", done=DONE):
    directory.add_job(job_id, wrasse=wrasse, timeArchiveStarted=done, timeArchiveDone=done)


class TestIsLingered:
    def test_boundary(self):
        job = Job.from_record(
            {"jobId": "J1", "owner": "U1", "state": "done", "timeArchiveDone": DONE}
        )

        assert is_lingered(job, T0 + LINGER, LINGER)
        assert not is_lingered(job, T0 + LINGER - timedelta(milliseconds=1), LINGER)

    def test_unarchived_never_lingers(self):
        job = Job.from_record({"jobId": "J1", "owner": "U1", "state": "done"})
        assert not is_lingered(job, T0 + timedelta(days=365), LINGER)


class TestCleanupSweeper:
    @pytest.mark.asyncio
    async def test_deletes_at_exact_linger_boundary(self, sweeper, directory, clock):
        _archived(directory, "J1")
        clock.advance(hours=4)

        result = await sweeper.sweep()

        assert result.deleted == 1
        assert directory.deleted == ["J1"]

    @pytest.mark.asyncio
    async def test_keeps_job_one_millisecond_early(self, sweeper, directory, clock):
        _archived(directory, "J1")
        clock.advance(hours=4, milliseconds=-1)

        result = await sweeper.sweep()

        assert result.deleted == 0
        assert "J1" in directory.records

    @pytest.mark.asyncio
    async def test_only_own_jobs_are_deleted(self, sweeper, directory, clock):
        _archived(directory, "J1")
        _archived(directory, "J2", wrasse="wrasse-b")
        directory.add_job("J3")
        clock.advance(hours=5)

        await sweeper.sweep()

        assert directory.deleted == ["J1"]
        assert directory.queries[0].to_params()["wrasse"] == "wrasse-a"

    @pytest.mark.asyncio
    async def test_zero_linger_deletes_immediately(self, directory, claims, settings, clock):
        settings.linger_time_s = 0
        _archived(directory, "J1")

        result = await CleanupSweeper(directory, claims, settings, clock=clock).sweep()

        assert result.deleted == 1

    @pytest.mark.asyncio
    async def test_already_deleted_record_is_tolerated(self, sweeper, directory, clock):
        _archived(directory, "J1")
        clock.advance(hours=5)
        directory.failures["delete_job"] = ResourceNotFoundError("gone", 404)

        result = await sweeper.sweep()

        assert result.deleted == 1
        assert result.errors == 0

    @pytest.mark.asyncio
    async def test_delete_failure_is_counted(self, sweeper, directory, clock):
        _archived(directory, "J1")
        _archived(directory, "J2")
        clock.advance(hours=5)
        directory.failures["delete_job"] = ServiceError("bad request", 400)

        result = await sweeper.sweep()

        assert result.errors == 2
        assert result.deleted == 0

    @pytest.mark.asyncio
    async def test_many_jobs(self, sweeper, directory, clock, settings):
        for i in range(25):
            _archived(directory, f"J{i:02d}")
        clock.advance(hours=5)

        result = await sweeper.sweep()

        assert result.deleted == 25
        assert directory.records == {}

    @pytest.mark.asyncio
    async def test_adopted_job_is_purged(self, directory, claims, settings, clock):
        _archived(directory, "J1", wrasse="wrasse-b")
        clock.advance(hours=4, minutes=30)

        await TakeoverSweeper(directory, claims, settings, clock=clock).sweep()
        result = await CleanupSweeper(directory, claims, settings, clock=clock).sweep()

        assert result.deleted == 1
        assert directory.deleted == ["J1"]


class TestStoreModeCleanup:
    @pytest.mark.asyncio
    async def test_purge_forgets_claim(self, directory, claim_store, store_claims, settings, clock):
        directory.add_job("J1", timeArchiveDone=DONE)
        directory.add_job("J2", timeArchiveDone=DONE)
        claim_store.entries["J1"] = Claim("J1", "wrasse-a", T0, "v1")
        claim_store.entries["J2"] = Claim("J2", "wrasse-b", T0, "v2")
        clock.advance(hours=5)

        result = await CleanupSweeper(directory, store_claims, settings, clock=clock).sweep()

        assert result.deleted == 1
        assert directory.deleted == ["J1"]
        assert claim_store.deleted == ["J1"]
        assert "J2" in claim_store.entries
