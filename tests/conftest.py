"""Root conftest for test suite.

Provides the in-memory service fakes as fixtures and auto-skips slow tests.
Run those explicitly with: pytest -m slow
"""

import pytest

from tests.fakes import (
    FakeClaimStore,
    FakeIdentity,
    FakeJobDirectory,
    FakeObjectStore,
    FrozenClock,
)
from wrasse.config import Settings
from wrasse.jobs.claims import ClaimManager, EmbeddedClaimBackend, StoreClaimBackend


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless explicitly requested via -m."""
    markexpr = config.getoption("-m", default="")
    if "slow" in markexpr:
        return

    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    """Settings for one instance, isolated from the environment and .env."""
    return Settings(
        _env_file=None,
        instance_id="wrasse-a",
        scratch_dir=str(tmp_path / "scratch"),
        heartbeat_interval_s=0.01,
        heartbeat_retries=0,
        poll_interval_s=0.01,
        queue_limit=4,
        shutdown_timeout_s=2.0,
    )


@pytest.fixture
def directory(clock):
    return FakeJobDirectory(clock=clock)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def claim_store():
    return FakeClaimStore()


@pytest.fixture
def claims(directory, settings, clock):
    """Embedded-mode claim manager for instance wrasse-a."""
    return ClaimManager(
        EmbeddedClaimBackend(directory),
        instance_id=settings.instance_id,
        takeover_time=settings.takeover_time,
        clock=clock,
    )


@pytest.fixture
def store_claims(claim_store, settings, clock):
    """Store-mode claim manager for instance wrasse-a."""
    return ClaimManager(
        StoreClaimBackend(claim_store),
        instance_id=settings.instance_id,
        takeover_time=settings.takeover_time,
        clock=clock,
    )

