"""
Shared fixtures for the asset version control tests.
"""

import pytest

from asset_vcs.core.environment import VersionControlSettings
from asset_vcs.services.blob_store import InMemoryBlobStore
from asset_vcs.services.compute_pool import ComputePool
from asset_vcs.services.version_control_service import VersionControlService
from asset_vcs.services.version_store import InMemoryVersionStore

from factories import FakeClock


def _service(version_store, blob_store, settings, clock):
    return VersionControlService(
        version_store,
        blob_store,
        settings=settings,
        compute_pool=ComputePool(max_workers=2),
        clock=clock,
    )


@pytest.fixture
def clock():
    """Create a deterministic clock."""
    return FakeClock()


@pytest.fixture
def settings():
    """Settings without approval gating, isolated from .env files."""
    return VersionControlSettings(
        _env_file=None,
        require_approval=False,
        worker_pool_size=2,
        store_timeout_seconds=5.0,
        compute_timeout_seconds=30.0,
    )


@pytest.fixture
def approval_settings():
    """Settings with approval gating, one required approver and a 24h deadline."""
    return VersionControlSettings(
        _env_file=None,
        require_approval=True,
        min_approvers=1,
        approval_deadline_hours=24,
        worker_pool_size=2,
        store_timeout_seconds=5.0,
    )


@pytest.fixture
def version_store():
    """Create an in-memory version store."""
    return InMemoryVersionStore()


@pytest.fixture
def blob_store():
    """Create an in-memory blob store."""
    return InMemoryBlobStore()


@pytest.fixture
def service(version_store, blob_store, settings, clock):
    """Create a VersionControlService over in-memory stores."""
    svc = _service(version_store, blob_store, settings, clock)
    yield svc
    svc.shutdown()


@pytest.fixture
def approval_service(version_store, blob_store, approval_settings, clock):
    """Create a VersionControlService that gates versions and merges on approvals."""
    svc = _service(version_store, blob_store, approval_settings, clock)
    yield svc
    svc.shutdown()
