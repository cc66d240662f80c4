"""
Tests for the periodic approval sweep Celery tasks, run eagerly.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from asset_vcs.core.celery_app import SWEEP_AUTO_APPROVALS_TASK, SWEEP_EXPIRED_TASK, celery_app
from asset_vcs.core.environment import VersionControlSettings
from asset_vcs.core.exceptions import StoreError
from asset_vcs.models.version_control import VersionStatus, WorkflowStatus
from asset_vcs.services.version_control_service import VersionControlService
from asset_vcs.tasks.approval_sweeps import (
    configure_sweep_service,
    sweep_auto_approvals,
    sweep_expired_workflows,
)

from factories import ASSET_ID, base_scene, content


@pytest.fixture
def auto_approve_service(version_store, blob_store, clock):
    """Service whose workflows expire after 24h and auto-approve after 2h."""
    settings = VersionControlSettings(
        _env_file=None,
        require_approval=True,
        approval_deadline_hours=24,
        auto_approve_after_hours=2,
    )
    svc = VersionControlService(version_store, blob_store, settings=settings, clock=clock)
    yield svc
    svc.shutdown()


@pytest.fixture
def use_service():
    """Point the sweep tasks at a given service for one test."""
    yield configure_sweep_service
    configure_sweep_service(None)


def _commit_for_review(service):
    return service.create_version(
        ASSET_ID, "main", content(base_scene()), "alice", "Initial model", approvers=["carol"]
    )


class TestBeatSchedule:
    def test_both_sweeps_are_scheduled(self):
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {SWEEP_EXPIRED_TASK, SWEEP_AUTO_APPROVALS_TASK}


class TestSweepTasks:
    @pytest.mark.asyncio
    async def test_expiry_task(self, approval_service, clock, use_service):
        version = await _commit_for_review(approval_service)
        clock.advance(hours=30)
        use_service(approval_service)

        result = await _run_task(sweep_expired_workflows)

        assert result["expired"] == 1
        assert result["task_id"]
        workflows = await approval_service.get_approval_history(status=WorkflowStatus.EXPIRED)
        assert [w.version_id for w in workflows] == [version.id]

        again = await _run_task(sweep_expired_workflows)
        assert again["expired"] == 0

    @pytest.mark.asyncio
    async def test_auto_approval_task(self, auto_approve_service, clock, use_service):
        version = await _commit_for_review(auto_approve_service)
        clock.advance(hours=3)
        use_service(auto_approve_service)

        result = await _run_task(sweep_auto_approvals)

        assert result["auto_approved"] == 1
        stored = await auto_approve_service.get_version(version.id)
        assert stored.status == VersionStatus.APPROVED

    def test_store_failure_is_retried_then_raised(self, use_service):
        failing = MagicMock()
        failing.sweep_expired = AsyncMock(side_effect=StoreError("database unavailable"))
        use_service(failing)

        with pytest.raises(StoreError):
            sweep_expired_workflows.apply().get()
        assert failing.sweep_expired.await_count > 1


async def _run_task(task):
    # The task body starts its own event loop, so it cannot run on the test loop
    return await asyncio.to_thread(lambda: task.apply().get())
