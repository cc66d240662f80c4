"""
Celery application running the periodic approval sweeps.

Beat schedules the expiry and auto-approval sweeps at the configured
interval. Both sweeps are idempotent, so overlapping runs are harmless.
"""

from __future__ import annotations

from typing import Optional

from celery import Celery

from .environment import VersionControlSettings, get_settings

SWEEP_EXPIRED_TASK = "asset_vcs.tasks.approval_sweeps.sweep_expired_workflows"
SWEEP_AUTO_APPROVALS_TASK = "asset_vcs.tasks.approval_sweeps.sweep_auto_approvals"


def create_celery_app(settings: Optional[VersionControlSettings] = None) -> Celery:
    settings = settings or get_settings()
    app = Celery(
        "asset_vcs",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=["asset_vcs.tasks.approval_sweeps"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )

    interval = settings.sweep_interval_seconds
    app.conf.beat_schedule = {
        "expire-approval-workflows": {
            "task": SWEEP_EXPIRED_TASK,
            "schedule": interval,
            "options": {"expires": interval},
        },
        "auto-approve-workflows": {
            "task": SWEEP_AUTO_APPROVALS_TASK,
            "schedule": interval,
            "options": {"expires": interval},
        },
    }
    return app


celery_app = create_celery_app()
