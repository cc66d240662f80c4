"""
Periodic approval workflow sweeps.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import structlog
from celery import shared_task

from ..core.celery_app import SWEEP_AUTO_APPROVALS_TASK, SWEEP_EXPIRED_TASK
from ..core.exceptions import OperationTimeoutError, StoreError
from ..services.version_control_service import VersionControlService, build_service

logger = structlog.get_logger(__name__)

_service: Optional[VersionControlService] = None


def configure_sweep_service(service: Optional[VersionControlService]) -> None:
    """Use ``service`` for sweeps instead of one built from settings."""
    global _service
    _service = service


def get_sweep_service() -> VersionControlService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


@shared_task(bind=True, name=SWEEP_EXPIRED_TASK, max_retries=3)
def sweep_expired_workflows(self) -> Dict[str, Any]:
    """Expire pending approval workflows whose deadline passed."""
    try:
        expired = asyncio.run(get_sweep_service().sweep_expired())
    except (StoreError, OperationTimeoutError) as e:
        logger.warning("approval_sweep_retry", task=SWEEP_EXPIRED_TASK, error=str(e))
        raise self.retry(exc=e, countdown=30)
    logger.info("approval_sweep_finished", task=SWEEP_EXPIRED_TASK, expired=expired)
    return {"expired": expired, "task_id": self.request.id}


@shared_task(bind=True, name=SWEEP_AUTO_APPROVALS_TASK, max_retries=3)
def sweep_auto_approvals(self) -> Dict[str, Any]:
    """Auto-approve pending workflows whose auto-approve time passed."""
    try:
        approved = asyncio.run(get_sweep_service().sweep_auto_approvals())
    except (StoreError, OperationTimeoutError) as e:
        logger.warning("approval_sweep_retry", task=SWEEP_AUTO_APPROVALS_TASK, error=str(e))
        raise self.retry(exc=e, countdown=30)
    logger.info("approval_sweep_finished", task=SWEEP_AUTO_APPROVALS_TASK, auto_approved=approved)
    return {"auto_approved": approved, "task_id": self.request.id}
