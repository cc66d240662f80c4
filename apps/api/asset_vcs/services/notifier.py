"""
Reviewer and approver notification boundary.

Delivery channels live outside this package; the default notifier only
records the events in the structured log.
"""

from __future__ import annotations

from typing import List, Protocol
from uuid import UUID

import structlog

from ..models.version_control import WorkflowStatus

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    def notify_reviewers(self, merge_request_id: UUID, reviewer_ids: List[str]) -> None: ...

    def notify_workflow_update(self, workflow_id: UUID, status: WorkflowStatus) -> None: ...


class LoggingNotifier:
    """Notifier that emits structured log events."""

    def notify_reviewers(self, merge_request_id: UUID, reviewer_ids: List[str]) -> None:
        logger.info(
            "reviewers_notified",
            merge_request_id=str(merge_request_id),
            reviewer_ids=reviewer_ids,
        )

    def notify_workflow_update(self, workflow_id: UUID, status: WorkflowStatus) -> None:
        logger.info(
            "workflow_update_notified",
            workflow_id=str(workflow_id),
            status=status.value,
        )


def notify_safely(action: str, func, *args) -> None:
    """Invoke a notifier callback; failures are logged and never propagated."""
    try:
        func(*args)
    except Exception as e:
        logger.warning("notification_failed", action=action, error=str(e))
