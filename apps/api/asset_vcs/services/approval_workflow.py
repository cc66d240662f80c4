"""
Approval workflows gating versions and merge requests.

State machine::

    pending -> approved   approved count >= minimum and nobody rejected
    pending -> rejected   anyone rejected, or everyone decided short of the minimum,
                          or the workflow was cancelled
    pending -> expired    the deadline passed while still pending

Workflow updates are compare-and-swap on the workflow revision, so a sweep
and a concurrent approval never overwrite each other.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from uuid import UUID

import structlog

from ..core import metrics
from ..core.cancellation import Deadline
from ..core.exceptions import (
    ConcurrencyConflictError,
    NotAnApproverError,
    ValidationError,
    WorkflowExpiredError,
)
from ..models.version_control import (
    Approval,
    ApprovalCheck,
    ApprovalStatus,
    ApprovalWorkflow,
    VersionStatus,
    WorkflowStatus,
    utc_now,
)
from .notifier import Notifier, notify_safely
from .version_store import VersionStore

logger = structlog.get_logger(__name__)

AUTO_APPROVED_COMMENT = "Auto-approved"

_VERSION_STATUS_FOR = {
    WorkflowStatus.APPROVED: VersionStatus.APPROVED,
    WorkflowStatus.REJECTED: VersionStatus.REJECTED,
}


def calculate_status(approvals: List[Approval], min_approvers: int) -> WorkflowStatus:
    """Overall workflow status implied by the individual approvals."""
    approved = sum(1 for a in approvals if a.status == ApprovalStatus.APPROVED)
    rejected = sum(1 for a in approvals if a.status == ApprovalStatus.REJECTED)
    pending = sum(1 for a in approvals if a.status == ApprovalStatus.PENDING)

    if rejected > 0:
        return WorkflowStatus.REJECTED
    if approved >= min_approvers:
        return WorkflowStatus.APPROVED
    if pending == 0:
        return WorkflowStatus.REJECTED
    return WorkflowStatus.PENDING


class ApprovalWorkflowEngine:
    """Creates workflows, records decisions and runs the maintenance sweeps."""

    def __init__(
        self,
        store: VersionStore,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
        max_cas_retries: int = 1,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.max_cas_retries = max_cas_retries

    def create_workflow(
        self,
        asset_id: str,
        version_id: UUID,
        approvers: List[str],
        min_approvers: int = 1,
        deadline_hours: Optional[float] = None,
        auto_approve_after_hours: Optional[float] = None,
        merge_request_id: Optional[UUID] = None,
        deadline: Optional[Deadline] = None,
    ) -> ApprovalWorkflow:
        unique_approvers = list(dict.fromkeys(a for a in approvers if a))
        if len(unique_approvers) < min_approvers:
            raise ValidationError(
                f"At least {min_approvers} approver(s) required, got {len(unique_approvers)}",
                details={"approvers": unique_approvers, "min_approvers": min_approvers},
            )

        now = self.clock()
        workflow = ApprovalWorkflow(
            asset_id=asset_id,
            version_id=version_id,
            merge_request_id=merge_request_id,
            approvals=[Approval(approver_id=a) for a in unique_approvers],
            min_approvers=min_approvers,
            created_at=now,
            deadline=now + timedelta(hours=deadline_hours) if deadline_hours else None,
            auto_approve_at=(
                now + timedelta(hours=auto_approve_after_hours) if auto_approve_after_hours else None
            ),
        )
        workflow = self.store.create_approval_workflow(workflow, deadline=deadline)
        logger.info(
            "approval_workflow_created",
            workflow_id=str(workflow.id),
            version_id=str(version_id),
            approvers=unique_approvers,
            deadline=workflow.deadline.isoformat() if workflow.deadline else None,
        )
        return workflow

    def submit_approval(
        self,
        workflow_id: UUID,
        approver_id: str,
        decision: ApprovalStatus,
        comment: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> Tuple[ApprovalWorkflow, bool]:
        """
        Record an approver's decision.

        Returns:
            The stored workflow and whether this call changed anything.

        Raises:
            NotAnApproverError: approver is not part of the workflow
            WorkflowExpiredError: the workflow expired, now or earlier
            ValidationError: the workflow is already decided differently
        """
        decision = ApprovalStatus(decision)
        if decision == ApprovalStatus.PENDING:
            raise ValidationError("Decision must be 'approved' or 'rejected'")

        attempt = 0
        while True:
            workflow = self.store.get_approval_workflow(workflow_id, deadline=deadline)
            approval = workflow.get_approval(approver_id)
            if approval is None:
                raise NotAnApproverError(
                    f"{approver_id} is not an approver of workflow {workflow_id}",
                    details={"workflow_id": str(workflow_id), "approver_id": approver_id},
                )

            now = self.clock()
            if workflow.status == WorkflowStatus.PENDING and workflow.deadline and workflow.deadline <= now:
                self._expire(workflow, now, deadline, trigger="submission")
                raise WorkflowExpiredError(
                    f"Approval workflow {workflow_id} expired at {workflow.deadline.isoformat()}",
                    details={"workflow_id": str(workflow_id)},
                )
            if workflow.status == WorkflowStatus.EXPIRED:
                raise WorkflowExpiredError(
                    f"Approval workflow {workflow_id} has expired",
                    details={"workflow_id": str(workflow_id)},
                )
            if approval.status == decision:
                logger.debug(
                    "approval_unchanged",
                    workflow_id=str(workflow_id),
                    approver_id=approver_id,
                    decision=decision.value,
                )
                return workflow, False
            if workflow.status != WorkflowStatus.PENDING:
                raise ValidationError(
                    f"Approval workflow {workflow_id} is already {workflow.status.value}",
                    details={"workflow_id": str(workflow_id), "status": workflow.status.value},
                )

            approval.status = decision
            approval.comment = comment
            approval.decided_at = now
            workflow.status = calculate_status(workflow.approvals, workflow.min_approvers)
            if workflow.status != WorkflowStatus.PENDING:
                workflow.completed_at = now

            try:
                stored = self.store.update_approval_workflow(
                    workflow, expected_revision=workflow.revision, deadline=deadline
                )
            except ConcurrencyConflictError:
                if attempt >= self.max_cas_retries:
                    raise
                attempt += 1
                metrics.asset_vcs_cas_retries_total.labels(operation="submit_approval").inc()
                continue

            logger.info(
                "approval_submitted",
                workflow_id=str(workflow_id),
                approver_id=approver_id,
                decision=decision.value,
                workflow_status=stored.status.value,
            )
            if stored.status != WorkflowStatus.PENDING:
                self._on_decided(stored, trigger="approval", deadline=deadline)
            return stored, True

    def cancel_workflow(
        self, workflow_id: UUID, reason: str, deadline: Optional[Deadline] = None
    ) -> ApprovalWorkflow:
        workflow = self.store.get_approval_workflow(workflow_id, deadline=deadline)
        if workflow.status != WorkflowStatus.PENDING:
            raise ValidationError(
                f"Only pending workflows can be cancelled; workflow is {workflow.status.value}",
                details={"workflow_id": str(workflow_id)},
            )
        workflow.status = WorkflowStatus.REJECTED
        workflow.cancel_reason = reason
        workflow.completed_at = self.clock()
        stored = self.store.update_approval_workflow(
            workflow, expected_revision=workflow.revision, deadline=deadline
        )
        logger.info("approval_workflow_cancelled", workflow_id=str(workflow_id), reason=reason)
        self._on_decided(stored, trigger="cancel", deadline=deadline)
        return stored

    def sweep_expired(self, now: Optional[datetime] = None, deadline: Optional[Deadline] = None) -> int:
        """Expire pending workflows past their deadline. Safe to run repeatedly."""
        now = now or self.clock()
        transitioned = 0
        for workflow in self.store.find_pending_workflows(deadline_before=now, deadline=deadline):
            if workflow.deadline is None or workflow.deadline > now:
                continue
            # An earlier auto-approval time wins over a later deadline
            if workflow.auto_approve_at is not None and workflow.auto_approve_at < workflow.deadline:
                continue
            try:
                self._expire(workflow, now, deadline, trigger="sweep")
            except ConcurrencyConflictError:
                logger.info("workflow_sweep_skipped_concurrent_update", workflow_id=str(workflow.id))
                continue
            transitioned += 1
        if transitioned:
            logger.info("expired_workflows_swept", count=transitioned)
        return transitioned

    def sweep_auto_approvals(self, now: Optional[datetime] = None, deadline: Optional[Deadline] = None) -> int:
        """Auto-approve pending workflows whose auto-approve time passed. Safe to run repeatedly."""
        now = now or self.clock()
        transitioned = 0
        for workflow in self.store.find_pending_workflows(auto_approve_before=now, deadline=deadline):
            if workflow.auto_approve_at is None or workflow.auto_approve_at > now:
                continue
            if workflow.deadline is not None and workflow.deadline <= workflow.auto_approve_at:
                continue
            for approval in workflow.approvals:
                if approval.status == ApprovalStatus.PENDING:
                    approval.status = ApprovalStatus.APPROVED
                    approval.comment = AUTO_APPROVED_COMMENT
                    approval.decided_at = now
            workflow.status = calculate_status(workflow.approvals, workflow.min_approvers)
            workflow.completed_at = now
            try:
                stored = self.store.update_approval_workflow(
                    workflow, expected_revision=workflow.revision, deadline=deadline
                )
            except ConcurrencyConflictError:
                logger.info("workflow_sweep_skipped_concurrent_update", workflow_id=str(workflow.id))
                continue
            transitioned += 1
            self._on_decided(stored, trigger="auto_approve", deadline=deadline)
        if transitioned:
            logger.info("auto_approval_sweep_completed", count=transitioned)
        return transitioned

    def check(self, workflow: Optional[ApprovalWorkflow]) -> ApprovalCheck:
        if workflow is None:
            return ApprovalCheck(is_approved=False)
        by_status = {
            status: [a.approver_id for a in workflow.approvals if a.status == status]
            for status in ApprovalStatus
        }
        return ApprovalCheck(
            is_approved=workflow.status == WorkflowStatus.APPROVED,
            workflow_id=workflow.id,
            workflow_status=workflow.status,
            required=workflow.required_approvers,
            approved_by=by_status[ApprovalStatus.APPROVED],
            rejected_by=by_status[ApprovalStatus.REJECTED],
            pending=by_status[ApprovalStatus.PENDING],
        )

    def _expire(
        self,
        workflow: ApprovalWorkflow,
        now: datetime,
        deadline: Optional[Deadline],
        trigger: str,
    ) -> ApprovalWorkflow:
        workflow.status = WorkflowStatus.EXPIRED
        workflow.completed_at = now
        stored = self.store.update_approval_workflow(
            workflow, expected_revision=workflow.revision, deadline=deadline
        )
        metrics.asset_vcs_workflow_transitions_total.labels(status="expired", trigger=trigger).inc()
        logger.info("approval_workflow_expired", workflow_id=str(workflow.id), trigger=trigger)
        if self.notifier is not None:
            notify_safely("workflow_update", self.notifier.notify_workflow_update, stored.id, stored.status)
        return stored

    def _on_decided(self, workflow: ApprovalWorkflow, trigger: str, deadline: Optional[Deadline]) -> None:
        metrics.asset_vcs_workflow_transitions_total.labels(
            status=workflow.status.value, trigger=trigger
        ).inc()
        version_status = _VERSION_STATUS_FOR.get(workflow.status)
        if version_status is not None:
            self.store.update_version_status(workflow.version_id, version_status, deadline=deadline)
        logger.info(
            "approval_workflow_decided",
            workflow_id=str(workflow.id),
            status=workflow.status.value,
            trigger=trigger,
        )
        if self.notifier is not None:
            notify_safely("workflow_update", self.notifier.notify_workflow_update, workflow.id, workflow.status)
