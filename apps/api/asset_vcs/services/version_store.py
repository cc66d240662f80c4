"""
Version store contract and the in-process implementation.

Every branch-head mutation is a compare-and-swap: the caller names the head
it read and the store refuses the update if another writer got there first.
Reads hand out deep copies so callers never observe later mutations.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from ..core.cancellation import Deadline, check_deadline
from ..core.exceptions import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
)
from ..models.version_control import (
    ApprovalWorkflow,
    Branch,
    MergeRequest,
    MergeRequestStatus,
    ModelVersion,
    VersionStatus,
    VersionTag,
    WorkflowStatus,
)

logger = structlog.get_logger(__name__)


class VersionStore(ABC):
    """Persistence contract for versions, branches, merge requests, workflows and tags."""

    # Versions

    @abstractmethod
    def create_version(self, version: ModelVersion, deadline: Optional[Deadline] = None) -> ModelVersion:
        """Insert a version without moving any branch head."""

    @abstractmethod
    def commit_version(
        self,
        version: ModelVersion,
        expected_head: Optional[UUID],
        new_branch: Optional[Branch] = None,
        deadline: Optional[Deadline] = None,
    ) -> Branch:
        """
        Atomically insert ``version`` and advance its branch head.

        When ``new_branch`` is given the branch must not exist yet; it is
        created pointing at the version. Otherwise the branch named by
        ``version.branch_name`` must currently have ``expected_head`` as its
        head, or ``ConcurrencyConflictError`` is raised and nothing is written.
        """

    @abstractmethod
    def get_version(self, version_id: UUID, deadline: Optional[Deadline] = None) -> ModelVersion:
        ...

    @abstractmethod
    def list_versions(
        self,
        asset_id: str,
        branch_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[ModelVersion]:
        """Versions of an asset, newest first."""

    @abstractmethod
    def count_versions(self, asset_id: str, deadline: Optional[Deadline] = None) -> int:
        ...

    @abstractmethod
    def update_version_status(
        self, version_id: UUID, status: VersionStatus, deadline: Optional[Deadline] = None
    ) -> ModelVersion:
        ...

    @abstractmethod
    def delete_version(self, version_id: UUID, deadline: Optional[Deadline] = None) -> None:
        """Hard delete for retention cleanup. Refuses branch heads and bases."""

    @abstractmethod
    def is_blob_referenced(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        """Whether any version still points at the blob ``path``."""

    # Branches

    @abstractmethod
    def create_branch(self, branch: Branch, deadline: Optional[Deadline] = None) -> Branch:
        ...

    @abstractmethod
    def get_branch(self, asset_id: str, name: str, deadline: Optional[Deadline] = None) -> Branch:
        ...

    @abstractmethod
    def get_branch_by_id(self, branch_id: UUID, deadline: Optional[Deadline] = None) -> Branch:
        ...

    @abstractmethod
    def list_branches(self, asset_id: str, deadline: Optional[Deadline] = None) -> List[Branch]:
        ...

    @abstractmethod
    def cas_update_branch_head(
        self,
        branch_id: UUID,
        expected_head: UUID,
        new_head: UUID,
        deadline: Optional[Deadline] = None,
    ) -> Branch:
        ...

    # Merge requests

    @abstractmethod
    def create_merge_request(self, merge_request: MergeRequest, deadline: Optional[Deadline] = None) -> MergeRequest:
        ...

    @abstractmethod
    def get_merge_request(self, merge_request_id: UUID, deadline: Optional[Deadline] = None) -> MergeRequest:
        ...

    @abstractmethod
    def update_merge_request(self, merge_request: MergeRequest, deadline: Optional[Deadline] = None) -> MergeRequest:
        ...

    @abstractmethod
    def list_merge_requests(
        self,
        asset_id: str,
        status: Optional[MergeRequestStatus] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[MergeRequest]:
        ...

    # Approval workflows

    @abstractmethod
    def create_approval_workflow(self, workflow: ApprovalWorkflow, deadline: Optional[Deadline] = None) -> ApprovalWorkflow:
        ...

    @abstractmethod
    def get_approval_workflow(self, workflow_id: UUID, deadline: Optional[Deadline] = None) -> ApprovalWorkflow:
        ...

    @abstractmethod
    def update_approval_workflow(
        self,
        workflow: ApprovalWorkflow,
        expected_revision: int,
        deadline: Optional[Deadline] = None,
    ) -> ApprovalWorkflow:
        """Persist ``workflow`` if its stored revision is still ``expected_revision``."""

    @abstractmethod
    def list_approval_workflows(
        self,
        asset_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[ApprovalWorkflow]:
        """Workflows, newest first."""

    @abstractmethod
    def find_pending_workflows(
        self,
        deadline_before: Optional[datetime] = None,
        auto_approve_before: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ApprovalWorkflow]:
        """Pending workflows whose deadline or auto-approve time is at or before the given instant."""

    # Tags

    @abstractmethod
    def create_tag(self, tag: VersionTag, deadline: Optional[Deadline] = None) -> VersionTag:
        ...

    @abstractmethod
    def list_tags(self, version_id: UUID, deadline: Optional[Deadline] = None) -> List[VersionTag]:
        ...


def _copy(model):
    return model.model_copy(deep=True)


class InMemoryVersionStore(VersionStore):
    """
    Thread-safe in-process store.

    A single re-entrant lock serializes writers; this is the reference
    implementation of the CAS semantics the SQL store reproduces.
    """

    def __init__(self, lock_timeout_seconds: float = 30.0):
        self._lock = threading.RLock()
        self._lock_timeout = lock_timeout_seconds
        self._versions: Dict[UUID, ModelVersion] = {}
        self._branches: Dict[UUID, Branch] = {}
        self._merge_requests: Dict[UUID, MergeRequest] = {}
        self._workflows: Dict[UUID, ApprovalWorkflow] = {}
        self._tags: Dict[UUID, VersionTag] = {}

    def _locked(self, operation: str, deadline: Optional[Deadline]):
        check_deadline(deadline, operation)
        timeout = deadline.remaining() if deadline is not None else self._lock_timeout
        return _LockGuard(self._lock, timeout, operation)

    # Versions

    def _validate_new_version(self, version: ModelVersion) -> None:
        if version.id in self._versions:
            raise AlreadyExistsError(f"Version {version.id} already exists")
        for parent_id in version.parent_ids:
            parent = self._versions.get(parent_id)
            if parent is None:
                raise ValidationError(
                    f"Parent version {parent_id} does not exist",
                    details={"parent_version_id": str(parent_id)},
                )
            if parent.asset_id != version.asset_id:
                raise ValidationError(
                    "Parent version belongs to a different asset",
                    details={"parent_version_id": str(parent_id), "asset_id": version.asset_id},
                )
        for existing in self._versions.values():
            if (
                existing.asset_id == version.asset_id
                and existing.branch_name == version.branch_name
                and existing.version == version.version
            ):
                raise AlreadyExistsError(
                    f"Version {version.version} already exists on branch {version.branch_name}",
                    details={"asset_id": version.asset_id, "version": version.version},
                )

    def create_version(self, version: ModelVersion, deadline: Optional[Deadline] = None) -> ModelVersion:
        with self._locked("create_version", deadline):
            self._validate_new_version(version)
            self._versions[version.id] = _copy(version)
            return _copy(version)

    def commit_version(
        self,
        version: ModelVersion,
        expected_head: Optional[UUID],
        new_branch: Optional[Branch] = None,
        deadline: Optional[Deadline] = None,
    ) -> Branch:
        with self._locked("commit_version", deadline):
            if new_branch is not None:
                if self._find_branch(new_branch.asset_id, new_branch.name) is not None:
                    raise ConcurrencyConflictError(
                        f"Branch {new_branch.name} was created concurrently",
                        details={"asset_id": new_branch.asset_id, "branch": new_branch.name},
                    )
                self._validate_new_version(version)
                branch = _copy(new_branch)
                branch.head_version_id = version.id
                branch.base_version_id = version.id
            else:
                branch = self._find_branch(version.asset_id, version.branch_name)
                if branch is None:
                    raise NotFoundError(
                        f"Branch {version.branch_name} not found",
                        details={"asset_id": version.asset_id, "branch": version.branch_name},
                    )
                if branch.head_version_id != expected_head:
                    raise ConcurrencyConflictError(
                        f"Head of branch {branch.name} moved",
                        details={
                            "branch_id": str(branch.id),
                            "expected_head": str(expected_head),
                            "actual_head": str(branch.head_version_id),
                        },
                    )
                self._validate_new_version(version)
                branch = _copy(branch)
                branch.head_version_id = version.id

            branch.record_activity(version.author_id, version.created_at)
            self._versions[version.id] = _copy(version)
            self._branches[branch.id] = branch
            logger.debug("version_committed", version_id=str(version.id), branch=branch.name)
            return _copy(branch)

    def get_version(self, version_id: UUID, deadline: Optional[Deadline] = None) -> ModelVersion:
        with self._locked("get_version", deadline):
            version = self._versions.get(version_id)
            if version is None:
                raise NotFoundError(f"Version {version_id} not found", details={"version_id": str(version_id)})
            return _copy(version)

    def list_versions(
        self,
        asset_id: str,
        branch_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[ModelVersion]:
        with self._locked("list_versions", deadline):
            matches = [
                v for v in self._versions.values()
                if v.asset_id == asset_id and (branch_name is None or v.branch_name == branch_name)
            ]
            matches.sort(key=lambda v: (v.created_at, str(v.id)), reverse=True)
            return [_copy(v) for v in matches[offset:offset + limit]]

    def count_versions(self, asset_id: str, deadline: Optional[Deadline] = None) -> int:
        with self._locked("count_versions", deadline):
            return sum(1 for v in self._versions.values() if v.asset_id == asset_id)

    def update_version_status(
        self, version_id: UUID, status: VersionStatus, deadline: Optional[Deadline] = None
    ) -> ModelVersion:
        with self._locked("update_version_status", deadline):
            version = self._versions.get(version_id)
            if version is None:
                raise NotFoundError(f"Version {version_id} not found", details={"version_id": str(version_id)})
            version.status = status
            return _copy(version)

    def delete_version(self, version_id: UUID, deadline: Optional[Deadline] = None) -> None:
        with self._locked("delete_version", deadline):
            if version_id not in self._versions:
                raise NotFoundError(f"Version {version_id} not found", details={"version_id": str(version_id)})
            for branch in self._branches.values():
                if version_id in (branch.head_version_id, branch.base_version_id):
                    raise ValidationError(
                        f"Version {version_id} is referenced by branch {branch.name}",
                        details={"branch_id": str(branch.id)},
                    )
            del self._versions[version_id]
            for other in self._versions.values():
                if other.parent_version_id == version_id:
                    other.parent_version_id = None
                if other.merge_parent_id == version_id:
                    other.merge_parent_id = None
            for wf_id in [w.id for w in self._workflows.values() if w.version_id == version_id]:
                del self._workflows[wf_id]
            for tag_id in [t.id for t in self._tags.values() if t.version_id == version_id]:
                del self._tags[tag_id]

    def is_blob_referenced(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        with self._locked("is_blob_referenced", deadline):
            return any(path in (v.storage_path, v.scene_path) for v in self._versions.values())

    # Branches

    def _find_branch(self, asset_id: str, name: str) -> Optional[Branch]:
        return next(
            (b for b in self._branches.values() if b.asset_id == asset_id and b.name == name),
            None,
        )

    def _require_version_of_asset(self, version_id: UUID, asset_id: str) -> None:
        version = self._versions.get(version_id)
        if version is None or version.asset_id != asset_id:
            raise ValidationError(
                f"Version {version_id} is not a version of asset {asset_id}",
                details={"version_id": str(version_id), "asset_id": asset_id},
            )

    def create_branch(self, branch: Branch, deadline: Optional[Deadline] = None) -> Branch:
        with self._locked("create_branch", deadline):
            if self._find_branch(branch.asset_id, branch.name) is not None:
                raise AlreadyExistsError(
                    f"Branch {branch.name} already exists",
                    details={"asset_id": branch.asset_id, "branch": branch.name},
                )
            self._require_version_of_asset(branch.head_version_id, branch.asset_id)
            self._require_version_of_asset(branch.base_version_id, branch.asset_id)
            self._branches[branch.id] = _copy(branch)
            return _copy(branch)

    def get_branch(self, asset_id: str, name: str, deadline: Optional[Deadline] = None) -> Branch:
        with self._locked("get_branch", deadline):
            branch = self._find_branch(asset_id, name)
            if branch is None:
                raise NotFoundError(
                    f"Branch {name} not found",
                    details={"asset_id": asset_id, "branch": name},
                )
            return _copy(branch)

    def get_branch_by_id(self, branch_id: UUID, deadline: Optional[Deadline] = None) -> Branch:
        with self._locked("get_branch_by_id", deadline):
            branch = self._branches.get(branch_id)
            if branch is None:
                raise NotFoundError(f"Branch {branch_id} not found", details={"branch_id": str(branch_id)})
            return _copy(branch)

    def list_branches(self, asset_id: str, deadline: Optional[Deadline] = None) -> List[Branch]:
        with self._locked("list_branches", deadline):
            branches = [b for b in self._branches.values() if b.asset_id == asset_id]
            branches.sort(key=lambda b: (not b.is_default, b.name))
            return [_copy(b) for b in branches]

    def cas_update_branch_head(
        self,
        branch_id: UUID,
        expected_head: UUID,
        new_head: UUID,
        deadline: Optional[Deadline] = None,
    ) -> Branch:
        with self._locked("cas_update_branch_head", deadline):
            branch = self._branches.get(branch_id)
            if branch is None:
                raise NotFoundError(f"Branch {branch_id} not found", details={"branch_id": str(branch_id)})
            if branch.head_version_id != expected_head:
                raise ConcurrencyConflictError(
                    f"Head of branch {branch.name} moved",
                    details={
                        "branch_id": str(branch_id),
                        "expected_head": str(expected_head),
                        "actual_head": str(branch.head_version_id),
                    },
                )
            self._require_version_of_asset(new_head, branch.asset_id)
            branch.head_version_id = new_head
            branch.updated_at = self._versions[new_head].created_at
            return _copy(branch)

    # Merge requests

    def create_merge_request(self, merge_request: MergeRequest, deadline: Optional[Deadline] = None) -> MergeRequest:
        with self._locked("create_merge_request", deadline):
            if merge_request.id in self._merge_requests:
                raise AlreadyExistsError(f"Merge request {merge_request.id} already exists")
            for branch_id in (merge_request.source_branch_id, merge_request.target_branch_id):
                if branch_id not in self._branches:
                    raise NotFoundError(f"Branch {branch_id} not found", details={"branch_id": str(branch_id)})
            self._merge_requests[merge_request.id] = _copy(merge_request)
            self._branches[merge_request.source_branch_id].merge_request_count += 1
            return _copy(merge_request)

    def get_merge_request(self, merge_request_id: UUID, deadline: Optional[Deadline] = None) -> MergeRequest:
        with self._locked("get_merge_request", deadline):
            mr = self._merge_requests.get(merge_request_id)
            if mr is None:
                raise NotFoundError(
                    f"Merge request {merge_request_id} not found",
                    details={"merge_request_id": str(merge_request_id)},
                )
            return _copy(mr)

    def update_merge_request(self, merge_request: MergeRequest, deadline: Optional[Deadline] = None) -> MergeRequest:
        with self._locked("update_merge_request", deadline):
            if merge_request.id not in self._merge_requests:
                raise NotFoundError(
                    f"Merge request {merge_request.id} not found",
                    details={"merge_request_id": str(merge_request.id)},
                )
            self._merge_requests[merge_request.id] = _copy(merge_request)
            return _copy(merge_request)

    def list_merge_requests(
        self,
        asset_id: str,
        status: Optional[MergeRequestStatus] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[MergeRequest]:
        with self._locked("list_merge_requests", deadline):
            matches = [
                mr for mr in self._merge_requests.values()
                if mr.asset_id == asset_id and (status is None or mr.status == status)
            ]
            matches.sort(key=lambda mr: (mr.created_at, str(mr.id)), reverse=True)
            return [_copy(mr) for mr in matches]

    # Approval workflows

    def create_approval_workflow(self, workflow: ApprovalWorkflow, deadline: Optional[Deadline] = None) -> ApprovalWorkflow:
        with self._locked("create_approval_workflow", deadline):
            if workflow.id in self._workflows:
                raise AlreadyExistsError(f"Approval workflow {workflow.id} already exists")
            if workflow.version_id not in self._versions:
                raise NotFoundError(
                    f"Version {workflow.version_id} not found",
                    details={"version_id": str(workflow.version_id)},
                )
            self._workflows[workflow.id] = _copy(workflow)
            return _copy(workflow)

    def get_approval_workflow(self, workflow_id: UUID, deadline: Optional[Deadline] = None) -> ApprovalWorkflow:
        with self._locked("get_approval_workflow", deadline):
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise NotFoundError(
                    f"Approval workflow {workflow_id} not found",
                    details={"workflow_id": str(workflow_id)},
                )
            return _copy(workflow)

    def update_approval_workflow(
        self,
        workflow: ApprovalWorkflow,
        expected_revision: int,
        deadline: Optional[Deadline] = None,
    ) -> ApprovalWorkflow:
        with self._locked("update_approval_workflow", deadline):
            current = self._workflows.get(workflow.id)
            if current is None:
                raise NotFoundError(
                    f"Approval workflow {workflow.id} not found",
                    details={"workflow_id": str(workflow.id)},
                )
            if current.revision != expected_revision:
                raise ConcurrencyConflictError(
                    f"Approval workflow {workflow.id} was modified concurrently",
                    details={"expected_revision": expected_revision, "actual_revision": current.revision},
                )
            stored = _copy(workflow)
            stored.revision = expected_revision + 1
            self._workflows[workflow.id] = stored
            return _copy(stored)

    def list_approval_workflows(
        self,
        asset_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[ApprovalWorkflow]:
        with self._locked("list_approval_workflows", deadline):
            matches = [
                w for w in self._workflows.values()
                if (asset_id is None or w.asset_id == asset_id) and (status is None or w.status == status)
            ]
            matches.sort(key=lambda w: (w.created_at, str(w.id)), reverse=True)
            return [_copy(w) for w in matches[offset:offset + limit]]

    def find_pending_workflows(
        self,
        deadline_before: Optional[datetime] = None,
        auto_approve_before: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ApprovalWorkflow]:
        with self._locked("find_pending_workflows", deadline):
            matches = []
            for w in self._workflows.values():
                if w.status != WorkflowStatus.PENDING:
                    continue
                due_expiry = (
                    deadline_before is not None and w.deadline is not None and w.deadline <= deadline_before
                )
                due_auto = (
                    auto_approve_before is not None
                    and w.auto_approve_at is not None
                    and w.auto_approve_at <= auto_approve_before
                )
                if due_expiry or due_auto:
                    matches.append(w)
            matches.sort(key=lambda w: (w.created_at, str(w.id)))
            return [_copy(w) for w in matches]

    # Tags

    def create_tag(self, tag: VersionTag, deadline: Optional[Deadline] = None) -> VersionTag:
        with self._locked("create_tag", deadline):
            if tag.version_id not in self._versions:
                raise NotFoundError(f"Version {tag.version_id} not found", details={"version_id": str(tag.version_id)})
            if any(t.version_id == tag.version_id and t.name == tag.name for t in self._tags.values()):
                raise AlreadyExistsError(
                    f"Tag {tag.name} already exists on version {tag.version_id}",
                    details={"tag": tag.name, "version_id": str(tag.version_id)},
                )
            self._tags[tag.id] = _copy(tag)
            return _copy(tag)

    def list_tags(self, version_id: UUID, deadline: Optional[Deadline] = None) -> List[VersionTag]:
        with self._locked("list_tags", deadline):
            tags = [t for t in self._tags.values() if t.version_id == version_id]
            tags.sort(key=lambda t: (t.created_at, t.name))
            return [_copy(t) for t in tags]


class _LockGuard:
    """Acquire a lock with a timeout, surfacing contention as a store timeout."""

    def __init__(self, lock: threading.RLock, timeout: float, operation: str):
        self._lock = lock
        self._timeout = timeout
        self._operation = operation

    def __enter__(self):
        if not self._lock.acquire(timeout=max(self._timeout, 0.0)):
            raise OperationTimeoutError(
                f"Timed out waiting for the version store during {self._operation}",
                details={"operation": self._operation},
            )
        return self

    def __exit__(self, exc_type, exc, tb):
        self._lock.release()
        return False
