"""
Asset version control service.

Orchestrates the version store, blob storage, diff and merge engines and the
approval workflow engine behind an async API. Blocking store and blob calls
run on threads bounded by the store timeout; diff and merge computation runs
on the bounded compute pool.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..core import metrics
from ..core.cancellation import CancellationToken, Deadline
from ..core.environment import VersionControlSettings, get_settings
from ..core.exceptions import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    InsufficientApprovalsError,
    NotAnApproverError,
    NotFoundError,
    OperationTimeoutError,
    StoreError,
    UnresolvedConflictsError,
    ValidationError,
    VersionControlError,
)
from ..core.telemetry import create_span
from ..middleware.correlation_middleware import get_correlation_id
from ..models.version_control import (
    ApprovalCheck,
    ApprovalStatus,
    ApprovalWorkflow,
    AssetContent,
    Branch,
    ElementPayload,
    MergeComment,
    MergeRequest,
    MergeRequestStatus,
    MergeStrategy,
    ModelVersion,
    Resolution,
    ResolutionStrategy,
    Reviewer,
    ReviewerStatus,
    StorageStats,
    VersionBump,
    VersionComparisonResult,
    VersionDiff,
    VersionStatus,
    VersionTag,
    WorkflowStatus,
    utc_now,
)
from ..utils.semver import next_version
from ..utils.vcs_validation import ensure_valid_ref_name
from .approval_workflow import ApprovalWorkflowEngine
from .blob_store import BlobStore, FileSystemBlobStore
from .compute_pool import ComputePool
from .conflict_detector import ConflictDetector
from .diff_engine import DiffEngine
from .merge_engine import MergeEngine, conflict_key, validate_resolution
from .metadata_extractor import MetadataExtractor, SceneMetadataExtractor
from .notifier import LoggingNotifier, Notifier, notify_safely
from .snapshot_repository import SnapshotRepository
from .sql_version_store import SqlVersionStore
from .version_store import VersionStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ROLLBACK_TAG = "rollback"
CLOSED_MERGE_REQUEST_REASON = "Merge request closed"

_ACTIVE_MR_STATUSES = (MergeRequestStatus.OPEN, MergeRequestStatus.CONFLICT)


class VersionControlService:
    """
    Git-like version control for 3D assets.

    Features:
    - content-addressed, deduplicated version storage
    - branches with compare-and-swap head updates
    - merge requests with eager conflict detection and per-conflict resolution
    - merge, squash and rebase strategies
    - approval workflows with deadlines and auto-approval
    - rollback, comparison, tagging and retention cleanup
    """

    def __init__(
        self,
        store: VersionStore,
        blob_store: BlobStore,
        metadata_extractor: Optional[MetadataExtractor] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[VersionControlSettings] = None,
        compute_pool: Optional[ComputePool] = None,
        clock: Callable[[], datetime] = utc_now,
        diff_engine: Optional[DiffEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.snapshots = SnapshotRepository(
            blob_store, metadata_extractor or SceneMetadataExtractor()
        )
        self.notifier = notifier or LoggingNotifier()
        self.compute_pool = compute_pool or ComputePool(self.settings.worker_pool_size)
        self.clock = clock
        self.diff_engine = diff_engine or DiffEngine()
        self.conflict_detector = ConflictDetector()
        self.merge_engine = MergeEngine(
            store,
            self.snapshots,
            self.diff_engine,
            self.conflict_detector,
            max_cas_retries=self.settings.cas_max_retries,
            clock=clock,
        )
        self.approvals = ApprovalWorkflowEngine(
            store, self.notifier, clock, max_cas_retries=self.settings.cas_max_retries
        )

        logger.info(
            "version_control_service_initialized",
            require_approval=self.settings.require_approval,
            worker_pool_size=self.compute_pool.max_workers,
        )

    def shutdown(self) -> None:
        self.compute_pool.shutdown()

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    async def _blocking(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking store or blob call on a thread under a fresh deadline."""
        timeout = self.settings.store_timeout_seconds
        kwargs.setdefault("deadline", Deadline(timeout))
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(
                f"{func.__name__} exceeded {timeout}s",
                details={"operation": func.__name__, "timeout_seconds": timeout},
            ) from e

    async def _compute(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await self.compute_pool.run(
            func, *args, timeout=self.settings.compute_timeout_seconds, **kwargs
        )

    def _compute_deadline(self) -> Deadline:
        return Deadline(self.settings.compute_timeout_seconds)

    @contextmanager
    def _operation(self, name: str, **attributes: Any):
        """Span, outcome metric and failure logging around one service operation."""
        correlation_id = get_correlation_id()
        span_attributes = {f"vcs.{key}": value for key, value in attributes.items()}
        with create_span(f"vcs_{name}", correlation_id=correlation_id, attributes=span_attributes):
            try:
                yield
                metrics.record_operation(name)
            except VersionControlError as e:
                metrics.record_operation(name, "error")
                logger.warning(
                    f"{name}_failed",
                    code=e.code,
                    error=e.message,
                    correlation_id=correlation_id,
                    **attributes,
                )
                raise
            except PydanticValidationError as e:
                metrics.record_operation(name, "error")
                logger.warning(f"{name}_failed", error=str(e), correlation_id=correlation_id, **attributes)
                errors = e.errors(include_url=False, include_context=False, include_input=False)
                raise ValidationError(f"Invalid input for {name}", details={"errors": errors}) from e
            except Exception as e:
                metrics.record_operation(name, "error")
                logger.error(
                    f"{name}_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    correlation_id=correlation_id,
                    **attributes,
                )
                details = {"operation": name, **{k: str(v) for k, v in attributes.items()}}
                raise StoreError(f"{name} failed: {e}", details=details) from e

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def _validate_content(self, content: AssetContent) -> None:
        fmt = content.format.lower()
        if fmt not in self.settings.allowed_formats:
            raise ValidationError(
                f"Format '{content.format}' is not allowed",
                details={"format": content.format, "allowed_formats": self.settings.allowed_formats},
            )
        size = len(content.data)
        if size > self.settings.max_payload_bytes:
            raise ValidationError(
                f"Payload of {size} bytes exceeds the {self.settings.max_payload_bytes} byte limit",
                details={"size_bytes": size, "max_payload_bytes": self.settings.max_payload_bytes},
            )

    def _approvers_for(self, approvers: Optional[List[str]]) -> List[str]:
        chosen = approvers if approvers is not None else self.settings.default_approvers
        unique = list(dict.fromkeys(a for a in chosen if a))
        if unique and len(unique) < self.settings.min_approvers:
            raise ValidationError(
                f"At least {self.settings.min_approvers} approver(s) required, got {len(unique)}",
                details={"approvers": unique, "min_approvers": self.settings.min_approvers},
            )
        return unique

    async def create_version(
        self,
        asset_id: str,
        branch_name: str,
        content: AssetContent,
        author_id: str,
        message: str,
        parent_override: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        bump: VersionBump = VersionBump.PATCH,
        approvers: Optional[List[str]] = None,
    ) -> ModelVersion:
        """
        Commit new content to a branch.

        The first commit of an asset creates its default branch. With
        ``require_approval`` the version starts in ``pending_review`` and an
        approval workflow is opened when approvers are known.

        Raises:
            ValidationError: bad branch name, format, size or parent override
            NotFoundError: branch missing on an asset that already has branches
            ConcurrencyConflictError: the head kept moving after the retry
        """
        with self._operation("create_version", asset_id=asset_id, branch=branch_name):
            ensure_valid_ref_name(branch_name, "Branch")
            if not message or not message.strip():
                raise ValidationError("Commit message cannot be empty")
            self._validate_content(content)
            workflow_approvers = self._approvers_for(approvers) if self.settings.require_approval else []

            version_count = await self._blocking(self.store.count_versions, asset_id)
            if version_count >= self.settings.max_versions_per_model:
                raise ValidationError(
                    f"Asset {asset_id} reached the limit of {self.settings.max_versions_per_model} versions",
                    details={"asset_id": asset_id, "max_versions_per_model": self.settings.max_versions_per_model},
                )

            stored = await self._blocking(self.snapshots.write, content)
            status = VersionStatus.PENDING_REVIEW if self.settings.require_approval else VersionStatus.APPROVED

            attempt = 0
            while True:
                branch = await self._find_branch(asset_id, branch_name)
                new_branch: Optional[Branch] = None
                if branch is None:
                    if parent_override is not None:
                        raise ValidationError("The first commit of a branch cannot override its parent")
                    if await self._blocking(self.store.list_branches, asset_id):
                        raise NotFoundError(
                            f"Branch {branch_name} not found",
                            details={"asset_id": asset_id, "branch": branch_name},
                        )
                    expected_head = None
                    version_number = next_version(None, bump)
                    parent_id = None
                else:
                    expected_head = branch.head_version_id
                    head = await self._blocking(self.store.get_version, expected_head)
                    parent_id = expected_head
                    if parent_override is not None and parent_override != expected_head:
                        if branch.is_protected and not self.settings.allow_force_push:
                            raise ValidationError(
                                f"Branch {branch_name} is protected; parent override is not allowed",
                                details={"branch": branch_name, "parent_override": str(parent_override)},
                            )
                        parent_id = parent_override
                    version_number = next_version(head.version, bump)

                now = self.clock()
                version = ModelVersion(
                    asset_id=asset_id,
                    version=version_number,
                    parent_version_id=parent_id,
                    branch_name=branch_name,
                    commit_message=message,
                    content_hash=stored.content_hash,
                    author_id=author_id,
                    size_bytes=stored.size_bytes,
                    metadata=stored.metadata,
                    status=status,
                    tags=list(tags or []),
                    created_at=now,
                    storage_path=stored.storage_path,
                    scene_path=stored.scene_path,
                )
                if branch is None:
                    new_branch = Branch(
                        asset_id=asset_id,
                        name=branch_name,
                        description="Default branch",
                        is_default=True,
                        head_version_id=version.id,
                        base_version_id=version.id,
                        created_by=author_id,
                        created_at=now,
                        updated_at=now,
                    )

                try:
                    await self._blocking(
                        self.store.commit_version, version, expected_head=expected_head, new_branch=new_branch
                    )
                    break
                except ConcurrencyConflictError:
                    if attempt >= self.settings.cas_max_retries:
                        raise
                    attempt += 1
                    metrics.asset_vcs_cas_retries_total.labels(operation="create_version").inc()
                    logger.warning(
                        "version_commit_head_moved_retrying",
                        asset_id=asset_id,
                        branch=branch_name,
                        attempt=attempt,
                    )

            metrics.asset_vcs_commits_total.labels(kind="initial" if new_branch else "commit").inc()
            logger.info(
                "version_created",
                version_id=str(version.id),
                asset_id=asset_id,
                branch=branch_name,
                version=version.version,
                content_hash=version.content_hash[:12],
                status=version.status.value,
            )

            if workflow_approvers:
                await self._blocking(
                    self.approvals.create_workflow,
                    asset_id,
                    version.id,
                    workflow_approvers,
                    min_approvers=self.settings.min_approvers,
                    deadline_hours=self.settings.approval_deadline_hours,
                    auto_approve_after_hours=self.settings.auto_approve_after_hours,
                )
            elif self.settings.require_approval:
                logger.info("version_awaiting_approvers", version_id=str(version.id))
            return version

    async def _find_branch(self, asset_id: str, name: str) -> Optional[Branch]:
        try:
            return await self._blocking(self.store.get_branch, asset_id, name)
        except NotFoundError:
            return None

    async def get_version(self, version_id: UUID) -> ModelVersion:
        with self._operation("get_version", version_id=str(version_id)):
            return await self._blocking(self.store.get_version, version_id)

    async def get_version_history(
        self,
        asset_id: str,
        branch_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ModelVersion]:
        """Versions of an asset, newest first."""
        with self._operation("get_version_history", asset_id=asset_id):
            if limit < 1 or offset < 0:
                raise ValidationError("limit must be positive and offset non-negative")
            return await self._blocking(
                self.store.list_versions, asset_id, branch_name=branch_name, limit=limit, offset=offset
            )

    async def get_version_content(self, version_id: UUID) -> AssetContent:
        with self._operation("get_version_content", version_id=str(version_id)):
            version = await self._blocking(self.store.get_version, version_id)
            return await self._blocking(self.snapshots.read_content, version)

    async def archive_version(self, version_id: UUID, actor_id: str) -> ModelVersion:
        with self._operation("archive_version", version_id=str(version_id)):
            version = await self._blocking(self.store.get_version, version_id)
            if version.status == VersionStatus.ARCHIVED:
                return version
            version = await self._blocking(self.store.update_version_status, version_id, VersionStatus.ARCHIVED)
            logger.info("version_archived", version_id=str(version_id), actor_id=actor_id)
            return version

    async def request_approval(
        self,
        version_id: UUID,
        approvers: List[str],
        requester_id: str,
    ) -> ApprovalWorkflow:
        """Open an approval workflow for a pending version committed without approvers."""
        with self._operation("request_approval", version_id=str(version_id)):
            version = await self._blocking(self.store.get_version, version_id)
            if version.status != VersionStatus.PENDING_REVIEW:
                raise ValidationError(
                    f"Version {version.version} is {version.status.value}, not pending review",
                    details={"version_id": str(version_id)},
                )
            pending = await self._blocking(
                self.store.list_approval_workflows,
                asset_id=version.asset_id,
                status=WorkflowStatus.PENDING,
                limit=self.settings.max_versions_per_model,
            )
            if any(w.version_id == version_id for w in pending):
                raise AlreadyExistsError(
                    f"Version {version.version} already has a pending approval workflow",
                    details={"version_id": str(version_id)},
                )
            workflow = await self._blocking(
                self.approvals.create_workflow,
                version.asset_id,
                version_id,
                approvers,
                min_approvers=self.settings.min_approvers,
                deadline_hours=self.settings.approval_deadline_hours,
                auto_approve_after_hours=self.settings.auto_approve_after_hours,
            )
            logger.info("approval_requested", version_id=str(version_id), requester_id=requester_id)
            return workflow

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def create_branch(
        self,
        asset_id: str,
        name: str,
        base_version_id: UUID,
        creator_id: str,
        description: Optional[str] = None,
        is_protected: bool = False,
    ) -> Branch:
        with self._operation("create_branch", asset_id=asset_id, branch=name):
            ensure_valid_ref_name(name, "Branch")
            base = await self._blocking(self.store.get_version, base_version_id)
            if base.asset_id != asset_id:
                raise ValidationError(
                    f"Version {base_version_id} does not belong to asset {asset_id}",
                    details={"asset_id": asset_id, "base_version_id": str(base_version_id)},
                )
            now = self.clock()
            branch = Branch(
                asset_id=asset_id,
                name=name,
                description=description,
                is_protected=is_protected,
                head_version_id=base.id,
                base_version_id=base.id,
                created_by=creator_id,
                created_at=now,
                updated_at=now,
                contributors=[creator_id],
                last_activity_at=now,
            )
            branch = await self._blocking(self.store.create_branch, branch)
            logger.info(
                "branch_created",
                asset_id=asset_id,
                branch=name,
                base_version=base.version,
                is_protected=is_protected,
            )
            return branch

    async def get_branch(self, asset_id: str, name: str) -> Branch:
        with self._operation("get_branch", asset_id=asset_id, branch=name):
            return await self._blocking(self.store.get_branch, asset_id, name)

    async def list_branches(self, asset_id: str) -> List[Branch]:
        with self._operation("list_branches", asset_id=asset_id):
            return await self._blocking(self.store.list_branches, asset_id)

    # ------------------------------------------------------------------
    # Merge requests
    # ------------------------------------------------------------------

    async def create_merge_request(
        self,
        asset_id: str,
        source_branch: str,
        target_branch: str,
        title: str,
        author_id: str,
        reviewers: Optional[List[str]] = None,
        description: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> MergeRequest:
        """
        Open a merge request and detect conflicts up front.

        The request starts in ``conflict`` when any conflict was found,
        otherwise ``open``.
        """
        with self._operation("create_merge_request", asset_id=asset_id, source=source_branch, target=target_branch):
            if source_branch == target_branch:
                raise ValidationError("Source and target branch must differ")
            reviewer_ids = list(dict.fromkeys(r for r in (reviewers or []) if r))
            if self.settings.require_approval and reviewer_ids and len(reviewer_ids) < self.settings.min_approvers:
                raise ValidationError(
                    f"At least {self.settings.min_approvers} reviewer(s) required, got {len(reviewer_ids)}",
                    details={"reviewers": reviewer_ids},
                )

            source = await self._blocking(self.store.get_branch, asset_id, source_branch)
            target = await self._blocking(self.store.get_branch, asset_id, target_branch)
            plan = await self._compute(
                self.merge_engine.plan, source, target, cancel_token, self._compute_deadline()
            )
            if plan.source_already_merged:
                raise ValidationError(
                    f"Branch {source_branch} has no changes to merge into {target_branch}",
                    details={"source_head": str(plan.source_head.id)},
                )

            now = self.clock()
            merge_request = MergeRequest(
                asset_id=asset_id,
                source_branch_id=source.id,
                target_branch_id=target.id,
                title=title,
                description=description,
                status=MergeRequestStatus.CONFLICT if plan.conflicts else MergeRequestStatus.OPEN,
                author_id=author_id,
                reviewers=[Reviewer(user_id=r) for r in reviewer_ids],
                conflicts=plan.conflicts,
                created_at=now,
                updated_at=now,
            )
            merge_request = await self._blocking(self.store.create_merge_request, merge_request)

            if self.settings.require_approval and reviewer_ids:
                workflow = await self._blocking(
                    self.approvals.create_workflow,
                    asset_id,
                    plan.source_head.id,
                    reviewer_ids,
                    min_approvers=self.settings.min_approvers,
                    deadline_hours=self.settings.approval_deadline_hours,
                    auto_approve_after_hours=self.settings.auto_approve_after_hours,
                    merge_request_id=merge_request.id,
                )
                merge_request.approval_workflow_id = workflow.id
                merge_request = await self._blocking(self.store.update_merge_request, merge_request)

            if reviewer_ids:
                notify_safely("notify_reviewers", self.notifier.notify_reviewers, merge_request.id, reviewer_ids)

            logger.info(
                "merge_request_created",
                merge_request_id=str(merge_request.id),
                asset_id=asset_id,
                source=source_branch,
                target=target_branch,
                status=merge_request.status.value,
                conflicts=len(plan.conflicts),
            )
            return merge_request

    async def get_merge_request(self, merge_request_id: UUID) -> MergeRequest:
        with self._operation("get_merge_request", merge_request_id=str(merge_request_id)):
            return await self._blocking(self.store.get_merge_request, merge_request_id)

    async def list_merge_requests(
        self, asset_id: str, status: Optional[MergeRequestStatus] = None
    ) -> List[MergeRequest]:
        with self._operation("list_merge_requests", asset_id=asset_id):
            return await self._blocking(self.store.list_merge_requests, asset_id, status=status)

    async def _active_merge_request(self, merge_request_id: UUID) -> MergeRequest:
        merge_request = await self._blocking(self.store.get_merge_request, merge_request_id)
        if merge_request.status not in _ACTIVE_MR_STATUSES:
            raise ValidationError(
                f"Merge request is {merge_request.status.value}",
                details={"merge_request_id": str(merge_request_id), "status": merge_request.status.value},
            )
        return merge_request

    async def resolve_conflict(
        self,
        merge_request_id: UUID,
        conflict_id: UUID,
        strategy: ResolutionStrategy,
        resolver_id: str,
        custom_payload: Optional[ElementPayload] = None,
    ) -> MergeRequest:
        """Record a resolution; the request reopens once no conflict is left unresolved."""
        with self._operation("resolve_conflict", merge_request_id=str(merge_request_id)):
            merge_request = await self._active_merge_request(merge_request_id)
            conflict = merge_request.get_conflict(conflict_id)
            if conflict is None:
                raise NotFoundError(
                    f"Conflict {conflict_id} not found on merge request {merge_request_id}",
                    details={"conflict_id": str(conflict_id)},
                )
            strategy = ResolutionStrategy(strategy)
            validate_resolution(conflict, strategy, custom_payload)

            now = self.clock()
            conflict.resolution = Resolution(
                strategy=strategy,
                resolved_by=resolver_id,
                resolved_at=now,
                custom_payload=custom_payload if strategy == ResolutionStrategy.MANUAL else None,
            )
            if merge_request.status == MergeRequestStatus.CONFLICT and not merge_request.unresolved_conflicts:
                merge_request.status = MergeRequestStatus.OPEN
            merge_request.updated_at = now
            merge_request = await self._blocking(self.store.update_merge_request, merge_request)
            logger.info(
                "conflict_resolved",
                merge_request_id=str(merge_request_id),
                conflict_id=str(conflict_id),
                path=conflict.path,
                strategy=strategy.value,
                remaining=len(merge_request.unresolved_conflicts),
            )
            return merge_request

    async def merge_branches(
        self,
        merge_request_id: UUID,
        actor_id: str,
        strategy: MergeStrategy = MergeStrategy.MERGE,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelVersion:
        """
        Merge an open merge request into its target branch.

        Raises:
            UnresolvedConflictsError: conflicts remain, including ones that
                appeared after the request was opened
            InsufficientApprovalsError: approval is required and not granted
            ConcurrencyConflictError: the target head kept moving
        """
        strategy = MergeStrategy(strategy)
        with self._operation("merge_branches", merge_request_id=str(merge_request_id), strategy=strategy.value):
            merge_request = await self._blocking(self.store.get_merge_request, merge_request_id)
            if merge_request.status == MergeRequestStatus.CONFLICT:
                raise UnresolvedConflictsError(merge_request.unresolved_conflicts)
            if merge_request.status != MergeRequestStatus.OPEN:
                raise ValidationError(
                    f"Merge request is {merge_request.status.value}",
                    details={"merge_request_id": str(merge_request_id), "status": merge_request.status.value},
                )

            approved_head = None
            if self.settings.require_approval:
                workflow = None
                if merge_request.approval_workflow_id is not None:
                    workflow = await self._blocking(
                        self.store.get_approval_workflow, merge_request.approval_workflow_id
                    )
                check = self.approvals.check(workflow)
                if not check.is_approved:
                    raise InsufficientApprovalsError(
                        f"Merge request {merge_request_id} is not approved",
                        details=check.model_dump(mode="json"),
                    )
                # Approval covers the head it was requested for
                approved_head = workflow.version_id

            resolutions = {
                conflict_key(c): c.resolution for c in merge_request.conflicts if c.resolution is not None
            }
            try:
                version = await self._compute(
                    self.merge_engine.merge,
                    merge_request.source_branch_id,
                    merge_request.target_branch_id,
                    strategy,
                    actor_id,
                    merge_request.title,
                    resolutions,
                    cancel_token,
                    self._compute_deadline(),
                    approved_head,
                )
            except UnresolvedConflictsError as e:
                await self._record_new_conflicts(merge_request, e)
                raise

            now = self.clock()
            merge_request.status = MergeRequestStatus.MERGED
            merge_request.merged_at = now
            merge_request.merged_by = actor_id
            merge_request.merged_version_id = version.id
            merge_request.updated_at = now
            await self._blocking(self.store.update_merge_request, merge_request)
            logger.info(
                "merge_request_merged",
                merge_request_id=str(merge_request_id),
                merged_version_id=str(version.id),
                version=version.version,
                strategy=strategy.value,
            )
            return version

    async def _record_new_conflicts(self, merge_request: MergeRequest, error: UnresolvedConflictsError) -> None:
        known = {conflict_key(c) for c in merge_request.conflicts}
        fresh = [c for c in error.conflicts if conflict_key(c) not in known]
        if not fresh:
            return
        merge_request.conflicts = [*merge_request.conflicts, *fresh]
        merge_request.status = MergeRequestStatus.CONFLICT
        merge_request.updated_at = self.clock()
        await self._blocking(self.store.update_merge_request, merge_request)
        logger.info(
            "merge_request_new_conflicts",
            merge_request_id=str(merge_request.id),
            paths=[c.path for c in fresh],
        )

    async def submit_review(
        self,
        merge_request_id: UUID,
        reviewer_id: str,
        decision: ReviewerStatus,
        comment: Optional[str] = None,
    ) -> MergeRequest:
        """
        Record a reviewer's decision.

        Approve and reject are routed through the approval workflow when the
        request has one; ``commented`` only records the comment.
        """
        decision = ReviewerStatus(decision)
        with self._operation("submit_review", merge_request_id=str(merge_request_id), decision=decision.value):
            if decision == ReviewerStatus.PENDING:
                raise ValidationError("Review decision cannot be 'pending'")
            merge_request = await self._active_merge_request(merge_request_id)
            reviewer = merge_request.get_reviewer(reviewer_id)
            if reviewer is None:
                raise NotAnApproverError(
                    f"{reviewer_id} is not a reviewer of merge request {merge_request_id}",
                    details={"merge_request_id": str(merge_request_id), "reviewer_id": reviewer_id},
                )

            if decision != ReviewerStatus.COMMENTED and merge_request.approval_workflow_id is not None:
                await self.submit_approval(
                    merge_request.approval_workflow_id, reviewer_id, ApprovalStatus(decision.value), comment
                )
                return await self._blocking(self.store.get_merge_request, merge_request_id)

            now = self.clock()
            if decision != ReviewerStatus.COMMENTED or reviewer.status == ReviewerStatus.PENDING:
                reviewer.status = decision
            reviewer.comment = comment
            reviewer.reviewed_at = now
            merge_request.updated_at = now
            merge_request = await self._blocking(self.store.update_merge_request, merge_request)
            logger.info(
                "review_submitted",
                merge_request_id=str(merge_request_id),
                reviewer_id=reviewer_id,
                decision=decision.value,
            )
            return merge_request

    async def add_comment(
        self,
        merge_request_id: UUID,
        user_id: str,
        content: str,
        parent_comment_id: Optional[UUID] = None,
    ) -> MergeComment:
        with self._operation("add_comment", merge_request_id=str(merge_request_id)):
            merge_request = await self._blocking(self.store.get_merge_request, merge_request_id)
            if parent_comment_id is not None and not any(c.id == parent_comment_id for c in merge_request.comments):
                raise NotFoundError(
                    f"Comment {parent_comment_id} not found",
                    details={"comment_id": str(parent_comment_id)},
                )
            now = self.clock()
            comment = MergeComment(
                user_id=user_id,
                content=content,
                created_at=now,
                updated_at=now,
                parent_comment_id=parent_comment_id,
            )
            merge_request.comments = [*merge_request.comments, comment]
            merge_request.updated_at = now
            await self._blocking(self.store.update_merge_request, merge_request)
            logger.info("merge_request_comment_added", merge_request_id=str(merge_request_id), user_id=user_id)
            return comment

    async def close_merge_request(self, merge_request_id: UUID, actor_id: str) -> MergeRequest:
        with self._operation("close_merge_request", merge_request_id=str(merge_request_id)):
            merge_request = await self._active_merge_request(merge_request_id)
            if merge_request.approval_workflow_id is not None:
                workflow = await self._blocking(self.store.get_approval_workflow, merge_request.approval_workflow_id)
                if workflow.status == WorkflowStatus.PENDING:
                    await self._blocking(self.approvals.cancel_workflow, workflow.id, CLOSED_MERGE_REQUEST_REASON)
            merge_request.status = MergeRequestStatus.CLOSED
            merge_request.closed_by = actor_id
            merge_request.updated_at = self.clock()
            merge_request = await self._blocking(self.store.update_merge_request, merge_request)
            logger.info("merge_request_closed", merge_request_id=str(merge_request_id), actor_id=actor_id)
            return merge_request

    async def _approval_check(self, merge_request: MergeRequest) -> ApprovalCheck:
        if merge_request.approval_workflow_id is None:
            return self.approvals.check(None)
        workflow = await self._blocking(self.store.get_approval_workflow, merge_request.approval_workflow_id)
        return self.approvals.check(workflow)

    async def check_approvals(self, merge_request_id: UUID) -> ApprovalCheck:
        with self._operation("check_approvals", merge_request_id=str(merge_request_id)):
            merge_request = await self._blocking(self.store.get_merge_request, merge_request_id)
            return await self._approval_check(merge_request)

    # ------------------------------------------------------------------
    # Rollback, comparison, tags
    # ------------------------------------------------------------------

    async def rollback(
        self,
        asset_id: str,
        target_version_id: UUID,
        actor_id: str,
        reason: str,
    ) -> ModelVersion:
        """
        Restore the content of ``target_version_id`` as a new version.

        History is additive: the new version's parent is the branch's prior
        head and its content hash equals the target's.
        """
        with self._operation("rollback", asset_id=asset_id, target_version_id=str(target_version_id)):
            target = await self._blocking(self.store.get_version, target_version_id)
            if target.asset_id != asset_id:
                raise ValidationError(
                    f"Version {target_version_id} does not belong to asset {asset_id}",
                    details={"asset_id": asset_id, "version_id": str(target_version_id)},
                )
            stored = self.snapshots.stored_of(target)

            attempt = 0
            while True:
                branch = await self._blocking(self.store.get_branch, asset_id, target.branch_name)
                if branch.head_version_id == target.id:
                    raise ValidationError(
                        f"Branch {branch.name} is already at version {target.version}",
                        details={"branch": branch.name, "version_id": str(target.id)},
                    )
                head = await self._blocking(self.store.get_version, branch.head_version_id)
                version = ModelVersion(
                    asset_id=asset_id,
                    version=next_version(head.version, VersionBump.PATCH),
                    parent_version_id=head.id,
                    branch_name=branch.name,
                    commit_message=f"Rollback to version {target.version}: {reason}",
                    content_hash=stored.content_hash,
                    author_id=actor_id,
                    size_bytes=stored.size_bytes,
                    metadata=stored.metadata,
                    status=VersionStatus.APPROVED,
                    tags=[ROLLBACK_TAG],
                    created_at=self.clock(),
                    storage_path=stored.storage_path,
                    scene_path=stored.scene_path,
                )
                try:
                    await self._blocking(self.store.commit_version, version, expected_head=head.id)
                    break
                except ConcurrencyConflictError:
                    if attempt >= self.settings.cas_max_retries:
                        raise
                    attempt += 1
                    metrics.asset_vcs_cas_retries_total.labels(operation="rollback").inc()

            metrics.asset_vcs_commits_total.labels(kind="rollback").inc()
            logger.info(
                "version_rolled_back",
                asset_id=asset_id,
                branch=version.branch_name,
                restored_version=target.version,
                new_version=version.version,
                actor_id=actor_id,
            )
            return version

    async def _diff_versions(
        self,
        from_version: ModelVersion,
        to_version: ModelVersion,
        cancel_token: Optional[CancellationToken],
    ) -> VersionDiff:
        if from_version.content_hash == to_version.content_hash:
            return VersionDiff(from_version_id=from_version.id, to_version_id=to_version.id)
        if not self.settings.diffing_enabled:
            raise ValidationError("Structural diffing is disabled")
        from_scene = await self._blocking(self.snapshots.read_scene, from_version)
        to_scene = await self._blocking(self.snapshots.read_scene, to_version)
        return await self._compute(
            self.diff_engine.diff,
            from_scene,
            to_scene,
            from_version.id,
            to_version.id,
            to_version.size_bytes - from_version.size_bytes,
            cancel_token,
        )

    async def get_diff(
        self,
        from_version_id: UUID,
        to_version_id: UUID,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VersionDiff:
        with self._operation("get_diff", from_version_id=str(from_version_id), to_version_id=str(to_version_id)):
            from_version = await self._blocking(self.store.get_version, from_version_id)
            to_version = await self._blocking(self.store.get_version, to_version_id)
            return await self._diff_versions(from_version, to_version, cancel_token)

    async def compare_versions(
        self,
        version1_id: UUID,
        version2_id: UUID,
        include_visual: bool = True,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VersionComparisonResult:
        with self._operation("compare_versions", version1_id=str(version1_id), version2_id=str(version2_id)):
            version1 = await self._blocking(self.store.get_version, version1_id)
            version2 = await self._blocking(self.store.get_version, version2_id)
            if version1.asset_id != version2.asset_id:
                raise ValidationError(
                    "Versions belong to different assets",
                    details={"asset_ids": [version1.asset_id, version2.asset_id]},
                )
            identical = version1.content_hash == version2.content_hash
            diff = await self._diff_versions(version1, version2, cancel_token)

            visual = None
            if include_visual and not identical:
                from_scene = await self._blocking(self.snapshots.read_scene, version1)
                to_scene = await self._blocking(self.snapshots.read_scene, version2)
                visual = await self._compute(self.diff_engine.visual_diff, from_scene, to_scene)

            return VersionComparisonResult(
                version1=version1,
                version2=version2,
                identical=identical,
                similarity=diff.similarity,
                diff=diff,
                visual_diff=visual,
            )

    async def create_tag(
        self,
        version_id: UUID,
        name: str,
        creator_id: str,
        description: Optional[str] = None,
        is_release: bool = False,
    ) -> VersionTag:
        with self._operation("create_tag", version_id=str(version_id), tag=name):
            ensure_valid_ref_name(name, "Tag")
            tag = VersionTag(
                name=name,
                version_id=version_id,
                created_by=creator_id,
                created_at=self.clock(),
                is_release=is_release,
                description=description,
            )
            tag = await self._blocking(self.store.create_tag, tag)
            logger.info("tag_created", version_id=str(version_id), tag=name, is_release=is_release)
            return tag

    async def list_tags(self, version_id: UUID) -> List[VersionTag]:
        with self._operation("list_tags", version_id=str(version_id)):
            return await self._blocking(self.store.list_tags, version_id)

    # ------------------------------------------------------------------
    # Approval workflows
    # ------------------------------------------------------------------

    async def submit_approval(
        self,
        workflow_id: UUID,
        approver_id: str,
        decision: ApprovalStatus,
        comment: Optional[str] = None,
    ) -> ApprovalWorkflow:
        with self._operation("submit_approval", workflow_id=str(workflow_id)):
            decision = ApprovalStatus(decision)
            workflow, changed = await self._blocking(
                self.approvals.submit_approval, workflow_id, approver_id, decision, comment
            )
            if changed and workflow.merge_request_id is not None:
                await self._mirror_reviewer(workflow.merge_request_id, approver_id, decision, comment)
            return workflow

    async def _mirror_reviewer(
        self,
        merge_request_id: UUID,
        reviewer_id: str,
        decision: ApprovalStatus,
        comment: Optional[str],
    ) -> None:
        merge_request = await self._blocking(self.store.get_merge_request, merge_request_id)
        reviewer = merge_request.get_reviewer(reviewer_id)
        if reviewer is None:
            return
        now = self.clock()
        reviewer.status = ReviewerStatus(decision.value)
        reviewer.comment = comment
        reviewer.reviewed_at = now
        merge_request.updated_at = now
        await self._blocking(self.store.update_merge_request, merge_request)

    async def get_approval_workflow(self, workflow_id: UUID) -> ApprovalWorkflow:
        with self._operation("get_approval_workflow", workflow_id=str(workflow_id)):
            return await self._blocking(self.store.get_approval_workflow, workflow_id)

    async def cancel_workflow(self, workflow_id: UUID, reason: str) -> ApprovalWorkflow:
        with self._operation("cancel_workflow", workflow_id=str(workflow_id)):
            return await self._blocking(self.approvals.cancel_workflow, workflow_id, reason)

    async def get_approval_history(
        self,
        asset_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ApprovalWorkflow]:
        with self._operation("get_approval_history", asset_id=asset_id):
            return await self._blocking(
                self.store.list_approval_workflows, asset_id=asset_id, status=status, limit=limit, offset=offset
            )

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        with self._operation("sweep_expired"):
            return await self._blocking(self.approvals.sweep_expired, now or self.clock())

    async def sweep_auto_approvals(self, now: Optional[datetime] = None) -> int:
        with self._operation("sweep_auto_approvals"):
            return await self._blocking(self.approvals.sweep_auto_approvals, now or self.clock())

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def _all_versions(self, asset_id: str) -> List[ModelVersion]:
        total = await self._blocking(self.store.count_versions, asset_id)
        if total == 0:
            return []
        return await self._blocking(self.store.list_versions, asset_id, limit=total, offset=0)

    async def get_storage_stats(self, asset_id: str) -> StorageStats:
        with self._operation("get_storage_stats", asset_id=asset_id):
            versions = await self._all_versions(asset_id)
            branches = await self._blocking(self.store.list_branches, asset_id)

            size_by_hash: Dict[str, int] = {}
            blob_paths = set()
            by_status: Dict[str, int] = {}
            for version in versions:
                size_by_hash[version.content_hash] = version.size_bytes
                blob_paths.update({version.storage_path, version.scene_path})
                by_status[version.status.value] = by_status.get(version.status.value, 0) + 1

            total_size = sum(v.size_bytes for v in versions)
            return StorageStats(
                asset_id=asset_id,
                total_versions=len(versions),
                branch_count=len(branches),
                total_size_bytes=total_size,
                unique_blobs=len(blob_paths),
                deduplicated_bytes=total_size - sum(size_by_hash.values()),
                versions_by_status=by_status,
            )

    async def cleanup_old_versions(
        self,
        asset_id: str,
        retention_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Hard-delete archived versions older than the retention window.

        Branch heads and bases are kept. Blobs are removed once no remaining
        version references them.
        """
        if retention_days is None:
            retention_days = self.settings.retention_days
        with self._operation("cleanup_old_versions", asset_id=asset_id, retention_days=retention_days):
            cutoff = (now or self.clock()) - timedelta(days=retention_days)
            branches = await self._blocking(self.store.list_branches, asset_id)
            pinned = {b.head_version_id for b in branches} | {b.base_version_id for b in branches}

            deleted = 0
            for version in await self._all_versions(asset_id):
                if (
                    version.status != VersionStatus.ARCHIVED
                    or version.created_at >= cutoff
                    or version.id in pinned
                ):
                    continue
                try:
                    await self._blocking(self.store.delete_version, version.id)
                except ValidationError as e:
                    # Became a branch head or base after the listing
                    logger.info("cleanup_version_skipped", version_id=str(version.id), reason=e.message)
                    continue
                deleted += 1
                for path in {version.storage_path, version.scene_path}:
                    if path and not await self._blocking(self.store.is_blob_referenced, path):
                        await self._blocking(self.snapshots.delete_blob, path)

            logger.info("old_versions_cleaned_up", asset_id=asset_id, deleted=deleted, cutoff=cutoff.isoformat())
            return deleted


def build_service(settings: Optional[VersionControlSettings] = None) -> VersionControlService:
    """Service wired to the configured database and blob directory."""
    settings = settings or get_settings()
    store = SqlVersionStore.from_url(settings.database_url)
    blob_store = FileSystemBlobStore(
        Path(settings.blob_storage_path),
        compression_enabled=settings.compression_enabled,
    )
    return VersionControlService(store, blob_store, settings=settings)
