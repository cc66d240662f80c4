"""
FastAPI endpoints for asset version control.

REST surface over versions, branches, merge requests, approval workflows,
rollback, comparison, tags and storage maintenance.
"""

import base64
import binascii
from typing import List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ...core.telemetry import create_span
from ...middleware.correlation_middleware import get_correlation_id
from ...models.version_control import (
    SCENE_FORMAT,
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
    ResolutionStrategy,
    ReviewerStatus,
    SceneSnapshot,
    StorageStats,
    VersionBump,
    VersionComparisonResult,
    VersionDiff,
    VersionTag,
    WorkflowStatus,
)
from ...services.version_control_service import VersionControlService
from ...utils.vcs_error_handler import handle_vcs_errors
from ..deps import get_service

router = APIRouter(prefix="/api/v1", tags=["version-control"])
logger = structlog.get_logger(__name__)


# Request/Response schemas

class CreateVersionRequest(BaseModel):
    """Request to commit a new version."""
    branch_name: str = Field(default="main", description="Branch to commit to")
    author_id: str = Field(min_length=1, description="Committing user")
    message: str = Field(min_length=1, description="Commit message")
    scene: SceneSnapshot = Field(default_factory=SceneSnapshot, description="Structured scene content")
    payload_base64: Optional[str] = Field(default=None, description="Original asset bytes, base64 encoded")
    format: str = Field(default=SCENE_FORMAT, description="Asset format")
    parent_version_id: Optional[UUID] = Field(default=None, description="Explicit parent version")
    tags: List[str] = Field(default_factory=list, description="Version tags")
    bump: VersionBump = Field(default=VersionBump.PATCH, description="Semantic version component to bump")
    approvers: Optional[List[str]] = Field(default=None, description="Approvers for this version")

    def to_content(self) -> AssetContent:
        payload = None
        if self.payload_base64 is not None:
            try:
                payload = base64.b64decode(self.payload_base64, validate=True)
            except binascii.Error as e:
                raise ValueError(f"payload_base64 is not valid base64: {e}") from e
        return AssetContent(scene=self.scene, payload=payload, format=self.format)


class ContentResponse(BaseModel):
    scene: SceneSnapshot
    format: str
    payload_base64: Optional[str] = None


class ActorRequest(BaseModel):
    actor_id: str = Field(min_length=1, description="Acting user")


class RequestApprovalRequest(BaseModel):
    approvers: List[str] = Field(min_length=1, description="Approver user ids")
    requester_id: str = Field(min_length=1, description="Requesting user")


class CreateBranchRequest(BaseModel):
    """Request to create a branch."""
    name: str = Field(description="Branch name")
    base_version_id: UUID = Field(description="Version the branch starts from")
    creator_id: str = Field(min_length=1, description="Creating user")
    description: Optional[str] = Field(default=None, description="Branch description")
    is_protected: bool = Field(default=False, description="Protect the branch head")


class CreateMergeRequestRequest(BaseModel):
    """Request to open a merge request."""
    source_branch: str = Field(description="Branch being merged")
    target_branch: str = Field(description="Branch receiving the merge")
    title: str = Field(min_length=1, description="Merge request title")
    author_id: str = Field(min_length=1, description="Opening user")
    description: str = Field(default="", description="Merge request description")
    reviewers: List[str] = Field(default_factory=list, description="Reviewer user ids")


class ResolveConflictRequest(BaseModel):
    """Request to resolve a conflict."""
    strategy: ResolutionStrategy = Field(description="Resolution strategy")
    resolver_id: str = Field(min_length=1, description="Resolving user")
    custom_payload: Optional[ElementPayload] = Field(default=None, description="Value for custom resolutions")


class MergeRequestAction(BaseModel):
    actor_id: str = Field(min_length=1, description="Merging user")
    strategy: MergeStrategy = Field(default=MergeStrategy.MERGE, description="Merge strategy")


class ReviewRequest(BaseModel):
    reviewer_id: str = Field(min_length=1)
    decision: ReviewerStatus
    comment: Optional[str] = None


class CommentRequest(BaseModel):
    user_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    parent_comment_id: Optional[UUID] = None


class ApprovalDecisionRequest(BaseModel):
    approver_id: str = Field(min_length=1)
    decision: ApprovalStatus
    comment: Optional[str] = None


class CancelWorkflowRequest(BaseModel):
    reason: str = Field(min_length=1)


class RollbackRequest(BaseModel):
    """Request to roll a branch back to an earlier version."""
    target_version_id: UUID = Field(description="Version whose content is restored")
    actor_id: str = Field(min_length=1, description="Acting user")
    reason: str = Field(min_length=1, description="Why the rollback happened")


class CreateTagRequest(BaseModel):
    """Request to tag a version."""
    name: str = Field(description="Tag name")
    creator_id: str = Field(min_length=1, description="Tagging user")
    description: Optional[str] = Field(default=None, description="Tag description")
    is_release: bool = Field(default=False, description="Mark as a release tag")


class CleanupRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=0, description="Override configured retention")


class CleanupResponse(BaseModel):
    asset_id: str
    deleted_versions: int


class SweepResponse(BaseModel):
    expired: int
    auto_approved: int


# Versions

@router.post("/assets/{asset_id}/versions", response_model=ModelVersion, status_code=status.HTTP_201_CREATED)
@handle_vcs_errors(operation="create_version")
async def create_version(
    asset_id: str,
    request: CreateVersionRequest,
    service: VersionControlService = Depends(get_service),
):
    """
    Commit a new version of an asset.

    The first commit of an asset creates its default branch.
    """
    correlation_id = get_correlation_id()
    with create_span("api_create_version", operation_type="api", correlation_id=correlation_id) as span:
        if span:
            span.set_attribute("asset.id", asset_id)
            span.set_attribute("branch.name", request.branch_name)
        return await service.create_version(
            asset_id=asset_id,
            branch_name=request.branch_name,
            content=request.to_content(),
            author_id=request.author_id,
            message=request.message,
            parent_override=request.parent_version_id,
            tags=request.tags,
            bump=request.bump,
            approvers=request.approvers,
        )


@router.get("/assets/{asset_id}/versions", response_model=List[ModelVersion])
@handle_vcs_errors(operation="get_version_history")
async def get_version_history(
    asset_id: str,
    branch: Optional[str] = Query(default=None, description="Restrict to one branch"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: VersionControlService = Depends(get_service),
):
    """Versions of an asset, newest first."""
    return await service.get_version_history(asset_id, branch_name=branch, limit=limit, offset=offset)


@router.get("/versions/{version_id}", response_model=ModelVersion)
@handle_vcs_errors(operation="get_version")
async def get_version(version_id: UUID, service: VersionControlService = Depends(get_service)):
    return await service.get_version(version_id)


@router.get("/versions/{version_id}/content", response_model=ContentResponse)
@handle_vcs_errors(operation="get_version_content")
async def get_version_content(version_id: UUID, service: VersionControlService = Depends(get_service)):
    content = await service.get_version_content(version_id)
    return ContentResponse(
        scene=content.scene,
        format=content.format,
        payload_base64=base64.b64encode(content.payload).decode("ascii") if content.payload is not None else None,
    )


@router.post("/versions/{version_id}/archive", response_model=ModelVersion)
@handle_vcs_errors(operation="archive_version")
async def archive_version(
    version_id: UUID,
    request: ActorRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.archive_version(version_id, request.actor_id)


@router.post(
    "/versions/{version_id}/approval-requests",
    response_model=ApprovalWorkflow,
    status_code=status.HTTP_201_CREATED,
)
@handle_vcs_errors(operation="request_approval")
async def request_approval(
    version_id: UUID,
    request: RequestApprovalRequest,
    service: VersionControlService = Depends(get_service),
):
    """Open an approval workflow for a version awaiting review."""
    return await service.request_approval(version_id, request.approvers, request.requester_id)


@router.get("/versions/{from_version_id}/diff/{to_version_id}", response_model=VersionDiff)
@handle_vcs_errors(operation="get_diff")
async def get_diff(
    from_version_id: UUID,
    to_version_id: UUID,
    service: VersionControlService = Depends(get_service),
):
    correlation_id = get_correlation_id()
    with create_span("api_get_diff", operation_type="api", correlation_id=correlation_id):
        return await service.get_diff(from_version_id, to_version_id)


@router.get("/versions/{version1_id}/compare/{version2_id}", response_model=VersionComparisonResult)
@handle_vcs_errors(operation="compare_versions")
async def compare_versions(
    version1_id: UUID,
    version2_id: UUID,
    include_visual: bool = Query(default=True),
    service: VersionControlService = Depends(get_service),
):
    correlation_id = get_correlation_id()
    with create_span("api_compare_versions", operation_type="api", correlation_id=correlation_id):
        return await service.compare_versions(version1_id, version2_id, include_visual=include_visual)


@router.post("/versions/{version_id}/tags", response_model=VersionTag, status_code=status.HTTP_201_CREATED)
@handle_vcs_errors(operation="create_tag")
async def create_tag(
    version_id: UUID,
    request: CreateTagRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.create_tag(
        version_id,
        request.name,
        request.creator_id,
        description=request.description,
        is_release=request.is_release,
    )


@router.get("/versions/{version_id}/tags", response_model=List[VersionTag])
@handle_vcs_errors(operation="list_tags")
async def list_tags(version_id: UUID, service: VersionControlService = Depends(get_service)):
    return await service.list_tags(version_id)


@router.post("/assets/{asset_id}/rollback", response_model=ModelVersion, status_code=status.HTTP_201_CREATED)
@handle_vcs_errors(operation="rollback")
async def rollback(
    asset_id: str,
    request: RollbackRequest,
    service: VersionControlService = Depends(get_service),
):
    """
    Restore an earlier version's content as a new commit.

    History is never rewritten; the new version records the rollback reason.
    """
    correlation_id = get_correlation_id()
    with create_span("api_rollback", operation_type="api", correlation_id=correlation_id) as span:
        if span:
            span.set_attribute("asset.id", asset_id)
            span.set_attribute("target.version_id", str(request.target_version_id))
        return await service.rollback(asset_id, request.target_version_id, request.actor_id, request.reason)


# Branches

@router.post("/assets/{asset_id}/branches", response_model=Branch, status_code=status.HTTP_201_CREATED)
@handle_vcs_errors(operation="create_branch")
async def create_branch(
    asset_id: str,
    request: CreateBranchRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.create_branch(
        asset_id,
        request.name,
        request.base_version_id,
        request.creator_id,
        description=request.description,
        is_protected=request.is_protected,
    )


@router.get("/assets/{asset_id}/branches", response_model=List[Branch])
@handle_vcs_errors(operation="list_branches")
async def list_branches(asset_id: str, service: VersionControlService = Depends(get_service)):
    return await service.list_branches(asset_id)


@router.get("/assets/{asset_id}/branches/{name}", response_model=Branch)
@handle_vcs_errors(operation="get_branch")
async def get_branch(asset_id: str, name: str, service: VersionControlService = Depends(get_service)):
    return await service.get_branch(asset_id, name)


# Merge requests

@router.post(
    "/assets/{asset_id}/merge-requests",
    response_model=MergeRequest,
    status_code=status.HTTP_201_CREATED,
)
@handle_vcs_errors(operation="create_merge_request")
async def create_merge_request(
    asset_id: str,
    request: CreateMergeRequestRequest,
    service: VersionControlService = Depends(get_service),
):
    """
    Open a merge request.

    Conflicts are detected up front; a request with conflicts starts in the
    ``conflict`` status.
    """
    correlation_id = get_correlation_id()
    with create_span("api_create_merge_request", operation_type="api", correlation_id=correlation_id) as span:
        if span:
            span.set_attribute("source.branch", request.source_branch)
            span.set_attribute("target.branch", request.target_branch)
        return await service.create_merge_request(
            asset_id,
            request.source_branch,
            request.target_branch,
            request.title,
            request.author_id,
            reviewers=request.reviewers,
            description=request.description,
        )


@router.get("/assets/{asset_id}/merge-requests", response_model=List[MergeRequest])
@handle_vcs_errors(operation="list_merge_requests")
async def list_merge_requests(
    asset_id: str,
    status_filter: Optional[MergeRequestStatus] = Query(default=None, alias="status"),
    service: VersionControlService = Depends(get_service),
):
    return await service.list_merge_requests(asset_id, status=status_filter)


@router.get("/merge-requests/{merge_request_id}", response_model=MergeRequest)
@handle_vcs_errors(operation="get_merge_request")
async def get_merge_request(merge_request_id: UUID, service: VersionControlService = Depends(get_service)):
    return await service.get_merge_request(merge_request_id)


@router.post("/merge-requests/{merge_request_id}/conflicts/{conflict_id}/resolve", response_model=MergeRequest)
@handle_vcs_errors(operation="resolve_conflict")
async def resolve_conflict(
    merge_request_id: UUID,
    conflict_id: UUID,
    request: ResolveConflictRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.resolve_conflict(
        merge_request_id,
        conflict_id,
        request.strategy,
        request.resolver_id,
        custom_payload=request.custom_payload,
    )


@router.post("/merge-requests/{merge_request_id}/merge", response_model=ModelVersion)
@handle_vcs_errors(operation="merge_branches")
async def merge_branches(
    merge_request_id: UUID,
    request: MergeRequestAction,
    service: VersionControlService = Depends(get_service),
):
    """
    Merge an open merge request.

    Fails with 409 while conflicts are unresolved or required approvals are
    missing.
    """
    correlation_id = get_correlation_id()
    with create_span("api_merge_branches", operation_type="api", correlation_id=correlation_id) as span:
        if span:
            span.set_attribute("merge_request.id", str(merge_request_id))
            span.set_attribute("merge.strategy", request.strategy.value)
        return await service.merge_branches(merge_request_id, request.actor_id, strategy=request.strategy)


@router.post("/merge-requests/{merge_request_id}/reviews", response_model=MergeRequest)
@handle_vcs_errors(operation="submit_review")
async def submit_review(
    merge_request_id: UUID,
    request: ReviewRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.submit_review(
        merge_request_id, request.reviewer_id, request.decision, comment=request.comment
    )


@router.post(
    "/merge-requests/{merge_request_id}/comments",
    response_model=MergeComment,
    status_code=status.HTTP_201_CREATED,
)
@handle_vcs_errors(operation="add_comment")
async def add_comment(
    merge_request_id: UUID,
    request: CommentRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.add_comment(
        merge_request_id, request.user_id, request.content, parent_comment_id=request.parent_comment_id
    )


@router.post("/merge-requests/{merge_request_id}/close", response_model=MergeRequest)
@handle_vcs_errors(operation="close_merge_request")
async def close_merge_request(
    merge_request_id: UUID,
    request: ActorRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.close_merge_request(merge_request_id, request.actor_id)


@router.get("/merge-requests/{merge_request_id}/approvals", response_model=ApprovalCheck)
@handle_vcs_errors(operation="check_approvals")
async def check_approvals(merge_request_id: UUID, service: VersionControlService = Depends(get_service)):
    return await service.check_approvals(merge_request_id)


# Approval workflows

@router.get("/workflows", response_model=List[ApprovalWorkflow])
@handle_vcs_errors(operation="get_approval_history")
async def get_approval_history(
    asset_id: Optional[str] = Query(default=None),
    status_filter: Optional[WorkflowStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: VersionControlService = Depends(get_service),
):
    return await service.get_approval_history(asset_id=asset_id, status=status_filter, limit=limit, offset=offset)


@router.get("/workflows/{workflow_id}", response_model=ApprovalWorkflow)
@handle_vcs_errors(operation="get_approval_workflow")
async def get_approval_workflow(workflow_id: UUID, service: VersionControlService = Depends(get_service)):
    return await service.get_approval_workflow(workflow_id)


@router.post("/workflows/{workflow_id}/decisions", response_model=ApprovalWorkflow)
@handle_vcs_errors(operation="submit_approval")
async def submit_approval(
    workflow_id: UUID,
    request: ApprovalDecisionRequest,
    service: VersionControlService = Depends(get_service),
):
    """Record an approver's decision. Repeating the same decision is a no-op."""
    return await service.submit_approval(
        workflow_id, request.approver_id, request.decision, comment=request.comment
    )


@router.post("/workflows/{workflow_id}/cancel", response_model=ApprovalWorkflow)
@handle_vcs_errors(operation="cancel_workflow")
async def cancel_workflow(
    workflow_id: UUID,
    request: CancelWorkflowRequest,
    service: VersionControlService = Depends(get_service),
):
    return await service.cancel_workflow(workflow_id, request.reason)


@router.post("/maintenance/approval-sweeps", response_model=SweepResponse)
@handle_vcs_errors(operation="approval_sweeps")
async def run_approval_sweeps(service: VersionControlService = Depends(get_service)):
    expired = await service.sweep_expired()
    auto_approved = await service.sweep_auto_approvals()
    return SweepResponse(expired=expired, auto_approved=auto_approved)


# Storage

@router.get("/assets/{asset_id}/storage", response_model=StorageStats)
@handle_vcs_errors(operation="get_storage_stats")
async def get_storage_stats(asset_id: str, service: VersionControlService = Depends(get_service)):
    return await service.get_storage_stats(asset_id)


@router.post("/assets/{asset_id}/cleanup", response_model=CleanupResponse)
@handle_vcs_errors(operation="cleanup_old_versions")
async def cleanup_old_versions(
    asset_id: str,
    request: CleanupRequest,
    service: VersionControlService = Depends(get_service),
):
    """Delete archived versions older than the retention window."""
    deleted = await service.cleanup_old_versions(asset_id, retention_days=request.retention_days)
    logger.info("cleanup_requested", asset_id=asset_id, deleted_versions=deleted)
    return CleanupResponse(asset_id=asset_id, deleted_versions=deleted)
