"""
SQLAlchemy implementation of the version store.

Branch heads are advanced with a conditional ``UPDATE ... WHERE
head_version_id = :expected`` and the affected row count decides whether the
compare-and-swap won. Workflow updates use the same technique on
``revision``. Each store call runs in its own transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional
from uuid import UUID

import structlog
from pydantic import TypeAdapter
from sqlalchemy import create_engine, event, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.cancellation import Deadline, check_deadline
from ..core.exceptions import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
    VersionControlError,
)
from ..models.base import Base
from ..models.vcs_tables import (
    ApprovalRow,
    ApprovalWorkflowRow,
    BranchContributorRow,
    BranchRow,
    CommentRow,
    ConflictRow,
    MergeRequestRow,
    ReviewerRow,
    VersionRow,
    VersionTagRow,
)
from ..models.version_control import (
    Approval,
    ApprovalStatus,
    ApprovalWorkflow,
    BoundingBox,
    Branch,
    Conflict,
    ConflictType,
    ElementPayload,
    MergeComment,
    MergeRequest,
    MergeRequestStatus,
    ModelVersion,
    Resolution,
    ResolutionStrategy,
    Reviewer,
    ReviewerStatus,
    VersionMetadata,
    VersionStatus,
    VersionTag,
    WorkflowStatus,
)
from .version_store import VersionStore

logger = structlog.get_logger(__name__)

_payload_adapter: TypeAdapter = TypeAdapter(ElementPayload)


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine suitable for the store; in-memory SQLite shares one connection."""
    kwargs = {"echo": echo, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite+pysqlite://") or ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to UTC before writing; SQLite drops offsets."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Datetimes read back from SQLite are naive UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _dump_payload(payload) -> Optional[dict]:
    return None if payload is None else _payload_adapter.dump_python(payload, mode="json")


def _load_payload(data: Optional[dict]):
    return None if data is None else _payload_adapter.validate_python(data)


# ----------------------------------------------------------------------
# Row conversion
# ----------------------------------------------------------------------

def _version_row(version: ModelVersion) -> VersionRow:
    bbox = version.metadata.bounding_box
    return VersionRow(
        id=version.id,
        asset_id=version.asset_id,
        version=version.version,
        parent_version_id=version.parent_version_id,
        merge_parent_id=version.merge_parent_id,
        branch_name=version.branch_name,
        commit_message=version.commit_message,
        content_hash=version.content_hash,
        author_id=version.author_id,
        size_bytes=version.size_bytes,
        status=version.status.value,
        tags=list(version.tags),
        storage_path=version.storage_path,
        scene_path=version.scene_path,
        triangle_count=version.metadata.triangle_count,
        vertex_count=version.metadata.vertex_count,
        material_count=version.metadata.material_count,
        texture_count=version.metadata.texture_count,
        format=version.metadata.format,
        bbox_min_x=bbox.min[0],
        bbox_min_y=bbox.min[1],
        bbox_min_z=bbox.min[2],
        bbox_max_x=bbox.max[0],
        bbox_max_y=bbox.max[1],
        bbox_max_z=bbox.max[2],
        created_at=_utc(version.created_at),
    )


def _version_model(row: VersionRow) -> ModelVersion:
    return ModelVersion(
        id=row.id,
        asset_id=row.asset_id,
        version=row.version,
        parent_version_id=row.parent_version_id,
        merge_parent_id=row.merge_parent_id,
        branch_name=row.branch_name,
        commit_message=row.commit_message,
        content_hash=row.content_hash,
        author_id=row.author_id,
        size_bytes=row.size_bytes,
        metadata=VersionMetadata(
            triangle_count=row.triangle_count,
            vertex_count=row.vertex_count,
            material_count=row.material_count,
            texture_count=row.texture_count,
            bounding_box=BoundingBox(
                min=(row.bbox_min_x, row.bbox_min_y, row.bbox_min_z),
                max=(row.bbox_max_x, row.bbox_max_y, row.bbox_max_z),
            ),
            format=row.format,
        ),
        status=VersionStatus(row.status),
        tags=list(row.tags or []),
        created_at=_aware(row.created_at),
        storage_path=row.storage_path,
        scene_path=row.scene_path,
    )


def _branch_row(branch: Branch) -> BranchRow:
    return BranchRow(
        id=branch.id,
        asset_id=branch.asset_id,
        name=branch.name,
        description=branch.description,
        is_protected=branch.is_protected,
        is_default=branch.is_default,
        head_version_id=branch.head_version_id,
        base_version_id=branch.base_version_id,
        created_by=branch.created_by,
        created_at=_utc(branch.created_at),
        updated_at=_utc(branch.updated_at),
        last_activity_at=_utc(branch.last_activity_at),
        merge_request_count=branch.merge_request_count,
        contributors=[BranchContributorRow(user_id=u) for u in sorted(set(branch.contributors))],
    )


def _branch_model(row: BranchRow) -> Branch:
    return Branch(
        id=row.id,
        asset_id=row.asset_id,
        name=row.name,
        description=row.description,
        is_protected=row.is_protected,
        is_default=row.is_default,
        head_version_id=row.head_version_id,
        base_version_id=row.base_version_id,
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        contributors=[c.user_id for c in row.contributors],
        last_activity_at=_aware(row.last_activity_at),
        merge_request_count=row.merge_request_count,
    )


def _apply_merge_request(row: MergeRequestRow, mr: MergeRequest) -> None:
    """Copy ``mr`` onto ``row``, updating child rows in place by their keys."""
    row.asset_id = mr.asset_id
    row.source_branch_id = mr.source_branch_id
    row.target_branch_id = mr.target_branch_id
    row.title = mr.title
    row.description = mr.description
    row.status = mr.status.value
    row.author_id = mr.author_id
    row.created_at = _utc(mr.created_at)
    row.updated_at = _utc(mr.updated_at)
    row.merged_at = _utc(mr.merged_at)
    row.merged_by = mr.merged_by
    row.merged_version_id = mr.merged_version_id
    row.closed_by = mr.closed_by
    row.approval_workflow_id = mr.approval_workflow_id

    existing_reviewers = {r.user_id: r for r in row.reviewers}
    reviewers = []
    for position, reviewer in enumerate(mr.reviewers):
        reviewer_row = existing_reviewers.pop(reviewer.user_id, None) or ReviewerRow(user_id=reviewer.user_id)
        reviewer_row.position = position
        reviewer_row.status = reviewer.status.value
        reviewer_row.reviewed_at = _utc(reviewer.reviewed_at)
        reviewer_row.comment = reviewer.comment
        reviewers.append(reviewer_row)
    row.reviewers = reviewers

    existing_conflicts = {c.id: c for c in row.conflicts}
    conflicts = []
    for position, conflict in enumerate(mr.conflicts):
        conflict_row = existing_conflicts.pop(conflict.id, None) or ConflictRow(id=conflict.id)
        resolution = conflict.resolution
        conflict_row.position = position
        conflict_row.type = conflict.type.value
        conflict_row.path = conflict.path
        conflict_row.description = conflict.description
        conflict_row.source_value = _dump_payload(conflict.source_value)
        conflict_row.target_value = _dump_payload(conflict.target_value)
        conflict_row.resolution_strategy = resolution.strategy.value if resolution else None
        conflict_row.resolved_by = resolution.resolved_by if resolution else None
        conflict_row.resolved_at = _utc(resolution.resolved_at) if resolution else None
        conflict_row.custom_payload = _dump_payload(resolution.custom_payload) if resolution else None
        conflicts.append(conflict_row)
    row.conflicts = conflicts

    existing_comments = {c.id: c for c in row.comments}
    comments = []
    for comment in mr.comments:
        comment_row = existing_comments.pop(comment.id, None) or CommentRow(id=comment.id)
        comment_row.user_id = comment.user_id
        comment_row.content = comment.content
        comment_row.created_at = _utc(comment.created_at)
        comment_row.updated_at = _utc(comment.updated_at)
        comment_row.is_resolved = comment.is_resolved
        comment_row.parent_comment_id = comment.parent_comment_id
        comments.append(comment_row)
    row.comments = comments


def _merge_request_model(row: MergeRequestRow) -> MergeRequest:
    conflicts = []
    for c in row.conflicts:
        resolution = None
        if c.resolution_strategy is not None:
            resolution = Resolution(
                strategy=ResolutionStrategy(c.resolution_strategy),
                resolved_by=c.resolved_by,
                resolved_at=_aware(c.resolved_at),
                custom_payload=_load_payload(c.custom_payload),
            )
        conflicts.append(Conflict(
            id=c.id,
            type=ConflictType(c.type),
            path=c.path,
            description=c.description,
            source_value=_load_payload(c.source_value),
            target_value=_load_payload(c.target_value),
            resolution=resolution,
        ))
    return MergeRequest(
        id=row.id,
        asset_id=row.asset_id,
        source_branch_id=row.source_branch_id,
        target_branch_id=row.target_branch_id,
        title=row.title,
        description=row.description,
        status=MergeRequestStatus(row.status),
        author_id=row.author_id,
        reviewers=[
            Reviewer(
                user_id=r.user_id,
                status=ReviewerStatus(r.status),
                reviewed_at=_aware(r.reviewed_at),
                comment=r.comment,
            )
            for r in row.reviewers
        ],
        conflicts=conflicts,
        comments=[
            MergeComment(
                id=c.id,
                user_id=c.user_id,
                content=c.content,
                created_at=_aware(c.created_at),
                updated_at=_aware(c.updated_at),
                is_resolved=c.is_resolved,
                parent_comment_id=c.parent_comment_id,
            )
            for c in row.comments
        ],
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        merged_at=_aware(row.merged_at),
        merged_by=row.merged_by,
        merged_version_id=row.merged_version_id,
        closed_by=row.closed_by,
        approval_workflow_id=row.approval_workflow_id,
    )


def _apply_approvals(row: ApprovalWorkflowRow, workflow: ApprovalWorkflow) -> None:
    existing = {a.approver_id: a for a in row.approvals}
    approvals = []
    for position, approval in enumerate(workflow.approvals):
        approval_row = existing.pop(approval.approver_id, None) or ApprovalRow(approver_id=approval.approver_id)
        approval_row.position = position
        approval_row.status = approval.status.value
        approval_row.comment = approval.comment
        approval_row.decided_at = _utc(approval.decided_at)
        approvals.append(approval_row)
    row.approvals = approvals


def _workflow_model(row: ApprovalWorkflowRow) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        id=row.id,
        asset_id=row.asset_id,
        version_id=row.version_id,
        merge_request_id=row.merge_request_id,
        approvals=[
            Approval(
                approver_id=a.approver_id,
                status=ApprovalStatus(a.status),
                comment=a.comment,
                decided_at=_aware(a.decided_at),
            )
            for a in row.approvals
        ],
        status=WorkflowStatus(row.status),
        min_approvers=row.min_approvers,
        created_at=_aware(row.created_at),
        deadline=_aware(row.deadline),
        auto_approve_at=_aware(row.auto_approve_at),
        completed_at=_aware(row.completed_at),
        cancel_reason=row.cancel_reason,
        revision=row.revision,
    )


def _tag_model(row: VersionTagRow) -> VersionTag:
    return VersionTag(
        id=row.id,
        name=row.name,
        version_id=row.version_id,
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        is_release=row.is_release,
        description=row.description,
    )


class SqlVersionStore(VersionStore):
    """Version store backed by a relational database through SQLAlchemy."""

    def __init__(self, engine: Engine, create_schema: bool = True):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = True) -> "SqlVersionStore":
        return cls(create_store_engine(database_url), create_schema=create_schema)

    @contextmanager
    def _transaction(self, operation: str, deadline: Optional[Deadline]) -> Iterator[Session]:
        check_deadline(deadline, operation)
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except VersionControlError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(
                f"{operation} violates a uniqueness constraint",
                details={"operation": operation, "error": str(e.orig)},
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("version_store_error", operation=operation, error=str(e), error_type=type(e).__name__)
            raise StoreError(f"Version store failed during {operation}: {e}", details={"operation": operation}) from e
        finally:
            session.close()

    # Versions

    @staticmethod
    def _version_or_404(session: Session, version_id: UUID) -> VersionRow:
        row = session.get(VersionRow, version_id)
        if row is None:
            raise NotFoundError(f"Version {version_id} not found", details={"version_id": str(version_id)})
        return row

    @staticmethod
    def _validate_new_version(session: Session, version: ModelVersion) -> None:
        if session.get(VersionRow, version.id) is not None:
            raise AlreadyExistsError(f"Version {version.id} already exists")
        for parent_id in version.parent_ids:
            parent = session.get(VersionRow, parent_id)
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
        duplicate = session.scalar(
            select(VersionRow.id).where(
                VersionRow.asset_id == version.asset_id,
                VersionRow.branch_name == version.branch_name,
                VersionRow.version == version.version,
            )
        )
        if duplicate is not None:
            raise AlreadyExistsError(
                f"Version {version.version} already exists on branch {version.branch_name}",
                details={"asset_id": version.asset_id, "version": version.version},
            )

    def create_version(self, version: ModelVersion, deadline: Optional[Deadline] = None) -> ModelVersion:
        with self._transaction("create_version", deadline) as session:
            self._validate_new_version(session, version)
            session.add(_version_row(version))
        return version.model_copy(deep=True)

    @staticmethod
    def _find_branch(session: Session, asset_id: str, name: str) -> Optional[BranchRow]:
        return session.scalar(select(BranchRow).where(BranchRow.asset_id == asset_id, BranchRow.name == name))

    @staticmethod
    def _record_contributor(session: Session, branch_id: UUID, user_id: str) -> None:
        if session.get(BranchContributorRow, (branch_id, user_id)) is None:
            session.add(BranchContributorRow(branch_id=branch_id, user_id=user_id))

    def commit_version(
        self,
        version: ModelVersion,
        expected_head: Optional[UUID],
        new_branch: Optional[Branch] = None,
        deadline: Optional[Deadline] = None,
    ) -> Branch:
        with self._transaction("commit_version", deadline) as session:
            if new_branch is not None:
                if self._find_branch(session, new_branch.asset_id, new_branch.name) is not None:
                    raise ConcurrencyConflictError(
                        f"Branch {new_branch.name} was created concurrently",
                        details={"asset_id": new_branch.asset_id, "branch": new_branch.name},
                    )
                self._validate_new_version(session, version)
                session.add(_version_row(version))
                session.flush()

                branch = new_branch.model_copy(deep=True)
                branch.head_version_id = version.id
                branch.base_version_id = version.id
                branch.record_activity(version.author_id, version.created_at)
                session.add(_branch_row(branch))
                try:
                    session.flush()
                except IntegrityError as e:
                    raise ConcurrencyConflictError(
                        f"Branch {new_branch.name} was created concurrently",
                        details={"asset_id": new_branch.asset_id, "branch": new_branch.name},
                    ) from e
                branch_id = branch.id
            else:
                branch_row = self._find_branch(session, version.asset_id, version.branch_name)
                if branch_row is None:
                    raise NotFoundError(
                        f"Branch {version.branch_name} not found",
                        details={"asset_id": version.asset_id, "branch": version.branch_name},
                    )
                branch_id = branch_row.id
                if branch_row.head_version_id != expected_head:
                    raise ConcurrencyConflictError(
                        f"Head of branch {branch_row.name} moved",
                        details={
                            "branch_id": str(branch_id),
                            "expected_head": str(expected_head),
                            "actual_head": str(branch_row.head_version_id),
                        },
                    )
                self._validate_new_version(session, version)
                session.add(_version_row(version))
                try:
                    session.flush()
                except IntegrityError as e:
                    # A concurrent commit on the same head took this version number
                    raise ConcurrencyConflictError(
                        f"Version {version.version} was committed concurrently on {version.branch_name}",
                        details={
                            "branch_id": str(branch_id),
                            "expected_head": str(expected_head),
                            "version": version.version,
                        },
                    ) from e

                activity_at = _utc(version.created_at)
                result = session.execute(
                    update(BranchRow)
                    .where(BranchRow.id == branch_id, BranchRow.head_version_id == expected_head)
                    .values(head_version_id=version.id, updated_at=activity_at, last_activity_at=activity_at)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflictError(
                        f"Head of branch {version.branch_name} moved",
                        details={"branch_id": str(branch_id), "expected_head": str(expected_head)},
                    )
                self._record_contributor(session, branch_id, version.author_id)

            session.flush()
            session.expire_all()
            stored = _branch_model(session.get(BranchRow, branch_id))

        logger.debug(
            "version_committed",
            version_id=str(version.id),
            branch=version.branch_name,
            head=str(stored.head_version_id),
        )
        return stored

    def get_version(self, version_id: UUID, deadline: Optional[Deadline] = None) -> ModelVersion:
        with self._transaction("get_version", deadline) as session:
            return _version_model(self._version_or_404(session, version_id))

    def list_versions(
        self,
        asset_id: str,
        branch_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[ModelVersion]:
        with self._transaction("list_versions", deadline) as session:
            stmt = select(VersionRow).where(VersionRow.asset_id == asset_id)
            if branch_name is not None:
                stmt = stmt.where(VersionRow.branch_name == branch_name)
            stmt = stmt.order_by(VersionRow.created_at.desc(), VersionRow.id.desc()).limit(limit).offset(offset)
            return [_version_model(row) for row in session.scalars(stmt)]

    def count_versions(self, asset_id: str, deadline: Optional[Deadline] = None) -> int:
        with self._transaction("count_versions", deadline) as session:
            return session.scalar(
                select(func.count()).select_from(VersionRow).where(VersionRow.asset_id == asset_id)
            )

    def update_version_status(
        self, version_id: UUID, status: VersionStatus, deadline: Optional[Deadline] = None
    ) -> ModelVersion:
        with self._transaction("update_version_status", deadline) as session:
            row = self._version_or_404(session, version_id)
            row.status = VersionStatus(status).value
            session.flush()
            return _version_model(row)

    def delete_version(self, version_id: UUID, deadline: Optional[Deadline] = None) -> None:
        with self._transaction("delete_version", deadline) as session:
            row = self._version_or_404(session, version_id)
            referencing = session.scalar(
                select(BranchRow).where(
                    or_(BranchRow.head_version_id == version_id, BranchRow.base_version_id == version_id)
                )
            )
            if referencing is not None:
                raise ValidationError(
                    f"Version {version_id} is referenced by branch {referencing.name}",
                    details={"branch_id": str(referencing.id)},
                )
            session.execute(
                update(VersionRow)
                .where(VersionRow.parent_version_id == version_id)
                .values(parent_version_id=None)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                update(VersionRow)
                .where(VersionRow.merge_parent_id == version_id)
                .values(merge_parent_id=None)
                .execution_options(synchronize_session=False)
            )
            for workflow in session.scalars(
                select(ApprovalWorkflowRow).where(ApprovalWorkflowRow.version_id == version_id)
            ):
                session.delete(workflow)
            for tag in session.scalars(select(VersionTagRow).where(VersionTagRow.version_id == version_id)):
                session.delete(tag)
            session.delete(row)

    def is_blob_referenced(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        with self._transaction("is_blob_referenced", deadline) as session:
            found = session.scalar(
                select(VersionRow.id)
                .where(or_(VersionRow.storage_path == path, VersionRow.scene_path == path))
                .limit(1)
            )
            return found is not None

    # Branches

    @staticmethod
    def _require_version_of_asset(session: Session, version_id: UUID, asset_id: str) -> None:
        row = session.get(VersionRow, version_id)
        if row is None or row.asset_id != asset_id:
            raise ValidationError(
                f"Version {version_id} is not a version of asset {asset_id}",
                details={"version_id": str(version_id), "asset_id": asset_id},
            )

    def create_branch(self, branch: Branch, deadline: Optional[Deadline] = None) -> Branch:
        with self._transaction("create_branch", deadline) as session:
            if self._find_branch(session, branch.asset_id, branch.name) is not None:
                raise AlreadyExistsError(
                    f"Branch {branch.name} already exists",
                    details={"asset_id": branch.asset_id, "branch": branch.name},
                )
            self._require_version_of_asset(session, branch.head_version_id, branch.asset_id)
            self._require_version_of_asset(session, branch.base_version_id, branch.asset_id)
            session.add(_branch_row(branch))
        return branch.model_copy(deep=True)

    def get_branch(self, asset_id: str, name: str, deadline: Optional[Deadline] = None) -> Branch:
        with self._transaction("get_branch", deadline) as session:
            row = self._find_branch(session, asset_id, name)
            if row is None:
                raise NotFoundError(f"Branch {name} not found", details={"asset_id": asset_id, "branch": name})
            return _branch_model(row)

    def get_branch_by_id(self, branch_id: UUID, deadline: Optional[Deadline] = None) -> Branch:
        with self._transaction("get_branch_by_id", deadline) as session:
            row = session.get(BranchRow, branch_id)
            if row is None:
                raise NotFoundError(f"Branch {branch_id} not found", details={"branch_id": str(branch_id)})
            return _branch_model(row)

    def list_branches(self, asset_id: str, deadline: Optional[Deadline] = None) -> List[Branch]:
        with self._transaction("list_branches", deadline) as session:
            rows = session.scalars(
                select(BranchRow)
                .where(BranchRow.asset_id == asset_id)
                .order_by(BranchRow.is_default.desc(), BranchRow.name)
            )
            return [_branch_model(row) for row in rows]

    def cas_update_branch_head(
        self,
        branch_id: UUID,
        expected_head: UUID,
        new_head: UUID,
        deadline: Optional[Deadline] = None,
    ) -> Branch:
        with self._transaction("cas_update_branch_head", deadline) as session:
            branch_row = session.get(BranchRow, branch_id)
            if branch_row is None:
                raise NotFoundError(f"Branch {branch_id} not found", details={"branch_id": str(branch_id)})
            if branch_row.head_version_id != expected_head:
                raise ConcurrencyConflictError(
                    f"Head of branch {branch_row.name} moved",
                    details={
                        "branch_id": str(branch_id),
                        "expected_head": str(expected_head),
                        "actual_head": str(branch_row.head_version_id),
                    },
                )
            self._require_version_of_asset(session, new_head, branch_row.asset_id)
            new_head_row = session.get(VersionRow, new_head)
            result = session.execute(
                update(BranchRow)
                .where(BranchRow.id == branch_id, BranchRow.head_version_id == expected_head)
                .values(head_version_id=new_head, updated_at=new_head_row.created_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflictError(
                    f"Head of branch {branch_row.name} moved",
                    details={
                        "branch_id": str(branch_id),
                        "expected_head": str(expected_head),
                        "actual_head": str(branch_row.head_version_id),
                    },
                )
            session.expire_all()
            return _branch_model(session.get(BranchRow, branch_id))

    # Merge requests

    @staticmethod
    def _merge_request_or_404(session: Session, merge_request_id: UUID) -> MergeRequestRow:
        row = session.get(MergeRequestRow, merge_request_id)
        if row is None:
            raise NotFoundError(
                f"Merge request {merge_request_id} not found",
                details={"merge_request_id": str(merge_request_id)},
            )
        return row

    def create_merge_request(self, merge_request: MergeRequest, deadline: Optional[Deadline] = None) -> MergeRequest:
        with self._transaction("create_merge_request", deadline) as session:
            if session.get(MergeRequestRow, merge_request.id) is not None:
                raise AlreadyExistsError(f"Merge request {merge_request.id} already exists")
            for branch_id in (merge_request.source_branch_id, merge_request.target_branch_id):
                if session.get(BranchRow, branch_id) is None:
                    raise NotFoundError(f"Branch {branch_id} not found", details={"branch_id": str(branch_id)})
            row = MergeRequestRow(id=merge_request.id)
            _apply_merge_request(row, merge_request)
            session.add(row)
            session.execute(
                update(BranchRow)
                .where(BranchRow.id == merge_request.source_branch_id)
                .values(merge_request_count=BranchRow.merge_request_count + 1)
                .execution_options(synchronize_session=False)
            )
        return merge_request.model_copy(deep=True)

    def get_merge_request(self, merge_request_id: UUID, deadline: Optional[Deadline] = None) -> MergeRequest:
        with self._transaction("get_merge_request", deadline) as session:
            return _merge_request_model(self._merge_request_or_404(session, merge_request_id))

    def update_merge_request(self, merge_request: MergeRequest, deadline: Optional[Deadline] = None) -> MergeRequest:
        with self._transaction("update_merge_request", deadline) as session:
            row = self._merge_request_or_404(session, merge_request.id)
            _apply_merge_request(row, merge_request)
            session.flush()
            return _merge_request_model(row)

    def list_merge_requests(
        self,
        asset_id: str,
        status: Optional[MergeRequestStatus] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[MergeRequest]:
        with self._transaction("list_merge_requests", deadline) as session:
            stmt = select(MergeRequestRow).where(MergeRequestRow.asset_id == asset_id)
            if status is not None:
                stmt = stmt.where(MergeRequestRow.status == MergeRequestStatus(status).value)
            stmt = stmt.order_by(MergeRequestRow.created_at.desc(), MergeRequestRow.id.desc())
            return [_merge_request_model(row) for row in session.scalars(stmt)]

    # Approval workflows

    def create_approval_workflow(self, workflow: ApprovalWorkflow, deadline: Optional[Deadline] = None) -> ApprovalWorkflow:
        with self._transaction("create_approval_workflow", deadline) as session:
            if session.get(ApprovalWorkflowRow, workflow.id) is not None:
                raise AlreadyExistsError(f"Approval workflow {workflow.id} already exists")
            self._version_or_404(session, workflow.version_id)
            row = ApprovalWorkflowRow(
                id=workflow.id,
                asset_id=workflow.asset_id,
                version_id=workflow.version_id,
                merge_request_id=workflow.merge_request_id,
                status=workflow.status.value,
                min_approvers=workflow.min_approvers,
                created_at=_utc(workflow.created_at),
                deadline=_utc(workflow.deadline),
                auto_approve_at=_utc(workflow.auto_approve_at),
                completed_at=_utc(workflow.completed_at),
                cancel_reason=workflow.cancel_reason,
                revision=workflow.revision,
            )
            _apply_approvals(row, workflow)
            session.add(row)
        return workflow.model_copy(deep=True)

    def get_approval_workflow(self, workflow_id: UUID, deadline: Optional[Deadline] = None) -> ApprovalWorkflow:
        with self._transaction("get_approval_workflow", deadline) as session:
            row = session.get(ApprovalWorkflowRow, workflow_id)
            if row is None:
                raise NotFoundError(
                    f"Approval workflow {workflow_id} not found",
                    details={"workflow_id": str(workflow_id)},
                )
            return _workflow_model(row)

    def update_approval_workflow(
        self,
        workflow: ApprovalWorkflow,
        expected_revision: int,
        deadline: Optional[Deadline] = None,
    ) -> ApprovalWorkflow:
        with self._transaction("update_approval_workflow", deadline) as session:
            result = session.execute(
                update(ApprovalWorkflowRow)
                .where(ApprovalWorkflowRow.id == workflow.id, ApprovalWorkflowRow.revision == expected_revision)
                .values(
                    revision=expected_revision + 1,
                    status=workflow.status.value,
                    min_approvers=workflow.min_approvers,
                    deadline=_utc(workflow.deadline),
                    auto_approve_at=_utc(workflow.auto_approve_at),
                    completed_at=_utc(workflow.completed_at),
                    cancel_reason=workflow.cancel_reason,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = session.get(ApprovalWorkflowRow, workflow.id)
                if current is None:
                    raise NotFoundError(
                        f"Approval workflow {workflow.id} not found",
                        details={"workflow_id": str(workflow.id)},
                    )
                raise ConcurrencyConflictError(
                    f"Approval workflow {workflow.id} was modified concurrently",
                    details={"expected_revision": expected_revision, "actual_revision": current.revision},
                )
            row = session.get(ApprovalWorkflowRow, workflow.id)
            _apply_approvals(row, workflow)
            session.flush()
            session.expire_all()
            return _workflow_model(session.get(ApprovalWorkflowRow, workflow.id))

    def list_approval_workflows(
        self,
        asset_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        limit: int = 50,
        offset: int = 0,
        deadline: Optional[Deadline] = None,
    ) -> List[ApprovalWorkflow]:
        with self._transaction("list_approval_workflows", deadline) as session:
            stmt = select(ApprovalWorkflowRow)
            if asset_id is not None:
                stmt = stmt.where(ApprovalWorkflowRow.asset_id == asset_id)
            if status is not None:
                stmt = stmt.where(ApprovalWorkflowRow.status == WorkflowStatus(status).value)
            stmt = (
                stmt.order_by(ApprovalWorkflowRow.created_at.desc(), ApprovalWorkflowRow.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_workflow_model(row) for row in session.scalars(stmt)]

    def find_pending_workflows(
        self,
        deadline_before: Optional[datetime] = None,
        auto_approve_before: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ApprovalWorkflow]:
        conditions = []
        if deadline_before is not None:
            conditions.append(ApprovalWorkflowRow.deadline <= _utc(deadline_before))
        if auto_approve_before is not None:
            conditions.append(ApprovalWorkflowRow.auto_approve_at <= _utc(auto_approve_before))
        if not conditions:
            return []
        with self._transaction("find_pending_workflows", deadline) as session:
            rows = session.scalars(
                select(ApprovalWorkflowRow)
                .where(ApprovalWorkflowRow.status == WorkflowStatus.PENDING.value, or_(*conditions))
                .order_by(ApprovalWorkflowRow.created_at, ApprovalWorkflowRow.id)
            )
            return [_workflow_model(row) for row in rows]

    # Tags

    def create_tag(self, tag: VersionTag, deadline: Optional[Deadline] = None) -> VersionTag:
        with self._transaction("create_tag", deadline) as session:
            self._version_or_404(session, tag.version_id)
            duplicate = session.scalar(
                select(VersionTagRow.id).where(
                    VersionTagRow.version_id == tag.version_id, VersionTagRow.name == tag.name
                )
            )
            if duplicate is not None:
                raise AlreadyExistsError(
                    f"Tag {tag.name} already exists on version {tag.version_id}",
                    details={"tag": tag.name, "version_id": str(tag.version_id)},
                )
            session.add(VersionTagRow(
                id=tag.id,
                name=tag.name,
                version_id=tag.version_id,
                created_by=tag.created_by,
                created_at=_utc(tag.created_at),
                is_release=tag.is_release,
                description=tag.description,
            ))
        return tag.model_copy(deep=True)

    def list_tags(self, version_id: UUID, deadline: Optional[Deadline] = None) -> List[VersionTag]:
        with self._transaction("list_tags", deadline) as session:
            rows = session.scalars(
                select(VersionTagRow)
                .where(VersionTagRow.version_id == version_id)
                .order_by(VersionTagRow.created_at, VersionTagRow.name)
            )
            return [_tag_model(row) for row in rows]
