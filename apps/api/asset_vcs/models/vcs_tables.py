"""
SQLAlchemy tables persisting versions, branches, merge requests, approval
workflows and tags.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin


class VersionRow(Base, TimestampMixin):
    __tablename__ = "versions"
    __table_args__ = (
        UniqueConstraint("asset_id", "branch_name", "version"),
        Index("ix_versions_asset_created", "asset_id", "created_at"),
        Index("ix_versions_content_hash", "content_hash"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False, comment="External asset id")
    version: Mapped[str] = mapped_column(String(64), nullable=False, comment="Semantic version")
    parent_version_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("versions.id", ondelete="SET NULL"), nullable=True
    )
    merge_parent_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("versions.id", ondelete="SET NULL"), nullable=True,
        comment="Second parent of merge commits",
    )
    branch_name: Mapped[str] = mapped_column(String(255), nullable=False)
    commit_message: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    author_id: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    storage_path: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    scene_path: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    # Structural metadata
    triangle_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vertex_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    material_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    texture_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    format: Mapped[str] = mapped_column(String(128), nullable=False)
    bbox_min_x: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bbox_min_y: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bbox_min_z: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bbox_max_x: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bbox_max_y: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bbox_max_z: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class BranchRow(Base, TimestampMixin):
    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("asset_id", "name"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_protected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    head_version_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("versions.id"), nullable=False, comment="Guarded by compare-and-swap"
    )
    base_version_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("versions.id"), nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    merge_request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    contributors: Mapped[List["BranchContributorRow"]] = relationship(
        back_populates="branch",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BranchContributorRow.user_id",
    )


class BranchContributorRow(Base):
    __tablename__ = "branch_contributors"

    branch_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    branch: Mapped[BranchRow] = relationship(back_populates="contributors")


class MergeRequestRow(Base, TimestampMixin):
    __tablename__ = "merge_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_branch_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("branches.id"), nullable=False)
    target_branch_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("branches.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    author_id: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    merged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    merged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    merged_version_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    approval_workflow_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    reviewers: Mapped[List["ReviewerRow"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin", order_by="ReviewerRow.position"
    )
    conflicts: Mapped[List["ConflictRow"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin", order_by="ConflictRow.position"
    )
    comments: Mapped[List["CommentRow"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin", order_by="CommentRow.created_at"
    )


class ReviewerRow(Base):
    __tablename__ = "merge_request_reviewers"
    __table_args__ = (UniqueConstraint("merge_request_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merge_request_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("merge_requests.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, comment="Reviewer order")
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ConflictRow(Base):
    __tablename__ = "merge_conflicts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    merge_request_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("merge_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    source_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    target_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    resolution_strategy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    custom_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class CommentRow(Base, TimestampMixin):
    __tablename__ = "merge_request_comments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    merge_request_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("merge_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_comment_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)


class ApprovalWorkflowRow(Base, TimestampMixin):
    __tablename__ = "approval_workflows"
    __table_args__ = (
        Index("ix_approval_workflows_status_deadline", "status", "deadline"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    asset_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("versions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    merge_request_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    min_approvers: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_approve_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    approvals: Mapped[List["ApprovalRow"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin", order_by="ApprovalRow.position"
    )


class ApprovalRow(Base):
    __tablename__ = "approvals"
    __table_args__ = (UniqueConstraint("workflow_id", "approver_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class VersionTagRow(Base, TimestampMixin):
    __tablename__ = "version_tags"
    __table_args__ = (UniqueConstraint("version_id", "name"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("versions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    is_release: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
