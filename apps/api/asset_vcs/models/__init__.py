"""
Domain models (pydantic) and persistence tables (SQLAlchemy) for asset
version control.
"""

from .base import Base, metadata
from .version_control import (
    SCENE_FORMAT,
    Approval,
    ApprovalCheck,
    ApprovalStatus,
    ApprovalWorkflow,
    AssetContent,
    BoundingBox,
    Branch,
    ChangeFamily,
    ChangeType,
    Conflict,
    ConflictType,
    DiffStatistics,
    ElementPayload,
    GeometryPayload,
    MaterialElement,
    MaterialPayload,
    MergeComment,
    MergeRequest,
    MergeRequestStatus,
    MergeStrategy,
    MeshElement,
    MetadataPayload,
    ModelChange,
    ModelVersion,
    Resolution,
    ResolutionStrategy,
    Reviewer,
    ReviewerStatus,
    SceneSnapshot,
    StorageStats,
    TextureElement,
    TexturePayload,
    Transform,
    TransformPayload,
    VersionBump,
    VersionComparisonResult,
    VersionDiff,
    VersionMetadata,
    VersionStatus,
    VersionTag,
    VisualDiff,
    WorkflowStatus,
)

__all__ = [
    "Base",
    "metadata",
    "SCENE_FORMAT",
    "Approval",
    "ApprovalCheck",
    "ApprovalStatus",
    "ApprovalWorkflow",
    "AssetContent",
    "BoundingBox",
    "Branch",
    "ChangeFamily",
    "ChangeType",
    "Conflict",
    "ConflictType",
    "DiffStatistics",
    "ElementPayload",
    "GeometryPayload",
    "MaterialElement",
    "MaterialPayload",
    "MergeComment",
    "MergeRequest",
    "MergeRequestStatus",
    "MergeStrategy",
    "MeshElement",
    "MetadataPayload",
    "ModelChange",
    "ModelVersion",
    "Resolution",
    "ResolutionStrategy",
    "Reviewer",
    "ReviewerStatus",
    "SceneSnapshot",
    "StorageStats",
    "TextureElement",
    "TexturePayload",
    "Transform",
    "TransformPayload",
    "VersionBump",
    "VersionComparisonResult",
    "VersionDiff",
    "VersionMetadata",
    "VersionStatus",
    "VersionTag",
    "VisualDiff",
    "WorkflowStatus",
]
