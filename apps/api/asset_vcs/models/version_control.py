"""
Pydantic models for the asset version control system.

Covers the scene snapshot a version captures (meshes, materials, textures,
per-mesh transforms and scene properties), the version DAG, branches, merge
requests with their conflicts, and approval workflows.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, ClassVar, Dict, List, Literal, Optional, Tuple, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

SCENE_FORMAT = "application/vnd.asset-scene+json"

Vec3 = Tuple[float, float, float]
Vec4 = Tuple[float, float, float, float]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class VersionStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class MergeRequestStatus(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"
    CONFLICT = "conflict"


class ReviewerStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMMENTED = "commented"


class ConflictType(str, Enum):
    GEOMETRY_OVERLAP = "geometry_overlap"
    MATERIAL_CONFLICT = "material_conflict"
    TEXTURE_CONFLICT = "texture_conflict"
    METADATA_CONFLICT = "metadata_conflict"
    ANNOTATION_CONFLICT = "annotation_conflict"
    TRANSFORM_CONFLICT = "transform_conflict"


class ResolutionStrategy(str, Enum):
    USE_SOURCE = "use_source"
    USE_TARGET = "use_target"
    MANUAL = "manual"
    MERGE = "merge"


class MergeStrategy(str, Enum):
    MERGE = "merge"  # Three-way merge commit
    SQUASH = "squash"  # Source content, single parent
    REBASE = "rebase"  # Merge commit labelled as rebase


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VersionBump(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class ChangeType(str, Enum):
    GEOMETRY_ADDED = "geometry_added"
    GEOMETRY_REMOVED = "geometry_removed"
    GEOMETRY_MODIFIED = "geometry_modified"
    MATERIAL_ADDED = "material_added"
    MATERIAL_REMOVED = "material_removed"
    MATERIAL_MODIFIED = "material_modified"
    TEXTURE_ADDED = "texture_added"
    TEXTURE_REMOVED = "texture_removed"
    TEXTURE_MODIFIED = "texture_modified"
    METADATA_CHANGED = "metadata_changed"
    TRANSFORM_CHANGED = "transform_changed"


class ChangeFamily(str, Enum):
    """Element family a change or conflict belongs to."""
    GEOMETRY = "geometry"
    MATERIAL = "material"
    TEXTURE = "texture"
    TRANSFORM = "transform"
    METADATA = "metadata"


CHANGE_FAMILY: Dict[ChangeType, ChangeFamily] = {
    ChangeType.GEOMETRY_ADDED: ChangeFamily.GEOMETRY,
    ChangeType.GEOMETRY_REMOVED: ChangeFamily.GEOMETRY,
    ChangeType.GEOMETRY_MODIFIED: ChangeFamily.GEOMETRY,
    ChangeType.MATERIAL_ADDED: ChangeFamily.MATERIAL,
    ChangeType.MATERIAL_REMOVED: ChangeFamily.MATERIAL,
    ChangeType.MATERIAL_MODIFIED: ChangeFamily.MATERIAL,
    ChangeType.TEXTURE_ADDED: ChangeFamily.TEXTURE,
    ChangeType.TEXTURE_REMOVED: ChangeFamily.TEXTURE,
    ChangeType.TEXTURE_MODIFIED: ChangeFamily.TEXTURE,
    ChangeType.METADATA_CHANGED: ChangeFamily.METADATA,
    ChangeType.TRANSFORM_CHANGED: ChangeFamily.TRANSFORM,
}

FAMILY_CONFLICT_TYPE: Dict[ChangeFamily, ConflictType] = {
    ChangeFamily.GEOMETRY: ConflictType.GEOMETRY_OVERLAP,
    ChangeFamily.MATERIAL: ConflictType.MATERIAL_CONFLICT,
    ChangeFamily.TEXTURE: ConflictType.TEXTURE_CONFLICT,
    ChangeFamily.TRANSFORM: ConflictType.TRANSFORM_CONFLICT,
    ChangeFamily.METADATA: ConflictType.METADATA_CONFLICT,
}


# ---------------------------------------------------------------------------
# Scene snapshot
# ---------------------------------------------------------------------------

class BoundingBox(BaseModel):
    min: Vec3 = Field(default=(0.0, 0.0, 0.0))
    max: Vec3 = Field(default=(0.0, 0.0, 0.0))


class Transform(BaseModel):
    """Per-mesh transform; rotation is Euler angles in degrees."""

    position: Vec3 = Field(default=(0.0, 0.0, 0.0))
    rotation: Vec3 = Field(default=(0.0, 0.0, 0.0))
    scaling: Vec3 = Field(default=(1.0, 1.0, 1.0))

    COMPONENTS: ClassVar[Tuple[str, ...]] = ("position", "rotation", "scaling")

    def changed_components(self, other: "Transform", tolerance: float = 1e-6) -> List[str]:
        changed = []
        for component in self.COMPONENTS:
            mine = getattr(self, component)
            theirs = getattr(other, component)
            if any(not math.isclose(a, b, abs_tol=tolerance) for a, b in zip(mine, theirs)):
                changed.append(component)
        return changed


class MeshElement(BaseModel):
    """A named mesh in the scene graph."""

    name: str = Field(min_length=1)
    vertex_count: int = Field(default=0, ge=0)
    index_count: int = Field(default=0, ge=0)
    triangle_count: Optional[int] = Field(default=None, ge=0, validate_default=True)
    material: Optional[str] = Field(default=None, description="Bound material name")
    bounds: Optional[BoundingBox] = Field(default=None, description="Local-space bounds")
    transform: Transform = Field(default_factory=Transform)

    @field_validator("triangle_count")
    @classmethod
    def derive_triangles(cls, v: Optional[int], info: ValidationInfo) -> int:
        if v is None:
            return info.data.get("index_count", 0) // 3
        return v

    def geometry_payload(self) -> "GeometryPayload":
        return GeometryPayload(
            vertex_count=self.vertex_count,
            index_count=self.index_count,
            triangle_count=self.triangle_count,
            material=self.material,
            bounds=self.bounds,
        )


class MaterialElement(BaseModel):
    name: str = Field(min_length=1)
    shader: str = Field(default="pbr")
    base_color: Vec4 = Field(default=(1.0, 1.0, 1.0, 1.0))
    metallic: float = Field(default=0.0, ge=0.0, le=1.0)
    roughness: float = Field(default=0.5, ge=0.0, le=1.0)
    emissive: Vec3 = Field(default=(0.0, 0.0, 0.0))
    alpha_mode: str = Field(default="OPAQUE")
    double_sided: bool = Field(default=False)
    textures: Dict[str, str] = Field(default_factory=dict, description="Slot to texture name")

    def field_values(self) -> Dict[str, object]:
        return self.model_dump(exclude={"name"})

    def changed_fields(self, other: "MaterialElement") -> List[str]:
        mine, theirs = self.field_values(), other.field_values()
        return sorted(k for k in mine if mine[k] != theirs[k])


class TextureElement(BaseModel):
    name: str = Field(min_length=1)
    uri: Optional[str] = None
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    format: str = Field(default="png")
    content_hash: Optional[str] = None

    def changed_fields(self, other: "TextureElement") -> List[str]:
        mine = self.model_dump(exclude={"name"})
        theirs = other.model_dump(exclude={"name"})
        return sorted(k for k in mine if mine[k] != theirs[k])


class SceneSnapshot(BaseModel):
    """Structural content of one asset version."""

    meshes: List[MeshElement] = Field(default_factory=list)
    materials: List[MaterialElement] = Field(default_factory=list)
    textures: List[TextureElement] = Field(default_factory=list)
    properties: Dict[str, str] = Field(default_factory=dict, description="Custom scene metadata")

    @field_validator("meshes", "materials", "textures")
    @classmethod
    def names_unique(cls, v: List, info: ValidationInfo) -> List:
        names = [element.name for element in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate {info.field_name} names: {', '.join(duplicates)}")
        return v

    def mesh_map(self) -> Dict[str, MeshElement]:
        return {m.name: m for m in self.meshes}

    def material_map(self) -> Dict[str, MaterialElement]:
        return {m.name: m for m in self.materials}

    def texture_map(self) -> Dict[str, TextureElement]:
        return {t.name: t for t in self.textures}

    @property
    def total_triangles(self) -> int:
        return sum(m.triangle_count for m in self.meshes)

    @property
    def total_vertices(self) -> int:
        return sum(m.vertex_count for m in self.meshes)

    def canonical_bytes(self) -> bytes:
        """Deterministic serialization used for hashing and blob storage."""
        return json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "SceneSnapshot":
        return cls.model_validate_json(data)


class AssetContent(BaseModel):
    """Content submitted for a commit: the scene plus optional raw asset bytes."""

    scene: SceneSnapshot = Field(default_factory=SceneSnapshot)
    payload: Optional[bytes] = Field(default=None, description="Original asset file bytes")
    format: str = Field(default=SCENE_FORMAT)

    @property
    def data(self) -> bytes:
        """Bytes that are content addressed and stored for this version."""
        return self.payload if self.payload is not None else self.scene.canonical_bytes()


# ---------------------------------------------------------------------------
# Element payloads (tagged union shared by changes and conflicts)
# ---------------------------------------------------------------------------

class GeometryPayload(BaseModel):
    kind: Literal["geometry"] = "geometry"
    vertex_count: int = Field(ge=0)
    index_count: int = Field(ge=0)
    triangle_count: int = Field(ge=0)
    material: Optional[str] = None
    bounds: Optional[BoundingBox] = None


class MaterialPayload(BaseModel):
    kind: Literal["material"] = "material"
    material: MaterialElement
    changed_fields: List[str] = Field(default_factory=list)


class TexturePayload(BaseModel):
    kind: Literal["texture"] = "texture"
    texture: TextureElement
    changed_fields: List[str] = Field(default_factory=list)


class TransformPayload(BaseModel):
    kind: Literal["transform"] = "transform"
    transform: Transform
    changed_components: List[str] = Field(default_factory=list)


class MetadataPayload(BaseModel):
    kind: Literal["metadata"] = "metadata"
    key: str
    value: str


class AnnotationPayload(BaseModel):
    kind: Literal["annotation"] = "annotation"
    annotation_id: str
    text: str
    author_id: Optional[str] = None


ElementPayload = Annotated[
    Union[
        GeometryPayload,
        MaterialPayload,
        TexturePayload,
        TransformPayload,
        MetadataPayload,
        AnnotationPayload,
    ],
    Field(discriminator="kind"),
]

PAYLOAD_KIND_FOR_CONFLICT: Dict[ConflictType, str] = {
    ConflictType.GEOMETRY_OVERLAP: "geometry",
    ConflictType.MATERIAL_CONFLICT: "material",
    ConflictType.TEXTURE_CONFLICT: "texture",
    ConflictType.TRANSFORM_CONFLICT: "transform",
    ConflictType.METADATA_CONFLICT: "metadata",
    ConflictType.ANNOTATION_CONFLICT: "annotation",
}


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------

class ModelChange(BaseModel):
    """A single structural change between two versions."""

    type: ChangeType
    path: str
    old_value: Optional[ElementPayload] = None
    new_value: Optional[ElementPayload] = None
    description: str = ""

    @property
    def family(self) -> ChangeFamily:
        return CHANGE_FAMILY[self.type]


class DiffStatistics(BaseModel):
    geometry_changes: int = 0
    material_changes: int = 0
    texture_changes: int = 0
    transform_changes: int = 0
    metadata_changes: int = 0
    total_changes: int = 0
    added_triangles: int = 0
    removed_triangles: int = 0
    filesize_change: int = 0


class VersionDiff(BaseModel):
    from_version_id: Optional[UUID] = None
    to_version_id: Optional[UUID] = None
    changes: List[ModelChange] = Field(default_factory=list)
    statistics: DiffStatistics = Field(default_factory=DiffStatistics)
    similarity: float = Field(default=1.0, ge=0.0, le=1.0)

    def paths(self) -> List[str]:
        return [c.path for c in self.changes]


class MeshSummary(BaseModel):
    name: str
    vertex_count: int
    triangle_count: int
    position: Vec3


class MeshModification(BaseModel):
    name: str
    before: MeshSummary
    after: MeshSummary


class VisualDiff(BaseModel):
    """Mesh-level summary used by viewers to highlight differences."""

    added: List[MeshSummary] = Field(default_factory=list)
    removed: List[MeshSummary] = Field(default_factory=list)
    modified: List[MeshModification] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Versions, branches, tags
# ---------------------------------------------------------------------------

class VersionMetadata(BaseModel):
    triangle_count: int = Field(default=0, ge=0)
    vertex_count: int = Field(default=0, ge=0)
    material_count: int = Field(default=0, ge=0)
    texture_count: int = Field(default=0, ge=0)
    bounding_box: BoundingBox = Field(default_factory=BoundingBox)
    format: str = Field(default=SCENE_FORMAT)

    @classmethod
    def zeroed(cls, fmt: str = SCENE_FORMAT) -> "VersionMetadata":
        return cls(format=fmt)


class ModelVersion(BaseModel):
    """An immutable revision of an asset. Only ``status`` changes after creation."""

    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    asset_id: str = Field(min_length=1)
    version: str = Field(pattern=r"^\d+\.\d+\.\d+$", description="Semantic version")
    parent_version_id: Optional[UUID] = None
    merge_parent_id: Optional[UUID] = Field(default=None, description="Second parent of merge commits")
    branch_name: str
    commit_message: str
    content_hash: str = Field(pattern=r"^[a-f0-9]{64}$")
    author_id: str
    size_bytes: int = Field(ge=0)
    metadata: VersionMetadata = Field(default_factory=VersionMetadata)
    status: VersionStatus = VersionStatus.DRAFT
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    storage_path: str = ""
    scene_path: str = ""

    @property
    def parent_ids(self) -> List[UUID]:
        return [p for p in (self.parent_version_id, self.merge_parent_id) if p is not None]


class Branch(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    asset_id: str = Field(min_length=1)
    name: str
    description: Optional[str] = None
    is_protected: bool = False
    is_default: bool = False
    head_version_id: UUID
    base_version_id: UUID
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    contributors: List[str] = Field(default_factory=list)
    last_activity_at: datetime = Field(default_factory=utc_now)
    merge_request_count: int = Field(default=0, ge=0)

    def record_activity(self, user_id: str, at: datetime) -> None:
        if user_id not in self.contributors:
            self.contributors = sorted([*self.contributors, user_id])
        self.last_activity_at = at
        self.updated_at = at


class VersionTag(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str
    version_id: UUID
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)
    is_release: bool = False
    description: Optional[str] = None


# ---------------------------------------------------------------------------
# Merge requests and conflicts
# ---------------------------------------------------------------------------

class Resolution(BaseModel):
    strategy: ResolutionStrategy
    resolved_by: str
    resolved_at: datetime = Field(default_factory=utc_now)
    custom_payload: Optional[ElementPayload] = None


class Conflict(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    type: ConflictType
    path: str
    description: str
    source_value: Optional[ElementPayload] = None
    target_value: Optional[ElementPayload] = None
    resolution: Optional[Resolution] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None


class Reviewer(BaseModel):
    user_id: str
    status: ReviewerStatus = ReviewerStatus.PENDING
    reviewed_at: Optional[datetime] = None
    comment: Optional[str] = None


class MergeComment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    content: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    is_resolved: bool = False
    parent_comment_id: Optional[UUID] = None


class MergeRequest(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    asset_id: str
    source_branch_id: UUID
    target_branch_id: UUID
    title: str = Field(min_length=1)
    description: str = ""
    status: MergeRequestStatus = MergeRequestStatus.OPEN
    author_id: str
    reviewers: List[Reviewer] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)
    comments: List[MergeComment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    merged_at: Optional[datetime] = None
    merged_by: Optional[str] = None
    merged_version_id: Optional[UUID] = None
    closed_by: Optional[str] = None
    approval_workflow_id: Optional[UUID] = None

    @property
    def unresolved_conflicts(self) -> List[Conflict]:
        return [c for c in self.conflicts if not c.is_resolved]

    def get_reviewer(self, user_id: str) -> Optional[Reviewer]:
        return next((r for r in self.reviewers if r.user_id == user_id), None)

    def get_conflict(self, conflict_id: UUID) -> Optional[Conflict]:
        return next((c for c in self.conflicts if c.id == conflict_id), None)


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

class Approval(BaseModel):
    approver_id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    comment: Optional[str] = None
    decided_at: Optional[datetime] = None


class ApprovalWorkflow(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    asset_id: str
    version_id: UUID
    merge_request_id: Optional[UUID] = None
    approvals: List[Approval] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.PENDING
    min_approvers: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    deadline: Optional[datetime] = None
    auto_approve_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    revision: int = Field(default=0, ge=0, description="Optimistic concurrency counter")

    @property
    def required_approvers(self) -> List[str]:
        return [a.approver_id for a in self.approvals]

    def get_approval(self, approver_id: str) -> Optional[Approval]:
        return next((a for a in self.approvals if a.approver_id == approver_id), None)


class ApprovalCheck(BaseModel):
    is_approved: bool
    workflow_id: Optional[UUID] = None
    workflow_status: Optional[WorkflowStatus] = None
    required: List[str] = Field(default_factory=list)
    approved_by: List[str] = Field(default_factory=list)
    rejected_by: List[str] = Field(default_factory=list)
    pending: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class VersionComparisonResult(BaseModel):
    version1: ModelVersion
    version2: ModelVersion
    identical: bool
    similarity: float = Field(ge=0.0, le=1.0)
    diff: VersionDiff
    visual_diff: Optional[VisualDiff] = None


class StorageStats(BaseModel):
    asset_id: str
    total_versions: int = 0
    branch_count: int = 0
    total_size_bytes: int = 0
    unique_blobs: int = 0
    deduplicated_bytes: int = 0
    versions_by_status: Dict[str, int] = Field(default_factory=dict)
