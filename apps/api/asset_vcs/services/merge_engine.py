"""
Merge engine for asset branches.

Supports three strategies:
- merge: three-way merge; source changes since the common ancestor are
  applied on top of the target content, the commit has both heads as parents
- squash: source content as-is, single parent (the target head)
- rebase: recorded as a merge commit labelled ``Rebase``; commits are not
  replayed one by one

Every strategy refuses to run while a detected conflict has no resolution.
The target head is advanced with compare-and-swap; a lost race re-plans the
merge against the new head before giving up.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

import structlog

from ..core import metrics
from ..core.cancellation import CancellationToken, Deadline
from ..core.exceptions import (
    ConcurrencyConflictError,
    InsufficientApprovalsError,
    UnresolvedConflictsError,
    ValidationError,
)
from ..models.version_control import (
    CHANGE_FAMILY,
    FAMILY_CONFLICT_TYPE,
    PAYLOAD_KIND_FOR_CONFLICT,
    AssetContent,
    Branch,
    ChangeFamily,
    Conflict,
    ConflictType,
    ElementPayload,
    GeometryPayload,
    MaterialElement,
    MaterialPayload,
    MergeStrategy,
    MeshElement,
    MetadataPayload,
    ModelVersion,
    Resolution,
    ResolutionStrategy,
    SceneSnapshot,
    TextureElement,
    TexturePayload,
    Transform,
    TransformPayload,
    VersionBump,
    VersionDiff,
    VersionStatus,
    utc_now,
)
from ..utils.semver import next_version
from .conflict_detector import AncestorResolver, ConflictDetector
from .diff_engine import DiffEngine
from .snapshot_repository import SnapshotRepository, StoredContent
from .version_store import VersionStore

logger = structlog.get_logger(__name__)

ConflictKey = Tuple[ConflictType, str]

_GEOMETRY_FIELDS = ("vertex_count", "index_count", "triangle_count", "material", "bounds")

STRATEGY_MESSAGE_PREFIX = {
    MergeStrategy.MERGE: "Merge: ",
    MergeStrategy.SQUASH: "Squash merge: ",
    MergeStrategy.REBASE: "Rebase: ",
}
STRATEGY_TAG = {
    MergeStrategy.MERGE: "merge",
    MergeStrategy.SQUASH: "squash",
    MergeStrategy.REBASE: "rebase",
}


def conflict_key(conflict: Conflict) -> ConflictKey:
    return (conflict.type, conflict.path)


def element_name(family: ChangeFamily, path: str) -> str:
    """Element name encoded in a change path."""
    prefix = {
        ChangeFamily.GEOMETRY: "meshes/",
        ChangeFamily.TRANSFORM: "meshes/",
        ChangeFamily.MATERIAL: "materials/",
        ChangeFamily.TEXTURE: "textures/",
        ChangeFamily.METADATA: "metadata/",
    }[family]
    name = path[len(prefix):]
    if family == ChangeFamily.TRANSFORM:
        name = name[: -len("/transform")]
    return name


def validate_resolution(
    conflict: Conflict,
    strategy: ResolutionStrategy,
    custom_payload: Optional[ElementPayload],
) -> None:
    """Reject resolutions the merge engine cannot apply to this conflict."""
    if strategy == ResolutionStrategy.MANUAL:
        expected_kind = PAYLOAD_KIND_FOR_CONFLICT[conflict.type]
        if custom_payload is None:
            raise ValidationError(
                "Manual resolution requires a custom payload",
                details={"conflict_id": str(conflict.id)},
            )
        if custom_payload.kind != expected_kind:
            raise ValidationError(
                f"Manual resolution of a {conflict.type.value} needs a '{expected_kind}' payload",
                details={"conflict_id": str(conflict.id), "payload_kind": custom_payload.kind},
            )
    elif strategy == ResolutionStrategy.MERGE and conflict.type in (
        ConflictType.GEOMETRY_OVERLAP,
        ConflictType.ANNOTATION_CONFLICT,
    ):
        raise ValidationError(
            f"{conflict.type.value} conflicts cannot be merged automatically; "
            "choose use_source, use_target or manual",
            details={"conflict_id": str(conflict.id)},
        )


def _field_merge(base: Optional[dict], source: dict, target: dict) -> dict:
    """Take each field from whichever side changed it; source wins when both did."""
    merged = {}
    for key, source_value in source.items():
        unchanged_on_source = base is not None and source_value == base.get(key)
        merged[key] = target.get(key, source_value) if unchanged_on_source else source_value
    return merged


class _SceneBuilder:
    """Mutable working copy of a scene used while applying merge decisions."""

    def __init__(self, scene: SceneSnapshot):
        scene = scene.model_copy(deep=True)
        self.meshes: Dict[str, MeshElement] = scene.mesh_map()
        self.materials: Dict[str, MaterialElement] = scene.material_map()
        self.textures: Dict[str, TextureElement] = scene.texture_map()
        self.properties: Dict[str, str] = dict(scene.properties)

    def take(
        self, family: ChangeFamily, name: str, scene: SceneSnapshot, whole_mesh: bool = False
    ) -> None:
        """
        Make element ``name`` of ``family`` match ``scene``.

        A geometry take keeps the working transform unless ``whole_mesh`` is set.
        """
        if family == ChangeFamily.GEOMETRY:
            mesh = scene.mesh_map().get(name)
            if mesh is None:
                self.meshes.pop(name, None)
            elif name in self.meshes and not whole_mesh:
                self.meshes[name] = self.meshes[name].model_copy(
                    update={f: getattr(mesh, f) for f in _GEOMETRY_FIELDS}, deep=True
                )
            else:
                self.meshes[name] = mesh.model_copy(deep=True)
        elif family == ChangeFamily.TRANSFORM:
            mesh = scene.mesh_map().get(name)
            if mesh is not None and name in self.meshes:
                self._set_transform(name, mesh.transform)
        elif family == ChangeFamily.MATERIAL:
            self._take_named(self.materials, scene.material_map(), name)
        elif family == ChangeFamily.TEXTURE:
            self._take_named(self.textures, scene.texture_map(), name)
        elif family == ChangeFamily.METADATA:
            if name in scene.properties:
                self.properties[name] = scene.properties[name]
            else:
                self.properties.pop(name, None)

    @staticmethod
    def _take_named(current: Dict, other: Dict, name: str) -> None:
        element = other.get(name)
        if element is None:
            current.pop(name, None)
        else:
            current[name] = element.model_copy(deep=True)

    def _set_transform(self, name: str, transform: Transform) -> None:
        self.meshes[name] = self.meshes[name].model_copy(
            update={"transform": transform.model_copy(deep=True)}
        )

    def apply_payload(self, family: ChangeFamily, name: str, payload: ElementPayload) -> None:
        if isinstance(payload, GeometryPayload):
            fields = {f: getattr(payload, f) for f in _GEOMETRY_FIELDS}
            if name in self.meshes:
                self.meshes[name] = self.meshes[name].model_copy(update=fields)
            else:
                self.meshes[name] = MeshElement(name=name, **fields)
        elif isinstance(payload, TransformPayload):
            if name in self.meshes:
                self._set_transform(name, payload.transform)
        elif isinstance(payload, MaterialPayload):
            self.materials[name] = payload.material.model_copy(update={"name": name}, deep=True)
        elif isinstance(payload, TexturePayload):
            self.textures[name] = payload.texture.model_copy(update={"name": name}, deep=True)
        elif isinstance(payload, MetadataPayload):
            self.properties[name] = payload.value
        else:
            raise ValidationError(f"Payload kind '{payload.kind}' cannot be applied to a scene")

    def merge_fields(
        self,
        family: ChangeFamily,
        name: str,
        ancestor: SceneSnapshot,
        source: SceneSnapshot,
        target: SceneSnapshot,
    ) -> None:
        """Field-level merge of one element; removals on either side fall back to the source side."""
        if family == ChangeFamily.TRANSFORM:
            sides = [s.mesh_map().get(name) for s in (ancestor, source, target)]
            base, src, tgt = [m.transform if m is not None else None for m in sides]
            if src is None or tgt is None:
                self.take(family, name, source)
                return
            merged = _field_merge(
                base.model_dump() if base is not None else None, src.model_dump(), tgt.model_dump()
            )
            self._set_transform(name, Transform(**merged))
        elif family in (ChangeFamily.MATERIAL, ChangeFamily.TEXTURE):
            getter: Callable[[SceneSnapshot], Dict] = (
                SceneSnapshot.material_map if family == ChangeFamily.MATERIAL else SceneSnapshot.texture_map
            )
            base, src, tgt = (getter(s).get(name) for s in (ancestor, source, target))
            if src is None or tgt is None:
                self.take(family, name, source)
                return
            merged = _field_merge(
                base.model_dump() if base is not None else None, src.model_dump(), tgt.model_dump()
            )
            element_cls = MaterialElement if family == ChangeFamily.MATERIAL else TextureElement
            (self.materials if family == ChangeFamily.MATERIAL else self.textures)[name] = element_cls(**merged)
        elif family == ChangeFamily.METADATA:
            self.take(family, name, source)
        else:
            raise ValidationError(f"{family.value} changes cannot be merged field by field")

    def build(self) -> SceneSnapshot:
        return SceneSnapshot(
            meshes=list(self.meshes.values()),
            materials=list(self.materials.values()),
            textures=list(self.textures.values()),
            properties=dict(self.properties),
        )


@dataclass
class MergePlan:
    """Everything read and computed before a merge commit is written."""

    source_branch: Branch
    target_branch: Branch
    source_head: ModelVersion
    target_head: ModelVersion
    ancestor: ModelVersion
    ancestor_scene: SceneSnapshot
    source_scene: SceneSnapshot
    target_scene: SceneSnapshot
    source_diff: VersionDiff
    target_diff: VersionDiff
    conflicts: List[Conflict]

    @property
    def source_already_merged(self) -> bool:
        return self.ancestor.id == self.source_head.id


class MergeEngine:
    """
    Computes merge plans and commits merge results.

    The engine is synchronous; callers run it on a worker pool.
    """

    def __init__(
        self,
        store: VersionStore,
        snapshots: SnapshotRepository,
        diff_engine: Optional[DiffEngine] = None,
        conflict_detector: Optional[ConflictDetector] = None,
        max_cas_retries: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.snapshots = snapshots
        self.diff_engine = diff_engine or DiffEngine()
        self.conflict_detector = conflict_detector or ConflictDetector()
        self.max_cas_retries = max_cas_retries
        self.clock = clock

    def plan(
        self,
        source_branch: Branch,
        target_branch: Branch,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[Deadline] = None,
    ) -> MergePlan:
        if source_branch.asset_id != target_branch.asset_id:
            raise ValidationError(
                "Cannot merge branches of different assets",
                details={"source": source_branch.asset_id, "target": target_branch.asset_id},
            )
        if source_branch.id == target_branch.id:
            raise ValidationError("Source and target branch must differ")

        source_head = self.store.get_version(source_branch.head_version_id, deadline=deadline)
        target_head = self.store.get_version(target_branch.head_version_id, deadline=deadline)
        ancestor = AncestorResolver(self.store, deadline).find_common_ancestor(
            source_head.id, target_head.id
        )

        ancestor_scene = self.snapshots.read_scene(ancestor, deadline)
        source_scene = self.snapshots.read_scene(source_head, deadline)
        target_scene = self.snapshots.read_scene(target_head, deadline)

        source_diff = self.diff_engine.diff(
            ancestor_scene, source_scene, ancestor.id, source_head.id,
            source_head.size_bytes - ancestor.size_bytes, cancel_token,
        )
        target_diff = self.diff_engine.diff(
            ancestor_scene, target_scene, ancestor.id, target_head.id,
            target_head.size_bytes - ancestor.size_bytes, cancel_token,
        )
        conflicts = self.conflict_detector.detect(source_diff, target_diff)

        return MergePlan(
            source_branch=source_branch,
            target_branch=target_branch,
            source_head=source_head,
            target_head=target_head,
            ancestor=ancestor,
            ancestor_scene=ancestor_scene,
            source_scene=source_scene,
            target_scene=target_scene,
            source_diff=source_diff,
            target_diff=target_diff,
            conflicts=conflicts,
        )

    def merge(
        self,
        source_branch_id: UUID,
        target_branch_id: UUID,
        strategy: MergeStrategy,
        committer: str,
        message: str,
        resolutions: Optional[Dict[ConflictKey, Resolution]] = None,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[Deadline] = None,
        approved_source_head: Optional[UUID] = None,
    ) -> ModelVersion:
        """
        Merge the source branch into the target branch.

        Args:
            resolutions: resolutions keyed by (conflict type, path)
            approved_source_head: when set, the only source head allowed to merge

        Raises:
            UnresolvedConflictsError: a detected conflict has no resolution
            ConcurrencyConflictError: the target head kept moving after the retry
            InsufficientApprovalsError: the source head is not the approved one
            ValidationError: nothing to merge, or an unusable resolution
        """
        resolutions = resolutions or {}
        attempt = 0
        while True:
            source_branch = self.store.get_branch_by_id(source_branch_id, deadline=deadline)
            target_branch = self.store.get_branch_by_id(target_branch_id, deadline=deadline)
            plan = self.plan(source_branch, target_branch, cancel_token, deadline)
            if approved_source_head is not None and plan.source_head.id != approved_source_head:
                raise InsufficientApprovalsError(
                    f"Branch {source_branch.name} moved after approval",
                    details={
                        "approved_head": str(approved_source_head),
                        "source_head": str(plan.source_head.id),
                    },
                )

            if plan.source_already_merged:
                raise ValidationError(
                    f"Branch {source_branch.name} has no changes to merge into {target_branch.name}",
                    details={"source_head": str(plan.source_head.id), "target_head": str(plan.target_head.id)},
                )
            unresolved = [c for c in plan.conflicts if conflict_key(c) not in resolutions]
            if unresolved:
                raise UnresolvedConflictsError(unresolved)

            if cancel_token is not None:
                cancel_token.raise_if_cancelled("merge_apply")
            version = self._build_version(plan, strategy, committer, message, resolutions, deadline)

            try:
                self.store.commit_version(version, expected_head=plan.target_head.id, deadline=deadline)
            except ConcurrencyConflictError:
                if attempt >= self.max_cas_retries:
                    metrics.asset_vcs_merges_total.labels(strategy=strategy.value, status="cas_conflict").inc()
                    raise
                attempt += 1
                metrics.asset_vcs_cas_retries_total.labels(operation="merge").inc()
                logger.warning(
                    "merge_head_moved_retrying",
                    target_branch=target_branch.name,
                    expected_head=str(plan.target_head.id),
                    attempt=attempt,
                )
                continue

            metrics.asset_vcs_merges_total.labels(strategy=strategy.value, status="success").inc()
            logger.info(
                "branches_merged",
                strategy=strategy.value,
                source_branch=source_branch.name,
                target_branch=target_branch.name,
                merged_version_id=str(version.id),
                version=version.version,
                conflicts_resolved=len(plan.conflicts),
            )
            return version

    def merged_scene(
        self,
        plan: MergePlan,
        strategy: MergeStrategy,
        resolutions: Dict[ConflictKey, Resolution],
    ) -> Tuple[SceneSnapshot, bool]:
        """
        Scene produced by ``strategy``.

        Returns the scene and whether it differs from the plain source
        content because a resolution changed something.
        """
        conflicts = {conflict_key(c): c for c in plan.conflicts}

        if strategy == MergeStrategy.SQUASH:
            builder = _SceneBuilder(plan.source_scene)
            altered = False
            for key, conflict in conflicts.items():
                resolution = resolutions[key]
                if resolution.strategy != ResolutionStrategy.USE_SOURCE:
                    self._apply_resolution(builder, conflict, resolution, plan)
                    altered = True
            return builder.build(), altered

        builder = _SceneBuilder(plan.target_scene)
        for change in plan.source_diff.changes:
            family = CHANGE_FAMILY[change.type]
            key = (FAMILY_CONFLICT_TYPE[family], change.path)
            if key in conflicts:
                self._apply_resolution(builder, conflicts[key], resolutions[key], plan)
            else:
                builder.take(family, element_name(family, change.path), plan.source_scene)
        return builder.build(), True

    @staticmethod
    def _apply_resolution(
        builder: _SceneBuilder,
        conflict: Conflict,
        resolution: Resolution,
        plan: MergePlan,
    ) -> None:
        validate_resolution(conflict, resolution.strategy, resolution.custom_payload)
        family = next(f for f, t in FAMILY_CONFLICT_TYPE.items() if t == conflict.type)
        name = element_name(family, conflict.path)
        if resolution.strategy in (ResolutionStrategy.USE_SOURCE, ResolutionStrategy.USE_TARGET):
            chosen = (
                plan.source_scene
                if resolution.strategy == ResolutionStrategy.USE_SOURCE
                else plan.target_scene
            )
            # A mesh both sides added has no shared transform to keep
            added = family == ChangeFamily.GEOMETRY and name not in plan.ancestor_scene.mesh_map()
            builder.take(family, name, chosen, whole_mesh=added)
        elif resolution.strategy == ResolutionStrategy.MANUAL:
            builder.apply_payload(family, name, resolution.custom_payload)
        else:
            builder.merge_fields(family, name, plan.ancestor_scene, plan.source_scene, plan.target_scene)

    def _build_version(
        self,
        plan: MergePlan,
        strategy: MergeStrategy,
        committer: str,
        message: str,
        resolutions: Dict[ConflictKey, Resolution],
        deadline: Optional[Deadline],
    ) -> ModelVersion:
        scene, altered = self.merged_scene(plan, strategy, resolutions)
        if strategy == MergeStrategy.SQUASH and not altered:
            stored: StoredContent = self.snapshots.stored_of(plan.source_head)
        else:
            stored = self.snapshots.write(AssetContent(scene=scene), deadline)

        return ModelVersion(
            asset_id=plan.target_branch.asset_id,
            version=next_version(plan.target_head.version, VersionBump.MINOR),
            parent_version_id=plan.target_head.id,
            merge_parent_id=None if strategy == MergeStrategy.SQUASH else plan.source_head.id,
            branch_name=plan.target_branch.name,
            commit_message=f"{STRATEGY_MESSAGE_PREFIX[strategy]}{message}",
            content_hash=stored.content_hash,
            author_id=committer,
            size_bytes=stored.size_bytes,
            metadata=stored.metadata,
            status=VersionStatus.APPROVED,
            tags=["merged", STRATEGY_TAG[strategy]],
            created_at=self.clock(),
            storage_path=stored.storage_path,
            scene_path=stored.scene_path,
        )
