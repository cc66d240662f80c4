"""
Structural diffing of asset scene snapshots.

Elements are matched by name per category. A name present only in the
"from" scene is a removal, only in the "to" scene an addition, and in both a
structural comparison decides whether it was modified. Transforms are
compared separately from geometry so a moved mesh and a remeshed mesh are
distinct changes.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional
from uuid import UUID

import structlog

from ..core import metrics
from ..core.cancellation import CancellationToken
from ..models.version_control import (
    ChangeType,
    DiffStatistics,
    MaterialPayload,
    MeshElement,
    MeshModification,
    MeshSummary,
    MetadataPayload,
    ModelChange,
    SceneSnapshot,
    TexturePayload,
    TransformPayload,
    VersionDiff,
    VisualDiff,
)

logger = structlog.get_logger(__name__)

# Weight each change type subtracts from similarity
CHANGE_WEIGHTS: Dict[ChangeType, float] = {
    ChangeType.GEOMETRY_ADDED: 0.3,
    ChangeType.GEOMETRY_REMOVED: 0.3,
    ChangeType.GEOMETRY_MODIFIED: 0.2,
    ChangeType.MATERIAL_ADDED: 0.1,
    ChangeType.MATERIAL_REMOVED: 0.1,
    ChangeType.MATERIAL_MODIFIED: 0.05,
    ChangeType.TEXTURE_ADDED: 0.05,
    ChangeType.TEXTURE_REMOVED: 0.05,
    ChangeType.TEXTURE_MODIFIED: 0.02,
    ChangeType.METADATA_CHANGED: 0.01,
    ChangeType.TRANSFORM_CHANGED: 0.02,
}
DEFAULT_CHANGE_WEIGHT = 0.01


def mesh_path(name: str) -> str:
    return f"meshes/{name}"


def transform_path(name: str) -> str:
    return f"meshes/{name}/transform"


def material_path(name: str) -> str:
    return f"materials/{name}"


def texture_path(name: str) -> str:
    return f"textures/{name}"


def metadata_path(key: str) -> str:
    return f"metadata/{key}"


class DiffEngine:
    """
    Computes change sets between two scene snapshots.

    Features:
    - name-keyed matching per category
    - field-level material and texture comparison
    - transform changes tracked independently of geometry
    - weighted similarity score
    - cancellation between category passes
    """

    def __init__(self, tolerance: float = 1e-6):
        self.tolerance = tolerance
        self._passes: List[Callable[[SceneSnapshot, SceneSnapshot], List[ModelChange]]] = [
            self._diff_geometry,
            self._diff_materials,
            self._diff_textures,
            self._diff_transforms,
            self._diff_metadata,
        ]

    def diff(
        self,
        from_scene: SceneSnapshot,
        to_scene: SceneSnapshot,
        from_version_id: Optional[UUID] = None,
        to_version_id: Optional[UUID] = None,
        filesize_change: int = 0,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VersionDiff:
        """
        Calculate the structural diff from ``from_scene`` to ``to_scene``.

        Raises:
            OperationCancelledError: if ``cancel_token`` is cancelled between passes
        """
        started = time.perf_counter()
        changes: List[ModelChange] = []
        for diff_pass in self._passes:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(diff_pass.__name__.lstrip("_"))
            changes.extend(diff_pass(from_scene, to_scene))

        statistics = self._statistics(changes, from_scene, to_scene, filesize_change)
        result = VersionDiff(
            from_version_id=from_version_id,
            to_version_id=to_version_id,
            changes=changes,
            statistics=statistics,
            similarity=self.similarity(changes),
        )

        metrics.asset_vcs_diff_duration_seconds.observe(time.perf_counter() - started)
        logger.debug(
            "diff_computed",
            from_version_id=str(from_version_id) if from_version_id else None,
            to_version_id=str(to_version_id) if to_version_id else None,
            total_changes=statistics.total_changes,
        )
        return result

    @staticmethod
    def similarity(changes: List[ModelChange]) -> float:
        penalty = sum(CHANGE_WEIGHTS.get(c.type, DEFAULT_CHANGE_WEIGHT) for c in changes)
        return max(0.0, 1.0 - penalty)

    # Category passes

    def _diff_geometry(self, from_scene: SceneSnapshot, to_scene: SceneSnapshot) -> List[ModelChange]:
        changes = []
        before, after = from_scene.mesh_map(), to_scene.mesh_map()
        for name in sorted(before.keys() | after.keys()):
            old, new = before.get(name), after.get(name)
            if new is None:
                changes.append(ModelChange(
                    type=ChangeType.GEOMETRY_REMOVED,
                    path=mesh_path(name),
                    old_value=old.geometry_payload(),
                    description=f"Mesh '{name}' removed ({old.triangle_count} triangles)",
                ))
            elif old is None:
                changes.append(ModelChange(
                    type=ChangeType.GEOMETRY_ADDED,
                    path=mesh_path(name),
                    new_value=new.geometry_payload(),
                    description=f"Mesh '{name}' added ({new.triangle_count} triangles)",
                ))
            else:
                old_geometry, new_geometry = old.geometry_payload(), new.geometry_payload()
                if old_geometry != new_geometry:
                    changes.append(ModelChange(
                        type=ChangeType.GEOMETRY_MODIFIED,
                        path=mesh_path(name),
                        old_value=old_geometry,
                        new_value=new_geometry,
                        description=(
                            f"Mesh '{name}' modified: vertices {old.vertex_count} -> {new.vertex_count}, "
                            f"triangles {old.triangle_count} -> {new.triangle_count}"
                        ),
                    ))
        return changes

    def _diff_materials(self, from_scene: SceneSnapshot, to_scene: SceneSnapshot) -> List[ModelChange]:
        changes = []
        before, after = from_scene.material_map(), to_scene.material_map()
        for name in sorted(before.keys() | after.keys()):
            old, new = before.get(name), after.get(name)
            if new is None:
                changes.append(ModelChange(
                    type=ChangeType.MATERIAL_REMOVED,
                    path=material_path(name),
                    old_value=MaterialPayload(material=old),
                    description=f"Material '{name}' removed",
                ))
            elif old is None:
                changes.append(ModelChange(
                    type=ChangeType.MATERIAL_ADDED,
                    path=material_path(name),
                    new_value=MaterialPayload(material=new),
                    description=f"Material '{name}' added",
                ))
            else:
                changed = old.changed_fields(new)
                if changed:
                    changes.append(ModelChange(
                        type=ChangeType.MATERIAL_MODIFIED,
                        path=material_path(name),
                        old_value=MaterialPayload(material=old, changed_fields=changed),
                        new_value=MaterialPayload(material=new, changed_fields=changed),
                        description=f"Material '{name}' modified: {', '.join(changed)}",
                    ))
        return changes

    def _diff_textures(self, from_scene: SceneSnapshot, to_scene: SceneSnapshot) -> List[ModelChange]:
        changes = []
        before, after = from_scene.texture_map(), to_scene.texture_map()
        for name in sorted(before.keys() | after.keys()):
            old, new = before.get(name), after.get(name)
            if new is None:
                changes.append(ModelChange(
                    type=ChangeType.TEXTURE_REMOVED,
                    path=texture_path(name),
                    old_value=TexturePayload(texture=old),
                    description=f"Texture '{name}' removed",
                ))
            elif old is None:
                changes.append(ModelChange(
                    type=ChangeType.TEXTURE_ADDED,
                    path=texture_path(name),
                    new_value=TexturePayload(texture=new),
                    description=f"Texture '{name}' added ({new.width}x{new.height})",
                ))
            else:
                changed = old.changed_fields(new)
                if changed:
                    changes.append(ModelChange(
                        type=ChangeType.TEXTURE_MODIFIED,
                        path=texture_path(name),
                        old_value=TexturePayload(texture=old, changed_fields=changed),
                        new_value=TexturePayload(texture=new, changed_fields=changed),
                        description=f"Texture '{name}' modified: {', '.join(changed)}",
                    ))
        return changes

    def _diff_transforms(self, from_scene: SceneSnapshot, to_scene: SceneSnapshot) -> List[ModelChange]:
        changes = []
        before, after = from_scene.mesh_map(), to_scene.mesh_map()
        # Only meshes present on both sides; additions and removals are geometry changes
        for name in sorted(before.keys() & after.keys()):
            old, new = before[name].transform, after[name].transform
            components = old.changed_components(new, self.tolerance)
            if components:
                changes.append(ModelChange(
                    type=ChangeType.TRANSFORM_CHANGED,
                    path=transform_path(name),
                    old_value=TransformPayload(transform=old, changed_components=components),
                    new_value=TransformPayload(transform=new, changed_components=components),
                    description=f"Mesh '{name}' transform changed: {', '.join(components)}",
                ))
        return changes

    def _diff_metadata(self, from_scene: SceneSnapshot, to_scene: SceneSnapshot) -> List[ModelChange]:
        changes = []
        before, after = from_scene.properties, to_scene.properties
        for key in sorted(before.keys() | after.keys()):
            old, new = before.get(key), after.get(key)
            if old == new:
                continue
            changes.append(ModelChange(
                type=ChangeType.METADATA_CHANGED,
                path=metadata_path(key),
                old_value=MetadataPayload(key=key, value=old) if old is not None else None,
                new_value=MetadataPayload(key=key, value=new) if new is not None else None,
                description=f"Property '{key}' changed",
            ))
        return changes

    # Summaries

    @staticmethod
    def _statistics(
        changes: List[ModelChange],
        from_scene: SceneSnapshot,
        to_scene: SceneSnapshot,
        filesize_change: int,
    ) -> DiffStatistics:
        stats = DiffStatistics(total_changes=len(changes), filesize_change=filesize_change)
        for change in changes:
            family = change.family.value
            field = f"{family}_changes"
            setattr(stats, field, getattr(stats, field) + 1)
        triangle_delta = to_scene.total_triangles - from_scene.total_triangles
        stats.added_triangles = max(0, triangle_delta)
        stats.removed_triangles = max(0, -triangle_delta)
        return stats

    @staticmethod
    def _summary(mesh: MeshElement) -> MeshSummary:
        return MeshSummary(
            name=mesh.name,
            vertex_count=mesh.vertex_count,
            triangle_count=mesh.triangle_count,
            position=mesh.transform.position,
        )

    def visual_diff(self, from_scene: SceneSnapshot, to_scene: SceneSnapshot) -> VisualDiff:
        """Mesh-level added/removed/modified lists for viewers."""
        before, after = from_scene.mesh_map(), to_scene.mesh_map()
        result = VisualDiff()
        for name in sorted(before.keys() | after.keys()):
            old, new = before.get(name), after.get(name)
            if old is None:
                result.added.append(self._summary(new))
            elif new is None:
                result.removed.append(self._summary(old))
            elif (
                old.geometry_payload() != new.geometry_payload()
                or old.transform.changed_components(new.transform, self.tolerance)
            ):
                result.modified.append(MeshModification(
                    name=name, before=self._summary(old), after=self._summary(new)
                ))
        return result
