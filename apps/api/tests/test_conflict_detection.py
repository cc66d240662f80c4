"""
Tests for conflict detection and common ancestor resolution.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import pytest

from asset_vcs.core.exceptions import NoCommonAncestorError
from asset_vcs.models.version_control import (
    ConflictType,
    MaterialElement,
    ModelVersion,
)
from asset_vcs.services.conflict_detector import AncestorResolver, ConflictDetector
from asset_vcs.services.diff_engine import DiffEngine
from asset_vcs.services.version_store import InMemoryVersionStore

from factories import ASSET_ID, base_scene, mesh, scene

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def detector():
    """Create a ConflictDetector."""
    return ConflictDetector()


@pytest.fixture
def store():
    """Create an in-memory version store."""
    return InMemoryVersionStore()


def _diffs(ancestor, source, target):
    engine = DiffEngine()
    return engine.diff(ancestor, source), engine.diff(ancestor, target)


def _version(
    store,
    label: str,
    minute: int,
    parent: Optional[ModelVersion] = None,
    merge_parent: Optional[ModelVersion] = None,
    asset_id: str = ASSET_ID,
) -> ModelVersion:
    version = ModelVersion(
        asset_id=asset_id,
        version=f"1.0.{minute}",
        parent_version_id=parent.id if parent else None,
        merge_parent_id=merge_parent.id if merge_parent else None,
        branch_name=label,
        commit_message=label,
        content_hash=f"{minute:064x}",
        author_id="alice",
        size_bytes=1,
        created_at=T0 + timedelta(minutes=minute),
    )
    return store.create_version(version)


class TestConflictDetector:
    def test_disjoint_changes_do_not_conflict(self, detector):
        source = base_scene()
        source.meshes.append(mesh("gripper", 200))
        target = base_scene()
        target.materials[0] = MaterialElement(name="steel", metallic=0.5, roughness=0.3)

        assert detector.detect(*_diffs(base_scene(), source, target)) == []

    def test_same_transform_edited_on_both_sides(self, detector):
        ancestor = scene(meshes=[mesh("body", 1000)])
        source = scene(meshes=[mesh("body", 1000, position=(1.0, 0.0, 0.0))])
        target = scene(meshes=[mesh("body", 1000, position=(0.0, 0.0, 3.0))])

        conflicts = detector.detect(*_diffs(ancestor, source, target))

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.type == ConflictType.TRANSFORM_CONFLICT
        assert conflict.path == "meshes/body/transform"
        assert conflict.source_value.transform.position == (1.0, 0.0, 0.0)
        assert conflict.target_value.transform.position == (0.0, 0.0, 3.0)
        assert conflict.resolution is None

    def test_same_mesh_added_on_both_sides(self, detector):
        source = scene(meshes=[mesh("gripper", 200)])
        target = scene(meshes=[mesh("gripper", 180)])

        conflicts = detector.detect(*_diffs(scene(), source, target))

        assert [c.type for c in conflicts] == [ConflictType.GEOMETRY_OVERLAP]
        assert conflicts[0].path == "meshes/gripper"

    def test_geometry_and_transform_of_same_mesh_are_independent(self, detector):
        ancestor = scene(meshes=[mesh("body", 1000)])
        source = scene(meshes=[mesh("body", 1200)])
        target = scene(meshes=[mesh("body", 1000, position=(0.0, 1.0, 0.0))])

        assert detector.detect(*_diffs(ancestor, source, target)) == []

    def test_one_conflict_per_path_and_family(self, detector):
        ancestor = scene(
            meshes=[mesh("body", 1000)],
            materials=[MaterialElement(name="steel")],
            properties={"stage": "draft"},
        )
        source = scene(
            meshes=[mesh("body", 1100)],
            materials=[MaterialElement(name="steel", roughness=0.9)],
            properties={"stage": "review"},
        )
        target = scene(
            meshes=[mesh("body", 900)],
            materials=[MaterialElement(name="steel", metallic=1.0)],
            properties={"stage": "final"},
        )

        conflicts = detector.detect(*_diffs(ancestor, source, target))

        assert sorted((c.type, c.path) for c in conflicts) == sorted([
            (ConflictType.GEOMETRY_OVERLAP, "meshes/body"),
            (ConflictType.MATERIAL_CONFLICT, "materials/steel"),
            (ConflictType.METADATA_CONFLICT, "metadata/stage"),
        ])


class TestAncestorResolver:
    def test_linear_history(self, store):
        root = _version(store, "main", 0)
        child = _version(store, "main", 1, parent=root)

        resolver = AncestorResolver(store)

        assert resolver.find_common_ancestor(root.id, child.id).id == root.id
        assert resolver.is_ancestor(root.id, child.id)
        assert not resolver.is_ancestor(child.id, root.id)

    def test_fork_point_is_found(self, store):
        root = _version(store, "main", 0)
        fork = _version(store, "main", 1, parent=root)
        main_tip = _version(store, "main", 2, parent=fork)
        feature_tip = _version(store, "feature", 3, parent=fork)

        ancestor = AncestorResolver(store).find_common_ancestor(feature_tip.id, main_tip.id)
        assert ancestor.id == fork.id

    def test_merge_parent_is_followed(self, store):
        root = _version(store, "main", 0)
        feature_a = _version(store, "feature", 1, parent=root)
        main_b = _version(store, "main", 2, parent=root)
        merged = _version(store, "main", 3, parent=main_b, merge_parent=feature_a)
        feature_c = _version(store, "feature", 4, parent=feature_a)

        # After merging feature into main, the feature tip's base is feature_a
        ancestor = AncestorResolver(store).find_common_ancestor(feature_c.id, merged.id)
        assert ancestor.id == feature_a.id

    def test_ties_prefer_newest(self, store):
        root = _version(store, "main", 0)
        older = _version(store, "a", 1, parent=root)
        newer = _version(store, "b", 2, parent=root)
        left = _version(store, "left", 3, parent=older, merge_parent=newer)
        right = _version(store, "right", 4, parent=newer, merge_parent=older)

        ancestor = AncestorResolver(store).find_common_ancestor(left.id, right.id)
        assert ancestor.id == newer.id

    def test_disjoint_histories(self, store):
        first = _version(store, "main", 0)
        second = _version(store, "other", 1)

        with pytest.raises(NoCommonAncestorError):
            AncestorResolver(store).find_common_ancestor(first.id, second.id)

    def test_missing_parent_is_treated_as_root(self, store):
        resolver = AncestorResolver(store)
        missing = UUID(int=42)
        assert resolver.distances(missing) == {missing: 0}
