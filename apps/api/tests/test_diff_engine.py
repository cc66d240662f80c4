"""
Tests for structural scene diffs and similarity scoring.
"""

import pytest

from asset_vcs.core.cancellation import CancellationToken
from asset_vcs.core.exceptions import OperationCancelledError
from asset_vcs.models.version_control import (
    ChangeType,
    MaterialElement,
    TextureElement,
)
from asset_vcs.services.diff_engine import DiffEngine

from factories import base_scene, mesh, scene


@pytest.fixture
def engine():
    """Create a DiffEngine."""
    return DiffEngine()


def _types(diff):
    return [c.type for c in diff.changes]


class TestDiffEngine:
    def test_identical_scenes_have_no_changes(self, engine):
        diff = engine.diff(base_scene(), base_scene())

        assert diff.changes == []
        assert diff.similarity == 1.0
        assert diff.statistics.total_changes == 0

    def test_added_mesh(self, engine):
        after = base_scene()
        after.meshes.append(mesh("gripper", 200))

        diff = engine.diff(base_scene(), after)

        assert _types(diff) == [ChangeType.GEOMETRY_ADDED]
        change = diff.changes[0]
        assert change.path == "meshes/gripper"
        assert change.old_value is None
        assert change.new_value.triangle_count == 200
        assert diff.statistics.geometry_changes == 1
        assert diff.statistics.added_triangles == 200
        assert diff.statistics.removed_triangles == 0
        assert diff.similarity == pytest.approx(0.7)

    def test_diff_is_symmetric(self, engine):
        with_gripper = base_scene()
        with_gripper.meshes.append(mesh("gripper", 200))

        forward = engine.diff(base_scene(), with_gripper)
        backward = engine.diff(with_gripper, base_scene())

        assert _types(backward) == [ChangeType.GEOMETRY_REMOVED]
        assert backward.changes[0].path == forward.changes[0].path
        assert backward.changes[0].old_value == forward.changes[0].new_value
        assert backward.statistics.removed_triangles == 200
        assert backward.similarity == forward.similarity

    def test_geometry_modification(self, engine):
        after = scene(meshes=[mesh("body", 1200, material="steel")], materials=base_scene().materials)

        diff = engine.diff(base_scene(), after)

        assert _types(diff) == [ChangeType.GEOMETRY_MODIFIED]
        assert diff.changes[0].old_value.triangle_count == 1000
        assert diff.changes[0].new_value.triangle_count == 1200
        assert diff.similarity == pytest.approx(0.8)

    def test_transform_change_is_separate_from_geometry(self, engine):
        after = scene(
            meshes=[mesh("body", 1000, position=(0.0, 2.5, 0.0), material="steel")],
            materials=base_scene().materials,
        )

        diff = engine.diff(base_scene(), after)

        assert _types(diff) == [ChangeType.TRANSFORM_CHANGED]
        change = diff.changes[0]
        assert change.path == "meshes/body/transform"
        assert change.new_value.changed_components == ["position"]
        assert diff.statistics.transform_changes == 1
        assert diff.similarity == pytest.approx(0.98)

    def test_transform_within_tolerance_is_ignored(self, engine):
        after = scene(
            meshes=[mesh("body", 1000, position=(0.0, 1e-9, 0.0), material="steel")],
            materials=base_scene().materials,
        )
        assert engine.diff(base_scene(), after).changes == []

    def test_material_field_changes(self, engine):
        after = base_scene()
        after.materials[0] = MaterialElement(name="steel", metallic=0.9, roughness=0.8)

        diff = engine.diff(base_scene(), after)

        assert _types(diff) == [ChangeType.MATERIAL_MODIFIED]
        assert diff.changes[0].path == "materials/steel"
        assert diff.changes[0].new_value.changed_fields == ["roughness"]
        assert diff.similarity == pytest.approx(0.95)

    def test_textures_and_metadata(self, engine):
        before = scene(textures=[TextureElement(name="albedo", width=512, height=512)])
        after = scene(
            textures=[
                TextureElement(name="albedo", width=1024, height=1024),
                TextureElement(name="normal", width=512, height=512),
            ],
            properties={"author": "design-team"},
        )

        diff = engine.diff(before, after)

        assert sorted(_types(diff)) == sorted(
            [ChangeType.TEXTURE_MODIFIED, ChangeType.TEXTURE_ADDED, ChangeType.METADATA_CHANGED]
        )
        paths = {c.path for c in diff.changes}
        assert paths == {"textures/albedo", "textures/normal", "metadata/author"}
        assert diff.statistics.texture_changes == 2
        assert diff.statistics.metadata_changes == 1
        assert diff.similarity == pytest.approx(1 - 0.02 - 0.05 - 0.01)

    def test_similarity_never_negative(self, engine):
        after = scene(meshes=[mesh(f"part-{i}", 10) for i in range(5)])
        assert engine.diff(scene(), after).similarity == 0.0

    def test_filesize_change_is_reported(self, engine):
        diff = engine.diff(base_scene(), base_scene(), filesize_change=-128)
        assert diff.statistics.filesize_change == -128

    def test_cancelled_token_aborts(self, engine):
        token = CancellationToken()
        token.cancel("user navigated away")

        with pytest.raises(OperationCancelledError) as exc_info:
            engine.diff(base_scene(), base_scene(), cancel_token=token)
        assert "user navigated away" in exc_info.value.message


class TestVisualDiff:
    def test_mesh_level_summary(self, engine):
        before = scene(meshes=[mesh("body", 1000), mesh("cable", 50)])
        after = scene(meshes=[mesh("body", 1000, position=(1.0, 0.0, 0.0)), mesh("gripper", 200)])

        visual = engine.visual_diff(before, after)

        assert [m.name for m in visual.added] == ["gripper"]
        assert [m.name for m in visual.removed] == ["cable"]
        assert [m.name for m in visual.modified] == ["body"]
        assert visual.modified[0].after.position == (1.0, 0.0, 0.0)
