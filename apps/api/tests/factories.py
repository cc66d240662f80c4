"""
Scene and clock builders shared by the test modules.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional, Tuple

from asset_vcs.models.version_control import (
    AssetContent,
    MaterialElement,
    MeshElement,
    SceneSnapshot,
    TextureElement,
    Transform,
)

ASSET_ID = "robot-arm"


class FakeClock:
    """Deterministic clock; every reading advances one second so versions stay ordered."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def mesh(
    name: str,
    triangles: int,
    position: Tuple[float, float, float] = (0.0, 0.0, 0.0),
    material: Optional[str] = None,
) -> MeshElement:
    return MeshElement(
        name=name,
        vertex_count=triangles * 3,
        index_count=triangles * 3,
        material=material,
        transform=Transform(position=position),
    )


def scene(
    meshes: Iterable[MeshElement] = (),
    materials: Iterable[MaterialElement] = (),
    textures: Iterable[TextureElement] = (),
    properties: Optional[Dict[str, str]] = None,
) -> SceneSnapshot:
    return SceneSnapshot(
        meshes=list(meshes),
        materials=list(materials),
        textures=list(textures),
        properties=properties or {},
    )


def content(snapshot: SceneSnapshot) -> AssetContent:
    return AssetContent(scene=snapshot)


def base_scene() -> SceneSnapshot:
    """A 1000 triangle arm with one material."""
    return scene(
        meshes=[mesh("body", 1000, material="steel")],
        materials=[MaterialElement(name="steel", metallic=0.9, roughness=0.3)],
    )
