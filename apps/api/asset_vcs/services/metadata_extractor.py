"""
Structural metadata extraction from stored asset bytes.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from ..models.version_control import (
    SCENE_FORMAT,
    BoundingBox,
    SceneSnapshot,
    VersionMetadata,
)


class MetadataExtractor(Protocol):
    """Parses an asset payload into ``VersionMetadata``. May raise on unknown formats."""

    def extract(self, data: bytes, fmt: str = SCENE_FORMAT) -> VersionMetadata: ...


def scene_bounding_box(scene: SceneSnapshot) -> BoundingBox:
    """World-space bounds from per-mesh local bounds, scale and translation."""
    corners: List[Tuple[float, float, float]] = []
    for mesh in scene.meshes:
        if mesh.bounds is None:
            continue
        position, scaling = mesh.transform.position, mesh.transform.scaling
        for local in (mesh.bounds.min, mesh.bounds.max):
            corners.append(tuple(p + c * s for p, c, s in zip(position, local, scaling)))
    if not corners:
        return BoundingBox()
    return BoundingBox(
        min=tuple(min(c[i] for c in corners) for i in range(3)),
        max=tuple(max(c[i] for c in corners) for i in range(3)),
    )


def metadata_from_scene(scene: SceneSnapshot, fmt: str = SCENE_FORMAT) -> VersionMetadata:
    return VersionMetadata(
        triangle_count=scene.total_triangles,
        vertex_count=scene.total_vertices,
        material_count=len(scene.materials),
        texture_count=len(scene.textures),
        bounding_box=scene_bounding_box(scene),
        format=fmt,
    )


class SceneMetadataExtractor:
    """Extractor for canonical scene documents."""

    supported_formats = (SCENE_FORMAT,)

    def extract(self, data: bytes, fmt: str = SCENE_FORMAT) -> VersionMetadata:
        if fmt not in self.supported_formats:
            raise ValueError(f"Unsupported format for scene extraction: {fmt}")
        return metadata_from_scene(SceneSnapshot.from_bytes(data), fmt)


def safe_extract(
    extractor: Optional[MetadataExtractor],
    data: bytes,
    fmt: str,
    logger,
) -> VersionMetadata:
    """Run the extractor, falling back to zeroed metadata on any failure."""
    if extractor is None:
        return VersionMetadata.zeroed(fmt)
    try:
        return extractor.extract(data, fmt)
    except Exception as e:
        logger.warning("metadata_extraction_failed", format=fmt, error=str(e))
        return VersionMetadata.zeroed(fmt)
