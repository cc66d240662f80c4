"""
Reads and writes version content through the blob store.

A version references two blobs: the payload that was committed (raw asset
bytes, or the canonical scene document when no raw bytes were supplied) and
the canonical scene document used for structural diffing. When no raw bytes
were supplied both paths are the same blob.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import NamedTuple, Optional

import structlog

from ..core.cancellation import Deadline
from ..core.exceptions import BlobStoreError, VersionControlError
from ..models.version_control import AssetContent, ModelVersion, SceneSnapshot, VersionMetadata
from .blob_store import BlobStore
from .content_addresser import ContentAddresser
from .metadata_extractor import MetadataExtractor, safe_extract

logger = structlog.get_logger(__name__)


class StoredContent(NamedTuple):
    content_hash: str
    size_bytes: int
    storage_path: str
    scene_path: str
    metadata: VersionMetadata


class SnapshotRepository:
    def __init__(
        self,
        blob_store: BlobStore,
        extractor: Optional[MetadataExtractor] = None,
        addresser: Optional[ContentAddresser] = None,
        scene_cache_size: int = 128,
    ):
        self.blob_store = blob_store
        self.extractor = extractor
        self.addresser = addresser or ContentAddresser()
        self._scene_cache: OrderedDict[str, SceneSnapshot] = OrderedDict()
        self._scene_cache_size = scene_cache_size
        self._lock = threading.Lock()

    def write(self, content: AssetContent, deadline: Optional[Deadline] = None) -> StoredContent:
        """Store payload and scene blobs, returning what a version must reference."""
        data = content.data
        content_hash = self.addresser.hash_bytes(data)
        storage_path = self._put(content_hash, data, deadline)

        if content.payload is None:
            scene_path = storage_path
        else:
            scene_bytes = content.scene.canonical_bytes()
            scene_path = self._put(self.addresser.hash_bytes(scene_bytes), scene_bytes, deadline)

        metadata = safe_extract(self.extractor, data, content.format, logger)
        self._remember(scene_path, content.scene)
        return StoredContent(
            content_hash=content_hash,
            size_bytes=len(data),
            storage_path=storage_path,
            scene_path=scene_path,
            metadata=metadata,
        )

    @staticmethod
    def stored_of(version: ModelVersion) -> StoredContent:
        """Content reference of an existing version, reused verbatim."""
        return StoredContent(
            content_hash=version.content_hash,
            size_bytes=version.size_bytes,
            storage_path=version.storage_path,
            scene_path=version.scene_path,
            metadata=version.metadata.model_copy(deep=True),
        )

    def read_scene(self, version: ModelVersion, deadline: Optional[Deadline] = None) -> SceneSnapshot:
        with self._lock:
            cached = self._scene_cache.get(version.scene_path)
            if cached is not None:
                self._scene_cache.move_to_end(version.scene_path)
                return cached.model_copy(deep=True)

        data = self._get(version.scene_path, deadline)
        try:
            scene = SceneSnapshot.from_bytes(data)
        except ValueError as e:
            raise BlobStoreError(
                f"Scene document of version {version.id} is unreadable: {e}",
                details={"version_id": str(version.id), "path": version.scene_path},
            ) from e
        self._remember(version.scene_path, scene)
        return scene.model_copy(deep=True)

    def read_content(self, version: ModelVersion, deadline: Optional[Deadline] = None) -> AssetContent:
        scene = self.read_scene(version, deadline)
        payload = None
        if version.storage_path != version.scene_path:
            payload = self._get(version.storage_path, deadline)
        return AssetContent(scene=scene, payload=payload, format=version.metadata.format)

    def delete_blob(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        """Remove a blob no version references any more."""
        with self._lock:
            self._scene_cache.pop(path, None)
        return self.blob_store.delete(path, deadline=deadline)

    def _put(self, content_hash: str, data: bytes, deadline: Optional[Deadline]) -> str:
        try:
            return self.blob_store.put(content_hash, data, deadline=deadline)
        except VersionControlError:
            raise
        except Exception as e:
            raise BlobStoreError(f"Failed to store blob {content_hash[:8]}: {e}") from e

    def _get(self, path: str, deadline: Optional[Deadline]) -> bytes:
        try:
            return self.blob_store.get(path, deadline=deadline)
        except VersionControlError:
            raise
        except Exception as e:
            raise BlobStoreError(f"Failed to read blob {path}: {e}") from e

    def _remember(self, path: str, scene: SceneSnapshot) -> None:
        with self._lock:
            self._scene_cache[path] = scene.model_copy(deep=True)
            self._scene_cache.move_to_end(path)
            while len(self._scene_cache) > self._scene_cache_size:
                self._scene_cache.popitem(last=False)
