"""
Blob storage for asset payloads and scene documents.

Blobs are addressed by their SHA-256 content hash, so storing the same bytes
twice yields the same path and a single physical copy.
"""

from __future__ import annotations

import gzip
import os
import threading
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..core.cancellation import Deadline, check_deadline
from ..core.exceptions import BlobStoreError, NotFoundError
from .content_addresser import ContentAddresser

logger = structlog.get_logger(__name__)


class BlobStore(ABC):
    """Persistence boundary for raw bytes."""

    @abstractmethod
    def put(self, content_hash: str, data: bytes, deadline: Optional[Deadline] = None) -> str:
        """Store ``data`` under ``content_hash`` and return its path."""

    @abstractmethod
    def get(self, path: str, deadline: Optional[Deadline] = None) -> bytes:
        """Return the bytes stored at ``path``; ``NotFoundError`` if missing."""

    @abstractmethod
    def exists(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        ...

    @abstractmethod
    def delete(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        """Remove a blob. Returns False when nothing was stored at ``path``."""

    @staticmethod
    def path_for(content_hash: str) -> str:
        # Fan-out by the first byte of the hash, like git's object directory
        return f"{content_hash[:2]}/{content_hash[2:]}"


class InMemoryBlobStore(BlobStore):
    """Process-local blob store used for tests and single-node deployments."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, content_hash: str, data: bytes, deadline: Optional[Deadline] = None) -> str:
        check_deadline(deadline, "blob put")
        path = self.path_for(content_hash)
        with self._lock:
            self._blobs.setdefault(path, bytes(data))
        return path

    def get(self, path: str, deadline: Optional[Deadline] = None) -> bytes:
        check_deadline(deadline, "blob get")
        with self._lock:
            data = self._blobs.get(path)
        if data is None:
            raise NotFoundError(f"Blob not found: {path}", details={"path": path})
        return data

    def exists(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        check_deadline(deadline, "blob exists")
        with self._lock:
            return path in self._blobs

    def delete(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        check_deadline(deadline, "blob delete")
        with self._lock:
            return self._blobs.pop(path, None) is not None

    def __len__(self) -> int:
        return len(self._blobs)


class FileSystemBlobStore(BlobStore):
    """
    Content-addressed blob store on a local or mounted filesystem.

    Features:
    - gzip compression (optional)
    - fan-out directories keyed by hash prefix
    - atomic writes via temp file and ``os.replace``
    - integrity verification on read
    - small LRU cache of recently read blobs
    """

    def __init__(
        self,
        root: Path,
        compression_enabled: bool = True,
        cache_size_limit: int = 64,
    ):
        self.root = Path(root)
        self.objects_path = self.root / "objects"
        self.compression_enabled = compression_enabled
        self._addresser = ContentAddresser()
        self._cache: OrderedDict[str, bytes] = OrderedDict()
        self._cache_size_limit = cache_size_limit
        self._cache_lock = threading.Lock()
        self.objects_path.mkdir(parents=True, exist_ok=True)
        logger.info("blob_store_initialized", store_path=str(self.root))

    def put(self, content_hash: str, data: bytes, deadline: Optional[Deadline] = None) -> str:
        check_deadline(deadline, "blob put")
        path = self.path_for(content_hash)
        target = self._file_for(path)
        if target.exists():
            logger.debug("blob_already_exists", content_hash=content_hash[:8])
            return path

        try:
            encoded = gzip.compress(data) if self.compression_enabled else data
            target.parent.mkdir(parents=True, exist_ok=True)
            temp_path = target.with_name(f"{target.name}.{uuid.uuid4().hex}.tmp")
            with open(temp_path, "wb") as f:
                f.write(encoded)
            os.replace(temp_path, target)
        except OSError as e:
            logger.error("blob_store_failed", content_hash=content_hash[:8], error=str(e))
            raise BlobStoreError(f"Failed to store blob {content_hash[:8]}: {e}") from e

        logger.info(
            "blob_stored",
            content_hash=content_hash[:8],
            size=len(data),
            stored_size=len(encoded),
        )
        return path

    def get(self, path: str, deadline: Optional[Deadline] = None) -> bytes:
        check_deadline(deadline, "blob get")
        with self._cache_lock:
            if path in self._cache:
                self._cache.move_to_end(path)
                return self._cache[path]

        target = self._file_for(path)
        if not target.exists():
            raise NotFoundError(f"Blob not found: {path}", details={"path": path})

        try:
            with open(target, "rb") as f:
                raw = f.read()
            data = gzip.decompress(raw) if self.compression_enabled else raw
        except (OSError, EOFError) as e:
            logger.error("blob_read_failed", path=path, error=str(e))
            raise BlobStoreError(f"Failed to read blob {path}: {e}") from e

        expected = path.replace("/", "")
        if not self._addresser.verify(data, expected):
            logger.error("blob_integrity_check_failed", path=path)
            raise BlobStoreError(
                f"Blob {path} failed integrity verification",
                details={"path": path},
            )

        self._update_cache(path, data)
        return data

    def exists(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        check_deadline(deadline, "blob exists")
        return self._file_for(path).exists()

    def delete(self, path: str, deadline: Optional[Deadline] = None) -> bool:
        check_deadline(deadline, "blob delete")
        with self._cache_lock:
            self._cache.pop(path, None)
        target = self._file_for(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob {path}: {e}") from e
        logger.info("blob_deleted", path=path)
        return True

    def _file_for(self, path: str) -> Path:
        subdir, _, filename = path.partition("/")
        if not subdir or not filename or ".." in path:
            raise BlobStoreError(f"Malformed blob path: {path}", details={"path": path})
        return self.objects_path / subdir / filename

    def _update_cache(self, path: str, data: bytes) -> None:
        with self._cache_lock:
            self._cache[path] = data
            self._cache.move_to_end(path)
            while len(self._cache) > self._cache_size_limit:
                self._cache.popitem(last=False)
