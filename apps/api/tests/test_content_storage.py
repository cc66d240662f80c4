"""
Tests for content addressing, blob storage and scene snapshots.
"""

import gzip
import io

import pytest

from asset_vcs.core.cancellation import Deadline
from asset_vcs.core.exceptions import BlobStoreError, NotFoundError, OperationTimeoutError
from asset_vcs.models.version_control import SCENE_FORMAT, AssetContent
from asset_vcs.services.blob_store import FileSystemBlobStore, InMemoryBlobStore
from asset_vcs.services.content_addresser import ContentAddresser
from asset_vcs.services.metadata_extractor import SceneMetadataExtractor
from asset_vcs.services.snapshot_repository import SnapshotRepository

from factories import base_scene, mesh, scene

# sha256(b"hello")
HELLO_HASH = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


@pytest.fixture
def addresser():
    """Create a ContentAddresser."""
    return ContentAddresser()


@pytest.fixture
def fs_store(tmp_path):
    """Create a compressed filesystem blob store in a temporary directory."""
    return FileSystemBlobStore(tmp_path / "blobs", compression_enabled=True)


class TestContentAddresser:
    def test_hash_is_sha256_hex(self, addresser):
        assert addresser.hash_bytes(b"hello") == HELLO_HASH
        assert addresser.is_valid_hash(HELLO_HASH)

    def test_stream_hash_matches_bytes_hash(self, addresser):
        data = b"x" * (3 * 1024 * 1024 + 17)
        assert addresser.hash_stream(io.BytesIO(data)) == addresser.hash_bytes(data)

    def test_verify(self, addresser):
        assert addresser.verify(b"hello", HELLO_HASH)
        assert not addresser.verify(b"hello!", HELLO_HASH)

    @pytest.mark.parametrize("value", ["", "abc", HELLO_HASH.upper(), HELLO_HASH + "0"])
    def test_invalid_hashes(self, addresser, value):
        assert not addresser.is_valid_hash(value)


class TestInMemoryBlobStore:
    def test_put_uses_fan_out_path(self):
        store = InMemoryBlobStore()
        path = store.put(HELLO_HASH, b"hello")
        assert path == f"{HELLO_HASH[:2]}/{HELLO_HASH[2:]}"
        assert store.get(path) == b"hello"

    def test_identical_content_is_stored_once(self):
        store = InMemoryBlobStore()
        first = store.put(HELLO_HASH, b"hello")
        second = store.put(HELLO_HASH, b"hello")
        assert first == second
        assert len(store) == 1

    def test_missing_blob(self):
        store = InMemoryBlobStore()
        with pytest.raises(NotFoundError):
            store.get("ab/cdef")

    def test_delete(self):
        store = InMemoryBlobStore()
        path = store.put(HELLO_HASH, b"hello")
        assert store.delete(path) is True
        assert store.delete(path) is False
        assert not store.exists(path)


class TestFileSystemBlobStore:
    def test_roundtrip_compressed(self, fs_store):
        path = fs_store.put(HELLO_HASH, b"hello")
        on_disk = fs_store.objects_path / HELLO_HASH[:2] / HELLO_HASH[2:]

        assert on_disk.exists()
        assert gzip.decompress(on_disk.read_bytes()) == b"hello"
        assert fs_store.get(path) == b"hello"

    def test_uncompressed_store_writes_raw_bytes(self, tmp_path):
        store = FileSystemBlobStore(tmp_path, compression_enabled=False)
        store.put(HELLO_HASH, b"hello")
        assert (store.objects_path / HELLO_HASH[:2] / HELLO_HASH[2:]).read_bytes() == b"hello"

    def test_dedupe_keeps_single_file(self, fs_store):
        fs_store.put(HELLO_HASH, b"hello")
        fs_store.put(HELLO_HASH, b"hello")
        files = [p for p in fs_store.objects_path.rglob("*") if p.is_file()]
        assert len(files) == 1

    def test_corrupted_blob_is_detected(self, tmp_path):
        store = FileSystemBlobStore(tmp_path, compression_enabled=True)
        path = store.put(HELLO_HASH, b"hello")
        on_disk = store.objects_path / HELLO_HASH[:2] / HELLO_HASH[2:]
        on_disk.write_bytes(gzip.compress(b"tampered"))

        # Fresh instance so the read cache does not mask the corruption
        reader = FileSystemBlobStore(tmp_path, compression_enabled=True)
        with pytest.raises(BlobStoreError):
            reader.get(path)

    def test_unreadable_blob_is_store_error(self, tmp_path):
        store = FileSystemBlobStore(tmp_path, compression_enabled=True)
        path = store.put(HELLO_HASH, b"hello")
        (store.objects_path / HELLO_HASH[:2] / HELLO_HASH[2:]).write_bytes(b"not gzip")

        reader = FileSystemBlobStore(tmp_path, compression_enabled=True)
        with pytest.raises(BlobStoreError):
            reader.get(path)

    def test_missing_blob(self, fs_store):
        with pytest.raises(NotFoundError):
            fs_store.get(f"{HELLO_HASH[:2]}/{HELLO_HASH[2:]}")

    @pytest.mark.parametrize("path", ["noslash", "../etc/passwd", "ab/../../x"])
    def test_malformed_paths_rejected(self, fs_store, path):
        with pytest.raises(BlobStoreError):
            fs_store.get(path)

    def test_delete(self, fs_store):
        path = fs_store.put(HELLO_HASH, b"hello")
        assert fs_store.delete(path) is True
        assert fs_store.delete(path) is False
        with pytest.raises(NotFoundError):
            fs_store.get(path)

    def test_expired_deadline_refuses_io(self, fs_store):
        with pytest.raises(OperationTimeoutError):
            fs_store.put(HELLO_HASH, b"hello", deadline=Deadline(0))


class TestSnapshotRepository:
    def test_scene_only_content_shares_one_blob(self):
        blobs = InMemoryBlobStore()
        repo = SnapshotRepository(blobs, SceneMetadataExtractor())

        stored = repo.write(AssetContent(scene=base_scene()))

        assert stored.storage_path == stored.scene_path
        assert len(blobs) == 1
        assert stored.metadata.triangle_count == 1000
        assert stored.metadata.material_count == 1

    def test_payload_and_scene_are_stored_separately(self):
        blobs = InMemoryBlobStore()
        repo = SnapshotRepository(blobs, SceneMetadataExtractor())

        stored = repo.write(AssetContent(scene=base_scene(), payload=b"glTF-binary", format="model/gltf-binary"))

        assert stored.storage_path != stored.scene_path
        assert stored.content_hash == ContentAddresser().hash_bytes(b"glTF-binary")
        assert stored.size_bytes == len(b"glTF-binary")
        assert len(blobs) == 2

    def test_unsupported_format_falls_back_to_zeroed_metadata(self):
        repo = SnapshotRepository(InMemoryBlobStore(), SceneMetadataExtractor())
        stored = repo.write(AssetContent(scene=base_scene(), payload=b"\x00\x01", format="model/obj"))

        assert stored.metadata.triangle_count == 0
        assert stored.metadata.format == "model/obj"

    def test_identical_scenes_hash_identically(self):
        repo = SnapshotRepository(InMemoryBlobStore(), SceneMetadataExtractor())
        first = repo.write(AssetContent(scene=scene(meshes=[mesh("a", 10), mesh("b", 20)])))
        second = repo.write(AssetContent(scene=scene(meshes=[mesh("a", 10), mesh("b", 20)])))
        assert first.content_hash == second.content_hash
        assert first.metadata.format == SCENE_FORMAT
