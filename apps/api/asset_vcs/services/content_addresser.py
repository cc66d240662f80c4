"""
Content addressing for asset payloads.

A version's content hash is the SHA-256 of the bytes stored for it. Two
commits with byte-identical payloads share one hash and therefore one blob.
"""

from __future__ import annotations

import hashlib
import re
from typing import BinaryIO, Union

HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")
_CHUNK_SIZE = 1024 * 1024


class ContentAddresser:
    """SHA-256 hashing for deduplication and integrity checks."""

    algorithm = "sha256"

    def hash_bytes(self, data: Union[bytes, bytearray, memoryview]) -> str:
        return hashlib.sha256(data).hexdigest()

    def hash_stream(self, stream: BinaryIO) -> str:
        """Hash a file-like object without loading it into memory at once."""
        digest = hashlib.sha256()
        for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
        return digest.hexdigest()

    def verify(self, data: bytes, expected_hash: str) -> bool:
        return self.hash_bytes(data) == expected_hash

    @staticmethod
    def is_valid_hash(value: str) -> bool:
        return bool(HASH_PATTERN.match(value or ""))
