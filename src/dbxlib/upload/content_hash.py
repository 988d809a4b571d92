"""Dropbox content hash.

The server hashes file content in two levels: every 4 MiB block is
hashed with SHA-256, then the concatenation of the block digests is
hashed again.  The hex form of that second digest is the file's
``content_hash``.  Reproducing it locally lets uploads and downloads be
verified without transferring the data a second time.

Usage::

    hasher = hash_init()
    for chunk in read_chunks("big.iso"):
        hash_add(hasher, chunk)
    digest = hash_finalize(hasher)
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from dbxlib.upload.exceptions import ContentHashMismatchError

# Block size of the hashing scheme; unrelated to the network chunk size.
HASH_BLOCK_SIZE: int = 4 * 1024 * 1024


class ContentHasher:
    """Incremental two-level content hash.

    ``_pending`` is always shorter than :data:`HASH_BLOCK_SIZE` between
    calls; full blocks are digested as soon as they are complete.
    """

    def __init__(self) -> None:
        self._block_digests: list[bytes] = []
        self._pending = bytearray()
        self._hexdigest: str | None = None

    @property
    def block_digests(self) -> list[bytes]:
        return list(self._block_digests)

    @property
    def pending_size(self) -> int:
        return len(self._pending)

    def add(self, data: bytes | bytearray | memoryview) -> ContentHasher:
        """Feed *data* into the hash and return ``self``."""
        if self._hexdigest is not None:
            raise RuntimeError("content hash already finalized")

        view = memoryview(data).cast("B")
        if self._pending:
            take = HASH_BLOCK_SIZE - len(self._pending)
            self._pending += view[:take]
            view = view[take:]
            if len(self._pending) < HASH_BLOCK_SIZE:
                return self
            self._block_digests.append(hashlib.sha256(self._pending).digest())
            self._pending = bytearray()

        while len(view) >= HASH_BLOCK_SIZE:
            self._block_digests.append(hashlib.sha256(view[:HASH_BLOCK_SIZE]).digest())
            view = view[HASH_BLOCK_SIZE:]
        self._pending += view
        return self

    def finalize(self) -> str:
        """Fold the trailing partial block in and return the hex content hash.

        An empty input has no blocks at all, so its hash is the SHA-256
        of an empty digest list.
        """
        if self._hexdigest is None:
            if self._pending:
                self._block_digests.append(hashlib.sha256(self._pending).digest())
                self._pending = bytearray()
            self._hexdigest = hashlib.sha256(b"".join(self._block_digests)).hexdigest()
        return self._hexdigest


def hash_init() -> ContentHasher:
    return ContentHasher()


def hash_add(state: ContentHasher, data: bytes | bytearray | memoryview) -> ContentHasher:
    return state.add(data)


def hash_finalize(state: ContentHasher) -> str:
    return state.finalize()


def compute_content_hash(data: bytes | bytearray | memoryview) -> str:
    """One-shot content hash of an in-memory buffer."""
    return ContentHasher().add(data).finalize()


def hash_file(path: str | Path, chunk_size: int = HASH_BLOCK_SIZE) -> str:
    """Content hash of a local file, read in *chunk_size* pieces."""
    hasher = ContentHasher()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.add(chunk)
    return hasher.finalize()


def verify_content_hash(path: str, expected: str, actual: str | None) -> None:
    """Raise :class:`ContentHashMismatchError` unless *actual* equals *expected*."""
    if actual != expected:
        raise ContentHashMismatchError(path, expected, actual)
