"""Chunked upload of a single file through an upload session.

Protocol::

    files/upload_session/start      first non-empty chunk  -> session_id
    files/upload_session/append_v2  every later chunk at cursor.offset
    files/upload_session/finish     cursor + commit (no payload)

A source that never yields a byte is sent with a single-shot
``files/upload`` instead, since a session needs at least one byte to be
meaningful.  The session is not closed before ``finish``; finishing
closes it implicitly and saves a round trip.

For batch commits, :meth:`UploadSession.stage` runs the same chunk loop
but closes the session with a zero-byte ``append_v2(close=True)`` and
returns the cursor instead of committing.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from pathlib import Path
from typing import Any, BinaryIO, Union

from dbxlib.metadata import FileMetadata
from dbxlib.models import CommitInfo, TransferConfig, UploadCursor
from dbxlib.upload.content_hash import ContentHasher, verify_content_hash
from dbxlib.upload.fsm import create_fsm
from dbxlib.upload.rpc import RetryingRPC

logger = logging.getLogger(__name__)

ByteSource = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes], AsyncIterable[bytes]]

START = "files/upload_session/start"
APPEND = "files/upload_session/append_v2"
FINISH = "files/upload_session/finish"
UPLOAD = "files/upload"


def read_chunks(path: str | Path, chunk_size: int) -> Iterator[bytes]:
    """Yield the content of a local file in pieces of at most *chunk_size* bytes."""
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk


async def iter_chunks(source: ByteSource, chunk_size: int) -> AsyncIterator[bytes]:
    """Normalise *source* into an async stream of bounded ``bytes`` chunks.

    Accepts a bytes-like buffer, a binary file object, or a sync or async
    iterable of byte chunks.  Pieces longer than *chunk_size* are split;
    empty pieces are passed through.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        for piece in _split(source, chunk_size):
            yield piece
    elif hasattr(source, "read"):
        while chunk := source.read(chunk_size):  # type: ignore[union-attr]
            yield bytes(chunk)
    elif hasattr(source, "__aiter__"):
        async for piece in source:  # type: ignore[union-attr]
            for part in _split(piece, chunk_size):
                yield part
    else:
        for piece in source:  # type: ignore[union-attr]
            for part in _split(piece, chunk_size):
                yield part


def _split(piece: bytes | bytearray | memoryview, chunk_size: int) -> Iterator[bytes]:
    if len(piece) <= chunk_size:
        yield bytes(piece)
        return
    view = memoryview(piece)
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start : start + chunk_size])


class UploadSession:
    """Upload one file in bounded chunks and verify its content hash.

    An instance drives exactly one file; create a new one per upload.

    Usage::

        session = UploadSession(rpc, config)
        metadata = await session.upload(CommitInfo("/backups/disk.img"),
                                        read_chunks("disk.img", config.chunk_size))
    """

    def __init__(self, rpc: RetryingRPC, config: TransferConfig | None = None) -> None:
        self._rpc = rpc
        self._config = config or TransferConfig()
        self._fsm = create_fsm()
        self.cursor: UploadCursor | None = None
        self.content_hash: str | None = None

    @property
    def state(self) -> str:
        return self._fsm.current_state.value

    async def upload(self, commit: CommitInfo | str, source: ByteSource) -> FileMetadata:
        """Send *source* and commit it as *commit*.

        Raises:
            ContentHashMismatchError: The committed file's hash differs from
                the hash of the bytes that were read from *source*.
            RemoteFailureError: The server rejected a request.
        """
        if isinstance(commit, str):
            commit = CommitInfo(commit)

        expected = await self._send_chunks(source, commit.path)

        if self.cursor is None:
            logger.debug("%s: empty source, using single-shot upload", commit.path)
            result = await self._rpc.upload(UPLOAD, commit.to_arg(), b"")
        else:
            result = await self._rpc.upload(
                FINISH,
                {"cursor": self.cursor.to_arg(), "commit": commit.to_arg()},
                b"",
            )
        self._fsm.finalize()

        metadata = FileMetadata.model_validate(result)
        verify_content_hash(commit.path, expected, metadata.content_hash)
        logger.info(
            "Uploaded %s (%d bytes, content_hash=%s)",
            commit.path,
            metadata.size,
            metadata.content_hash,
        )
        return metadata

    async def stage(self, source: ByteSource, label: str = "") -> tuple[UploadCursor, str]:
        """Send *source* into a closed session without committing it.

        An empty source still opens a session (with an empty payload) and
        closes it, because batch commits have no single-shot path.

        Returns:
            ``(cursor, expected_content_hash)`` for the batch commit.
        """
        expected = await self._send_chunks(source, label)

        if self.cursor is None:
            await self._open(b"")
        await self._rpc.upload(APPEND, {"cursor": self.cursor.to_arg(), "close": True}, b"")
        self._fsm.close_session()

        logger.debug("%s: staged %d bytes in session %s", label, self.cursor.offset,
                     self.cursor.session_id)
        return self.cursor, expected

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _send_chunks(self, source: ByteSource, label: str) -> str:
        """Start/append every non-empty chunk; return the local content hash."""
        hasher = ContentHasher()
        async for chunk in iter_chunks(source, self._config.chunk_size):
            hasher.add(chunk)
            if not chunk:
                continue
            if self.cursor is None:
                await self._open(chunk)
            else:
                await self._rpc.upload(
                    APPEND, {"cursor": self.cursor.to_arg(), "close": False}, chunk
                )
                self.cursor = self.cursor.advanced(len(chunk))
                self._fsm.append()
            logger.debug("%s: cursor at %d", label, self.cursor.offset)

        self.content_hash = hasher.finalize()
        return self.content_hash

    async def _open(self, chunk: bytes) -> None:
        result: dict[str, Any] = await self._rpc.upload(START, {"close": False}, chunk)
        self.cursor = UploadCursor(result["session_id"], len(chunk))
        self._fsm.open_session()
