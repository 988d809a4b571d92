"""Data models and enums for the Dropbox transfer engine.

Wire-format responses (tagged ``.tag`` unions) live in
:mod:`dbxlib.metadata`; this module holds the client-side value objects
and the transfer configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dbxlib.metadata import FileMetadata

MiB = 1024 * 1024

# Hard per-request payload limit of the content endpoints.
MAX_UPLOAD_CHUNK_SIZE: int = 150 * MiB


class WriteMode(str, Enum):
    """Conflict behaviour when committing a file."""

    ADD = "add"
    OVERWRITE = "overwrite"


@dataclass(frozen=True)
class CommitInfo:
    """Where and how an uploaded file is committed."""

    path: str
    mode: WriteMode = WriteMode.ADD
    autorename: bool = False
    mute: bool = False
    strict_conflict: bool = False

    def to_arg(self) -> dict[str, Any]:
        """Serialise to the ``commit`` argument of the upload endpoints."""
        return {
            "path": self.path,
            "mode": self.mode.value,
            "autorename": self.autorename,
            "mute": self.mute,
            "strict_conflict": self.strict_conflict,
        }


@dataclass(frozen=True)
class UploadCursor:
    """Position of the next expected byte in a remote upload session."""

    session_id: str
    offset: int = 0

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"cursor offset must be non-negative, got {self.offset}")

    def advanced(self, nbytes: int) -> UploadCursor:
        """Return the cursor moved forward by *nbytes*."""
        return replace(self, offset=self.offset + nbytes)

    def to_arg(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "offset": self.offset}


@dataclass
class UploadState:
    """One file of a batch upload, between staging and commit.

    ``index`` is the file's position in the caller's input and never
    changes, so results can be returned in input order whatever the
    number of commit rounds.
    """

    index: int
    commit: CommitInfo
    cursor: UploadCursor
    expected_hash: str
    result: FileMetadata | None = None

    @property
    def path(self) -> str:
        return self.commit.path

    @property
    def resolved(self) -> bool:
        return self.result is not None


@dataclass
class TransferConfig:
    """Tuning knobs for the upload engine.

    Attributes:
        chunk_size: Maximum bytes sent per network request.
        max_concurrent_uploads: Files staged in parallel during a batch.
        backoff_initial: First delay (seconds) of the exponential backoff.
        backoff_max: Cap (seconds) of the exponential backoff.
        write_retry_delay: Flat pause between batch commit rounds.
        poll_timeout_seconds: Give up polling a batch job after this many
            seconds (``None`` polls until the job completes).
        timeout: HTTP request timeout in seconds.
    """

    chunk_size: int = 8 * MiB
    max_concurrent_uploads: int = 4
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    write_retry_delay: float = 1.0
    poll_timeout_seconds: float | None = None
    timeout: float = 300.0

    def __post_init__(self) -> None:
        if not 0 < self.chunk_size <= MAX_UPLOAD_CHUNK_SIZE:
            raise ValueError(
                f"chunk_size must be between 1 and {MAX_UPLOAD_CHUNK_SIZE} bytes, "
                f"got {self.chunk_size}"
            )
        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")
