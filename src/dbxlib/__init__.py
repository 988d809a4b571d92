"""Dropbox client with chunked, hash-verified uploads and batch commits."""

__version__ = "0.1.0"

from dbxlib.models import CommitInfo, TransferConfig, UploadCursor, UploadState, WriteMode

__all__ = [
    "CommitInfo",
    "TransferConfig",
    "UploadCursor",
    "UploadState",
    "WriteMode",
    "__version__",
]
