"""Chunked upload engine for the Dropbox API.

Public API
----------
.. autoclass:: UploadSession
.. autoclass:: BatchUploadCoordinator
.. autoclass:: RetryingRPC
.. autoclass:: BackoffPolicy
.. autoclass:: ContentHasher
.. autoclass:: TransferProgressTracker
"""

from dbxlib.upload.backoff import BackoffPolicy
from dbxlib.upload.batch import BatchUploadCoordinator
from dbxlib.upload.content_hash import (
    HASH_BLOCK_SIZE,
    ContentHasher,
    compute_content_hash,
    hash_add,
    hash_file,
    hash_finalize,
    hash_init,
)
from dbxlib.upload.exceptions import (
    BatchJobTimeoutError,
    ContentHashMismatchError,
    RateLimitError,
    RemoteFailureError,
    TooManyWriteOperationsError,
    TransferError,
)
from dbxlib.upload.progress import TransferProgressTracker
from dbxlib.upload.rpc import RetryingRPC
from dbxlib.upload.session import UploadSession, iter_chunks, read_chunks

__all__ = [
    "HASH_BLOCK_SIZE",
    "BackoffPolicy",
    "BatchJobTimeoutError",
    "BatchUploadCoordinator",
    "ContentHashMismatchError",
    "ContentHasher",
    "RateLimitError",
    "RemoteFailureError",
    "RetryingRPC",
    "TooManyWriteOperationsError",
    "TransferError",
    "TransferProgressTracker",
    "UploadSession",
    "compute_content_hash",
    "hash_add",
    "hash_file",
    "hash_finalize",
    "hash_init",
    "iter_chunks",
    "read_chunks",
]
