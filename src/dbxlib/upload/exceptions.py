"""Exception taxonomy for the transfer engine.

* :class:`RateLimitError` -- absorbed by :class:`~dbxlib.upload.rpc.RetryingRPC`.
* :class:`TooManyWriteOperationsError` -- absorbed by the batch commit loop.
* :class:`ContentHashMismatchError` -- always fatal, never retried.
* :class:`RemoteFailureError` -- surfaced with the server's error summary.
"""

from __future__ import annotations

from typing import Any


class TransferError(Exception):
    """Base class for all transfer failures."""


class RateLimitError(TransferError):
    """The server answered 429; retry after ``retry_after`` seconds.

    ``retry_after`` is ``None`` when the server gave no hint, in which
    case the caller falls back to exponential backoff.
    """

    def __init__(self, retry_after: float | None = None, reason: str | None = None) -> None:
        self.retry_after = retry_after
        self.reason = reason
        hint = f"retry after {retry_after}s" if retry_after is not None else "no retry hint"
        super().__init__(f"429 rate limit ({reason or 'too_many_requests'}, {hint})")


class RemoteFailureError(TransferError):
    """Non-retryable error reported by the server."""

    def __init__(
        self,
        summary: str,
        status_code: int | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        self.summary = summary
        self.status_code = status_code
        self.error = error or {}
        prefix = f"Error {status_code}: " if status_code is not None else ""
        super().__init__(f"{prefix}{summary}")

    @property
    def tag(self) -> str | None:
        """Top-level ``.tag`` of the structured error, if any."""
        tag = self.error.get(".tag")
        return str(tag) if tag is not None else None


class TooManyWriteOperationsError(RemoteFailureError):
    """Concurrent writes to the same namespace were throttled by the server."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        super().__init__(
            "too_many_write_operations",
            error={".tag": "too_many_write_operations"},
        )


class ContentHashMismatchError(TransferError):
    """The server's content hash differs from the locally computed one."""

    def __init__(self, path: str, expected: str, actual: str | None) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{path}: content hash mismatch (local {expected}, remote {actual})"
        )


class BatchJobTimeoutError(TransferError):
    """A batch commit job did not complete within the configured timeout."""

    def __init__(self, async_job_id: str, timeout: float) -> None:
        self.async_job_id = async_job_id
        self.timeout = timeout
        super().__init__(
            f"Batch job {async_job_id} still in progress after {timeout}s"
        )
