"""Batch upload coordinator.

Uploads many files and commits them with a single
``files/upload_session/finish_batch`` request:

* **Phase 1** -- stage every file in its own closed upload session,
  ``max_concurrent_uploads`` at a time (``asyncio.Semaphore``).
* **Phase 2** -- submit one batch commit for all unresolved files.  The
  server either answers with the entries directly or hands back an
  ``async_job_id`` that is polled with exponential backoff.
* **Phase 3** -- match the entries to the submitted files by position.
  Successes are hash-verified and resolved; ``too_many_write_operations``
  failures stay unresolved and go into the next round after a flat
  pause; any other failure aborts the batch.

Results are returned in input order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import TypeAdapter, ValidationError
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, stop_never

from dbxlib.metadata import (
    BatchEntryFailure,
    BatchEntrySuccess,
    BatchJobComplete,
    BatchJobInProgress,
    FileMetadata,
    finish_batch_launch_adapter,
    finish_batch_status_adapter,
)
from dbxlib.models import CommitInfo, TransferConfig, UploadState
from dbxlib.upload.backoff import BackoffPolicy
from dbxlib.upload.content_hash import verify_content_hash
from dbxlib.upload.exceptions import (
    BatchJobTimeoutError,
    RemoteFailureError,
    TooManyWriteOperationsError,
)
from dbxlib.upload.rpc import RetryingRPC, SleepFn
from dbxlib.upload.session import ByteSource, UploadSession

logger = logging.getLogger(__name__)

FINISH_BATCH = "files/upload_session/finish_batch"
FINISH_BATCH_CHECK = "files/upload_session/finish_batch/check"


class BatchUploadCoordinator:
    """Upload and commit a set of files as one batch.

    Usage::

        coordinator = BatchUploadCoordinator(rpc, config)
        records = await coordinator.upload_all([
            ("/photos/a.jpg", read_chunks("a.jpg", config.chunk_size)),
            (CommitInfo("/photos/b.jpg", mode=WriteMode.OVERWRITE), b"..."),
        ])

    Args:
        rpc: Rate-limit-aware RPC wrapper.
        config: Transfer configuration (concurrency, delays, chunk size).
        sleep: Coroutine used for the pause between commit rounds and the
            job-poll delays (injectable for tests).
        progress: Optional :class:`~dbxlib.upload.progress.TransferProgressTracker`.
    """

    def __init__(
        self,
        rpc: RetryingRPC,
        config: TransferConfig | None = None,
        sleep: SleepFn | None = None,
        progress: Any | None = None,
    ) -> None:
        self._rpc = rpc
        self._config = config or TransferConfig()
        self._sleep = sleep or rpc.sleep
        self._progress = progress
        self._backoff = BackoffPolicy(self._config.backoff_initial, self._config.backoff_max)
        self.rounds = 0

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def upload_all(
        self, files: Iterable[tuple[CommitInfo | str, ByteSource]]
    ) -> list[FileMetadata]:
        """Upload every ``(target, source)`` pair and commit them together.

        Raises:
            ContentHashMismatchError: A committed file's hash is wrong.
            RemoteFailureError: A staging request or a batch entry failed
                for a reason other than ``too_many_write_operations``.
        """
        items = [
            (CommitInfo(target) if isinstance(target, str) else target, source)
            for target, source in files
        ]
        if not items:
            return []

        states = await self._stage_all(items)

        unresolved = states
        while unresolved:
            self.rounds += 1
            logger.info(
                "Committing batch round %d (%d of %d files)",
                self.rounds,
                len(unresolved),
                len(states),
            )
            if self._progress is not None:
                self._progress.commit_round(self.rounds, len(unresolved))

            entries = await self._finish_batch(unresolved)
            self._reconcile(unresolved, entries)

            unresolved = [s for s in unresolved if not s.resolved]
            if unresolved:
                logger.warning(
                    "%d files hit too_many_write_operations, retrying in %.1fs",
                    len(unresolved),
                    self._config.write_retry_delay,
                )
                await self._sleep(self._config.write_retry_delay)

        return [s.result for s in states]  # type: ignore[misc]

    # ------------------------------------------------------------------
    # Phase 1: staging
    # ------------------------------------------------------------------

    async def _stage_all(
        self, items: list[tuple[CommitInfo, ByteSource]]
    ) -> list[UploadState]:
        semaphore = asyncio.Semaphore(self._config.max_concurrent_uploads)
        tasks = [
            self._stage_one(index, commit, source, semaphore)
            for index, (commit, source) in enumerate(items)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        failures = [r for r in results if isinstance(r, BaseException)]
        for exc in failures:
            logger.error("Staging failed: %s", exc)
        if failures:
            raise failures[0]
        return list(results)  # type: ignore[arg-type]

    async def _stage_one(
        self,
        index: int,
        commit: CommitInfo,
        source: ByteSource,
        semaphore: asyncio.Semaphore,
    ) -> UploadState:
        async with semaphore:
            session = UploadSession(self._rpc, self._config)
            try:
                cursor, expected = await session.stage(source, label=commit.path)
            except Exception as exc:
                if self._progress is not None:
                    self._progress.file_failed(commit.path, str(exc))
                raise
        if self._progress is not None:
            self._progress.file_staged(commit.path)
        return UploadState(index=index, commit=commit, cursor=cursor, expected_hash=expected)

    # ------------------------------------------------------------------
    # Phase 2: batch commit
    # ------------------------------------------------------------------

    async def _finish_batch(self, states: list[UploadState]) -> list[Any]:
        args = {
            "entries": [
                {"cursor": s.cursor.to_arg(), "commit": s.commit.to_arg()}
                for s in states
            ]
        }
        launch = _decode(
            finish_batch_launch_adapter, FINISH_BATCH, await self._rpc.rpc(FINISH_BATCH, args)
        )
        if isinstance(launch, BatchJobComplete):
            return launch.entries

        logger.info("Batch commit running as job %s", launch.async_job_id)
        return await self._poll_job(launch.async_job_id)

    async def _poll_job(self, async_job_id: str) -> list[Any]:
        """Poll ``finish_batch/check`` until the job is complete."""
        timeout = self._config.poll_timeout_seconds
        status: Any = None
        try:
            async for attempt in AsyncRetrying(
                wait=self._backoff,
                stop=stop_after_delay(timeout) if timeout is not None else stop_never,
                retry=retry_if_result(lambda s: isinstance(s, BatchJobInProgress)),
                sleep=self._sleep,
            ):
                with attempt:
                    status = _decode(
                        finish_batch_status_adapter,
                        FINISH_BATCH_CHECK,
                        await self._rpc.rpc(FINISH_BATCH_CHECK, {"async_job_id": async_job_id}),
                    )
                    logger.debug("Job %s: %s", async_job_id, status.tag)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(status)
        except RetryError as exc:
            raise BatchJobTimeoutError(async_job_id, float(timeout or 0)) from exc
        return status.entries

    # ------------------------------------------------------------------
    # Phase 3: reconciliation
    # ------------------------------------------------------------------

    def _reconcile(self, states: list[UploadState], entries: list[Any]) -> None:
        if len(entries) != len(states):
            raise RemoteFailureError(
                f"finish_batch returned {len(entries)} entries for {len(states)} files"
            )

        for state, entry in zip(states, entries):
            try:
                metadata = _entry_metadata(state, entry)
            except TooManyWriteOperationsError:
                logger.debug("%s: too_many_write_operations, will retry", state.path)
                continue
            verify_content_hash(state.path, state.expected_hash, metadata.content_hash)
            state.result = metadata
            if self._progress is not None:
                self._progress.file_committed(state.path)


def _decode(adapter: TypeAdapter[Any], endpoint: str, payload: Any) -> Any:
    """Validate a job answer, reporting an unknown shape as a remote failure."""
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise RemoteFailureError(
            f"{endpoint}: unexpected response ({exc.error_count()} validation errors)"
        ) from exc


def _entry_metadata(state: UploadState, entry: Any) -> FileMetadata:
    """Decode one batch entry, raising for failures."""
    if isinstance(entry, BatchEntrySuccess):
        return entry.to_metadata()
    if isinstance(entry, BatchEntryFailure) and entry.reason == "too_many_write_operations":
        raise TooManyWriteOperationsError(state.path)
    failure = entry.failure if isinstance(entry, BatchEntryFailure) else {}
    raise RemoteFailureError(
        f"{state.path}: {getattr(entry, 'reason', 'unknown')}", error=failure
    )
