"""Rate-limit-aware wrapper around the transport.

Every remote call of the upload engine goes through :class:`RetryingRPC`.
A 429 answer is retried without limit: after the server's
``Retry-After`` delay when it sent one, otherwise after the
:class:`BackoffPolicy` delay for the attempt.  Any other failure is
raised unchanged for the caller to handle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_never,
)

from dbxlib.upload.backoff import BackoffPolicy
from dbxlib.upload.exceptions import RateLimitError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class Transport(Protocol):
    """The request styles :class:`RetryingRPC` needs from a transport."""

    async def rpc(self, endpoint: str, args: dict[str, Any] | None = None) -> Any: ...

    async def content_upload(
        self, endpoint: str, args: dict[str, Any], payload: bytes
    ) -> Any: ...

    async def content_download(
        self, endpoint: str, args: dict[str, Any]
    ) -> tuple[dict[str, Any], bytes]: ...


class RetryingRPC:
    """Issue transport calls, sleeping through rate limits.

    Args:
        transport: Object implementing :class:`Transport`.
        backoff: Delay sequence used when a 429 carries no ``Retry-After``.
        sleep: Coroutine used to wait between attempts (injectable for tests).
    """

    def __init__(
        self,
        transport: Transport,
        backoff: BackoffPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.backoff = backoff or BackoffPolicy()
        self.sleep = sleep

    async def rpc(self, endpoint: str, args: dict[str, Any] | None = None) -> Any:
        return await self.execute(endpoint, self.transport.rpc, endpoint, args)

    async def upload(self, endpoint: str, args: dict[str, Any], payload: bytes) -> Any:
        return await self.execute(
            endpoint, self.transport.content_upload, endpoint, args, payload
        )

    async def download(
        self, endpoint: str, args: dict[str, Any]
    ) -> tuple[dict[str, Any], bytes]:
        return await self.execute(
            endpoint, self.transport.content_download, endpoint, args
        )

    async def execute(
        self, label: str, func: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        """Await ``func(*args)`` until it does not raise :class:`RateLimitError`."""

        def _log_retry(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "%s rate limited (attempt %d), retrying in %.1fs",
                label,
                retry_state.attempt_number,
                delay,
            )

        result: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            wait=self._wait,
            stop=stop_never,
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                result = await func(*args)
        return result

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return exc.retry_after
        return self.backoff(retry_state)
