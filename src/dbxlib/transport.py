"""HTTP transport for the Dropbox API v2.

Three request styles:

* **RPC** -- JSON in, JSON out (``api.dropboxapi.com``).
* **Content upload** -- arguments in the ``Dropbox-API-Arg`` header,
  raw bytes in the body, JSON result (``content.dropboxapi.com``).
* **Content download** -- arguments in the header, JSON result in the
  ``Dropbox-API-Result`` response header, raw bytes in the body.

HTTP 429 is raised as :class:`RateLimitError`; every other error status
as :class:`RemoteFailureError`.  No retries happen here.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from dbxlib.upload.exceptions import RateLimitError, RemoteFailureError

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"


class DropboxTransport:
    """Thin async wrapper around :class:`httpx.AsyncClient`.

    Usage::

        async with DropboxTransport(access_token) as transport:
            account = await transport.rpc("users/get_current_account")
    """

    def __init__(
        self,
        access_token: str,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
        api_url: str = API_URL,
        content_url: str = CONTENT_URL,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._api_url = api_url.rstrip("/")
        self._content_url = content_url.rstrip("/")

    # ------------------------------------------------------------------
    # Request styles
    # ------------------------------------------------------------------

    async def rpc(self, endpoint: str, args: dict[str, Any] | None = None) -> Any:
        """POST an RPC request and return the decoded JSON result."""
        headers = dict(self._headers)
        content: bytes | None = None
        if args is not None:
            headers["Content-Type"] = "application/json"
            content = json.dumps(args).encode("utf-8")

        response = await self._post(f"{self._api_url}/{endpoint}", headers, content)
        return _decode_json(response.content)

    async def content_upload(
        self, endpoint: str, args: dict[str, Any], payload: bytes
    ) -> Any:
        """POST *payload* to a content-upload endpoint."""
        headers = dict(self._headers)
        headers["Dropbox-API-Arg"] = _api_arg(args)
        headers["Content-Type"] = "application/octet-stream"

        response = await self._post(f"{self._content_url}/{endpoint}", headers, payload)
        logger.debug("%s: sent %d bytes", endpoint, len(payload))
        return _decode_json(response.content)

    async def content_download(
        self, endpoint: str, args: dict[str, Any]
    ) -> tuple[dict[str, Any], bytes]:
        """POST a content-download request; return ``(result, body)``."""
        headers = dict(self._headers)
        headers["Dropbox-API-Arg"] = _api_arg(args)

        response = await self._post(f"{self._content_url}/{endpoint}", headers, None)
        result_header = response.headers.get("Dropbox-API-Result")
        if result_header is None:
            raise RemoteFailureError(
                "missing Dropbox-API-Result header", status_code=response.status_code
            )
        return json.loads(result_header), response.content

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DropboxTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _post(
        self, url: str, headers: dict[str, str], content: bytes | None
    ) -> httpx.Response:
        try:
            response = await self._client.post(url, headers=headers, content=content)
        except httpx.RequestError as exc:
            logger.warning("Request to %s failed: %s", url, exc)
            raise RemoteFailureError(str(exc) or type(exc).__name__) from exc
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise _map_status_error(exc.response) from exc
        return response


def _api_arg(args: dict[str, Any]) -> str:
    # HTTP headers must be ASCII; json.dumps escapes everything else.
    return json.dumps(args, ensure_ascii=True).replace("\x7f", "\\u007f")


def _decode_json(body: bytes) -> Any:
    if not body:
        return None
    return json.loads(body)


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"error_summary": response.text.strip() or response.reason_phrase}
    return body if isinstance(body, dict) else {"error_summary": str(body)}


def _map_status_error(response: httpx.Response) -> Exception:
    body = _error_body(response)
    error = body.get("error")
    if not isinstance(error, dict):
        error = {}

    if response.status_code == 429:
        retry_after: float | None = None
        header = response.headers.get("Retry-After")
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        if retry_after is None and "retry_after" in error:
            retry_after = float(error["retry_after"])
        reason = error.get("reason", {})
        reason_tag = reason.get(".tag") if isinstance(reason, dict) else None
        return RateLimitError(retry_after=retry_after, reason=reason_tag)

    summary = str(body.get("error_summary") or response.reason_phrase)
    logger.debug("HTTP %d from %s: %s", response.status_code, response.url, summary)
    return RemoteFailureError(summary, status_code=response.status_code, error=error)
