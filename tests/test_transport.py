"""Tests for the httpx transport, using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from dbxlib.transport import API_URL, CONTENT_URL, DropboxTransport
from dbxlib.upload.exceptions import RateLimitError, RemoteFailureError, TransferError
from dbxlib.upload.rpc import RetryingRPC


def _transport(handler) -> DropboxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DropboxTransport("secret-token", client=client)


class TestRequestStyles:
    async def test_rpc_sends_json_and_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"used": 1})

        async with _transport(handler) as transport:
            result = await transport.rpc("files/get_metadata", {"path": "/a"})

        assert result == {"used": 1}
        assert seen["url"] == f"{API_URL}/files/get_metadata"
        assert seen["auth"] == "Bearer secret-token"
        assert seen["body"] == {"path": "/a"}

    async def test_rpc_without_args_sends_no_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.content == b""
            assert "Content-Type" not in request.headers
            return httpx.Response(200, json={"account_id": "x"})

        async with _transport(handler) as transport:
            assert await transport.rpc("users/get_current_account") == {"account_id": "x"}

    async def test_content_upload_puts_args_in_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["arg"] = json.loads(request.headers["Dropbox-API-Arg"])
            seen["type"] = request.headers["Content-Type"]
            seen["body"] = request.content
            return httpx.Response(200, json={"session_id": "s1"})

        async with _transport(handler) as transport:
            result = await transport.content_upload(
                "files/upload_session/start", {"close": False}, b"payload"
            )

        assert result == {"session_id": "s1"}
        assert seen["url"] == f"{CONTENT_URL}/files/upload_session/start"
        assert seen["arg"] == {"close": False}
        assert seen["type"] == "application/octet-stream"
        assert seen["body"] == b"payload"

    async def test_empty_response_body_decodes_to_none(self):
        async with _transport(lambda r: httpx.Response(200, content=b"")) as transport:
            assert await transport.content_upload(
                "files/upload_session/append_v2", {"close": True}, b""
            ) is None

    async def test_non_ascii_path_is_escaped_in_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["raw"] = request.headers["Dropbox-API-Arg"]
            return httpx.Response(200, json={})

        async with _transport(handler) as transport:
            await transport.content_upload("files/upload", {"path": "/café"}, b"x")

        assert seen["raw"].isascii()
        assert json.loads(seen["raw"]) == {"path": "/café"}

    async def test_content_download_reads_result_header(self):
        meta = {"name": "a.txt", "size": 3}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, headers={"Dropbox-API-Result": json.dumps(meta)}, content=b"abc"
            )

        async with _transport(handler) as transport:
            result, body = await transport.content_download("files/download", {"path": "/a.txt"})

        assert result == meta
        assert body == b"abc"

    async def test_content_download_without_result_header(self):
        async with _transport(lambda r: httpx.Response(200, content=b"abc")) as transport:
            with pytest.raises(RemoteFailureError, match="Dropbox-API-Result"):
                await transport.content_download("files/download", {"path": "/a"})


class TestErrorMapping:
    async def test_429_with_retry_after_header(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                headers={"Retry-After": "15"},
                json={
                    "error_summary": "too_many_requests/..",
                    "error": {"reason": {".tag": "too_many_requests"}, "retry_after": 300},
                },
            )

        async with _transport(handler) as transport:
            with pytest.raises(RateLimitError) as excinfo:
                await transport.rpc("files/list_folder", {"path": ""})

        assert excinfo.value.retry_after == 15.0
        assert excinfo.value.reason == "too_many_requests"

    async def test_429_falls_back_to_body_retry_after(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                json={"error": {"reason": {".tag": "too_many_write_operations"}, "retry_after": 2}},
            )

        async with _transport(handler) as transport:
            with pytest.raises(RateLimitError) as excinfo:
                await transport.content_upload("files/upload", {"path": "/a"}, b"")

        assert excinfo.value.retry_after == 2.0
        assert excinfo.value.reason == "too_many_write_operations"

    async def test_429_without_hint(self):
        async with _transport(lambda r: httpx.Response(429, text="slow down")) as transport:
            with pytest.raises(RateLimitError) as excinfo:
                await transport.rpc("users/get_space_usage")
        assert excinfo.value.retry_after is None

    async def test_409_maps_to_remote_failure_with_tag(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                409,
                json={
                    "error_summary": "path/not_found/..",
                    "error": {".tag": "path", "path": {".tag": "not_found"}},
                },
            )

        async with _transport(handler) as transport:
            with pytest.raises(RemoteFailureError) as excinfo:
                await transport.rpc("files/get_metadata", {"path": "/nope"})

        assert excinfo.value.status_code == 409
        assert excinfo.value.tag == "path"
        assert excinfo.value.summary == "path/not_found/.."

    async def test_plain_text_error_body(self):
        async with _transport(lambda r: httpx.Response(400, text="Error in call")) as transport:
            with pytest.raises(RemoteFailureError) as excinfo:
                await transport.rpc("files/get_metadata", {"path": "bad"})
        assert excinfo.value.status_code == 400
        assert excinfo.value.summary == "Error in call"
        assert excinfo.value.tag is None


# ======================================================================
# Network failures
# ======================================================================


class TestNetworkFailures:
    async def test_connect_error_maps_to_remote_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _transport(handler) as transport:
            with pytest.raises(RemoteFailureError) as excinfo:
                await transport.rpc("files/delete_v2", {"path": "/a"})

        assert excinfo.value.summary == "connection refused"
        assert excinfo.value.status_code is None
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)

    async def test_read_timeout_on_content_upload(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _transport(handler) as transport:
            with pytest.raises(RemoteFailureError, match="timed out"):
                await transport.content_upload("files/upload", {"path": "/a"}, b"x")

    async def test_network_error_is_not_retried(self, recording_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            raise httpx.ConnectError("unreachable", request=request)

        async with _transport(handler) as transport:
            rpc = RetryingRPC(transport, sleep=recording_sleep)
            with pytest.raises(TransferError):
                await rpc.rpc("files/delete_v2", {"path": "/a"})

        assert len(calls) == 1
        assert recording_sleep.delays == []
