"""Shared pytest fixtures for the dbxlib test suite.

Provides an in-memory fake of the Dropbox API (sessions, files, folders,
batch jobs) with fault injection hooks, a recording sleep, and clients
wired to both.  No test touches the network.
"""

from __future__ import annotations

import hashlib
import itertools
from typing import Any

import pytest

from dbxlib.client import DropboxClient
from dbxlib.models import TransferConfig
from dbxlib.upload.exceptions import RateLimitError, RemoteFailureError
from dbxlib.upload.rpc import RetryingRPC

MiB = 1024 * 1024


def reference_content_hash(data: bytes) -> str:
    """Independent two-level reference implementation of the content hash."""
    block = 4 * MiB
    digests = b"".join(
        hashlib.sha256(data[i : i + block]).digest() for i in range(0, len(data), block)
    )
    return hashlib.sha256(digests).hexdigest()


def _not_found(path: str) -> RemoteFailureError:
    return RemoteFailureError(
        f"path/not_found/.. ({path})",
        status_code=409,
        error={".tag": "path", "path": {".tag": "not_found"}},
    )


class FakeDropbox:
    """In-memory stand-in for the transport.

    Fault injection:
        rate_limits: ``{endpoint: [retry_after, ...]}`` -- each entry makes
            one call to *endpoint* raise :class:`RateLimitError` first.
        write_failures: list of sets of paths; each ``finish_batch`` call
            pops the first set and reports those paths as
            ``too_many_write_operations``.
        other_failures: ``{path: tag}`` -- batch entries failing with *tag*.
        async_polls: ``None`` for synchronous ``finish_batch`` answers,
            otherwise how many ``in_progress`` answers precede ``complete``.
        corrupt_paths: committed paths whose reported hash is altered.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any, int | None]] = []
        self.sessions: dict[str, dict[str, Any]] = {}
        self.files: dict[str, bytes] = {}
        self.folders: set[str] = set()
        self.rate_limits: dict[str, list[float | None]] = {}
        self.write_failures: list[set[str]] = []
        self.other_failures: dict[str, str] = {}
        self.async_polls: int | None = None
        self.corrupt_paths: set[str] = set()
        self.jobs: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Call accounting
    # ------------------------------------------------------------------

    def count(self, endpoint: str) -> int:
        return sum(1 for name, _, _ in self.calls if name == endpoint)

    def endpoints(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    def _record(self, endpoint: str, args: Any, payload: bytes | None) -> None:
        self.calls.append((endpoint, args, None if payload is None else len(payload)))
        queue = self.rate_limits.get(endpoint)
        if queue:
            raise RateLimitError(retry_after=queue.pop(0))

    # ------------------------------------------------------------------
    # Transport protocol
    # ------------------------------------------------------------------

    async def content_upload(self, endpoint: str, args: dict[str, Any], payload: bytes) -> Any:
        self._record(endpoint, args, payload)
        if endpoint == "files/upload_session/start":
            session_id = f"session-{next(self._ids)}"
            self.sessions[session_id] = {"data": bytearray(payload), "closed": args["close"]}
            return {"session_id": session_id}
        if endpoint == "files/upload_session/append_v2":
            session = self._session(args["cursor"])
            session["data"] += payload
            session["closed"] = args["close"]
            return None
        if endpoint == "files/upload_session/finish":
            session = self._session(args["cursor"])
            return self._commit(args["commit"]["path"], bytes(session["data"]))
        if endpoint == "files/upload":
            return self._commit(args["path"], payload)
        raise AssertionError(f"unexpected upload endpoint {endpoint}")

    async def content_download(self, endpoint: str, args: dict[str, Any]) -> tuple[dict, bytes]:
        self._record(endpoint, args, None)
        path = args["path"]
        if path not in self.files:
            raise _not_found(path)
        return self._file_metadata(path), self.files[path]

    async def rpc(self, endpoint: str, args: dict[str, Any] | None = None) -> Any:
        self._record(endpoint, args, None)
        if endpoint == "files/upload_session/finish_batch":
            entries = self._finish_batch(args["entries"])
            if self.async_polls is None:
                return {".tag": "complete", "entries": entries}
            job_id = f"job-{next(self._ids)}"
            self.jobs[job_id] = {"remaining": self.async_polls, "entries": entries}
            return {".tag": "async_job_id", "async_job_id": job_id}
        if endpoint == "files/upload_session/finish_batch/check":
            job = self.jobs[args["async_job_id"]]
            if job["remaining"] > 0:
                job["remaining"] -= 1
                return {".tag": "in_progress"}
            return {".tag": "complete", "entries": job["entries"]}
        if endpoint == "files/get_metadata":
            return self._lookup(args["path"])
        if endpoint == "files/list_folder":
            return self._list(args["path"])
        if endpoint == "files/create_folder_v2":
            self.folders.add(args["path"])
            return {"metadata": self._folder_metadata(args["path"])}
        if endpoint == "files/delete_v2":
            meta = self._lookup(args["path"])
            self.files.pop(args["path"], None)
            self.folders.discard(args["path"])
            return {"metadata": meta}
        if endpoint == "users/get_current_account":
            return {
                "account_id": "dbid:abc",
                "name": {
                    "given_name": "Ada",
                    "surname": "Lovelace",
                    "familiar_name": "Ada",
                    "display_name": "Ada Lovelace",
                    "abbreviated_name": "AL",
                },
                "email": "ada@example.com",
                "email_verified": True,
                "disabled": False,
                "locale": "en",
                "account_type": {".tag": "basic"},
            }
        if endpoint == "users/get_space_usage":
            return {"used": 1_500_000, "allocation": {".tag": "individual", "allocated": 2_000_000_000}}
        raise AssertionError(f"unexpected rpc endpoint {endpoint}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _session(self, cursor: dict[str, Any]) -> dict[str, Any]:
        session = self.sessions[cursor["session_id"]]
        if cursor["offset"] != len(session["data"]):
            raise RemoteFailureError(
                "lookup_failed/incorrect_offset/",
                status_code=409,
                error={".tag": "lookup_failed"},
            )
        return session

    def _commit(self, path: str, data: bytes) -> dict[str, Any]:
        self.files[path] = bytes(data)
        meta = self._file_metadata(path)
        del meta[".tag"]
        return meta

    def _file_metadata(self, path: str) -> dict[str, Any]:
        data = self.files[path]
        content_hash = reference_content_hash(data)
        if path in self.corrupt_paths:
            flipped = "0" if content_hash[0] != "0" else "1"
            content_hash = flipped + content_hash[1:]
        return {
            ".tag": "file",
            "name": path.rsplit("/", 1)[-1],
            "id": f"id:{path}",
            "client_modified": "2019-03-15T23:05:18Z",
            "server_modified": "2019-03-15T23:05:18Z",
            "rev": "015a1",
            "size": len(data),
            "path_lower": path.lower(),
            "path_display": path,
            "content_hash": content_hash,
        }

    def _folder_metadata(self, path: str) -> dict[str, Any]:
        return {
            ".tag": "folder",
            "name": path.rsplit("/", 1)[-1],
            "id": f"id:{path}",
            "path_lower": path.lower(),
            "path_display": path,
        }

    def _lookup(self, path: str) -> dict[str, Any]:
        if path in self.files:
            return self._file_metadata(path)
        if path in self.folders:
            return self._folder_metadata(path)
        raise _not_found(path)

    def _list(self, path: str) -> dict[str, Any]:
        prefix = path + "/"
        entries = [self._folder_metadata(p) for p in sorted(self.folders) if p.startswith(prefix)]
        entries += [self._file_metadata(p) for p in sorted(self.files) if p.startswith(prefix)]
        return {"entries": entries, "cursor": "c0", "has_more": False}

    def _finish_batch(self, entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        throttled = self.write_failures.pop(0) if self.write_failures else set()
        results = []
        for entry in entries:
            path = entry["commit"]["path"]
            session = self.sessions[entry["cursor"]["session_id"]]
            assert session["closed"], f"session for {path} still open at batch commit"
            assert entry["cursor"]["offset"] == len(session["data"])
            if path in throttled:
                results.append(
                    {".tag": "failure", "failure": {".tag": "too_many_write_operations"}}
                )
            elif path in self.other_failures:
                results.append(
                    {".tag": "failure", "failure": {".tag": self.other_failures[path]}}
                )
            else:
                meta = self._commit(path, bytes(session["data"]))
                results.append({".tag": "success", **meta})
        return results


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_dropbox() -> FakeDropbox:
    return FakeDropbox()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def rpc(fake_dropbox: FakeDropbox, recording_sleep: RecordingSleep) -> RetryingRPC:
    return RetryingRPC(fake_dropbox, sleep=recording_sleep)


@pytest.fixture
def transfer_config() -> TransferConfig:
    return TransferConfig(chunk_size=8 * MiB, max_concurrent_uploads=3)


@pytest.fixture
def client(
    fake_dropbox: FakeDropbox,
    recording_sleep: RecordingSleep,
    transfer_config: TransferConfig,
) -> DropboxClient:
    return DropboxClient(fake_dropbox, transfer_config, sleep=recording_sleep)


@pytest.fixture
def reference_hash():
    return reference_content_hash
