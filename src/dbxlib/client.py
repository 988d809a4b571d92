"""High-level Dropbox client.

Composes the transport, :class:`RetryingRPC`, :class:`UploadSession` and
:class:`BatchUploadCoordinator` into the operations used by the CLI and
by library callers.  Every call goes through the rate-limit retry layer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from dbxlib.metadata import (
    DeletedMetadata,
    FileMetadata,
    FolderMetadata,
    FullAccount,
    ListFolderResult,
    SpaceUsage,
    parse_metadata,
)
from dbxlib.models import CommitInfo, TransferConfig
from dbxlib.transport import DropboxTransport
from dbxlib.upload.backoff import BackoffPolicy
from dbxlib.upload.batch import BatchUploadCoordinator
from dbxlib.upload.content_hash import compute_content_hash, verify_content_hash
from dbxlib.upload.rpc import RetryingRPC, Transport
from dbxlib.upload.session import ByteSource, UploadSession

logger = logging.getLogger(__name__)

AnyMetadata = FileMetadata | FolderMetadata | DeletedMetadata


class DropboxClient:
    """Dropbox API client with chunked, hash-verified uploads.

    Usage::

        async with DropboxClient.from_token(token) as dbx:
            meta = await dbx.upload_file("/notes.txt", b"Hello, World!\\n")
            records = await dbx.upload_many([("/a", b"a"), ("/b", b"b")])

    Args:
        transport: Object implementing the transport protocol.
        config: Transfer configuration.
        progress: Optional progress tracker forwarded to batch uploads.
    """

    def __init__(
        self,
        transport: Transport,
        config: TransferConfig | None = None,
        progress: Any | None = None,
        **rpc_kwargs: Any,
    ) -> None:
        self._transport = transport
        self.config = config or TransferConfig()
        self.progress = progress
        self.rpc = RetryingRPC(
            transport,
            backoff=BackoffPolicy(self.config.backoff_initial, self.config.backoff_max),
            **rpc_kwargs,
        )

    @classmethod
    def from_token(
        cls, access_token: str, config: TransferConfig | None = None
    ) -> DropboxClient:
        config = config or TransferConfig()
        return cls(DropboxTransport(access_token, timeout=config.timeout), config)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload_file(self, commit: CommitInfo | str, source: ByteSource) -> FileMetadata:
        """Upload one file through an upload session (see :class:`UploadSession`)."""
        return await UploadSession(self.rpc, self.config).upload(commit, source)

    async def upload_many(
        self, files: Iterable[tuple[CommitInfo | str, ByteSource]]
    ) -> list[FileMetadata]:
        """Upload several files with one batch commit; results in input order."""
        coordinator = BatchUploadCoordinator(self.rpc, self.config, progress=self.progress)
        return await coordinator.upload_all(files)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download(self, path: str) -> tuple[FileMetadata, bytes]:
        """Download a file and verify its content hash.

        Raises:
            ContentHashMismatchError: The received bytes do not match the
                hash reported by the server.
        """
        result, content = await self.rpc.download("files/download", {"path": path})
        metadata = FileMetadata.model_validate(result)
        verify_content_hash(path, compute_content_hash(content), metadata.content_hash)
        logger.info("Downloaded %s (%d bytes)", path, len(content))
        return metadata, content

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def get_metadata(self, path: str) -> AnyMetadata:
        result = await self.rpc.rpc("files/get_metadata", {"path": path})
        return parse_metadata(result)

    async def list_folder(self, path: str, recursive: bool = False) -> list[AnyMetadata]:
        """List a folder, following ``list_folder/continue`` pages."""
        args = {
            "path": path,
            "recursive": recursive,
            "include_media_info": False,
            "include_deleted": False,
            "include_has_explicit_shared_members": False,
            "include_mounted_folders": True,
        }
        page = ListFolderResult.model_validate(
            await self.rpc.rpc("files/list_folder", args)
        )
        entries = list(page.entries)
        while page.has_more:
            page = ListFolderResult.model_validate(
                await self.rpc.rpc("files/list_folder/continue", {"cursor": page.cursor})
            )
            entries.extend(page.entries)
        return entries

    async def create_folder(self, path: str) -> FolderMetadata:
        result = await self.rpc.rpc(
            "files/create_folder_v2", {"path": path, "autorename": False}
        )
        return FolderMetadata.model_validate(result["metadata"])

    async def delete(self, path: str) -> AnyMetadata:
        result = await self.rpc.rpc("files/delete_v2", {"path": path})
        return parse_metadata(result["metadata"])

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_current_account(self) -> FullAccount:
        return FullAccount.model_validate(await self.rpc.rpc("users/get_current_account"))

    async def get_space_usage(self) -> SpaceUsage:
        return SpaceUsage.model_validate(await self.rpc.rpc("users/get_space_usage"))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> DropboxClient:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
