"""Pydantic v2 models for Dropbox API responses.

Dropbox encodes union types as JSON objects carrying a ``.tag`` field.
Each union here is an ``Annotated`` discriminated union so that the
variant is chosen by the tag, not by probing for keys.  Separate from
:mod:`dbxlib.models` (dataclasses).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _TaggedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class _FileFields(_TaggedModel):
    name: str
    id: str
    size: int
    client_modified: str | None = None
    server_modified: str | None = None
    rev: str | None = None
    path_lower: str | None = None
    path_display: str | None = None
    content_hash: str | None = None


class FileMetadata(_FileFields):
    """Metadata of a file.

    Upload endpoints return this object without a ``.tag`` field, so
    the tag defaults to ``file``.
    """

    tag: Literal["file"] = Field(default="file", alias=".tag")


class FolderMetadata(_TaggedModel):
    """Metadata of a folder."""

    tag: Literal["folder"] = Field(default="folder", alias=".tag")
    name: str
    id: str
    path_lower: str | None = None
    path_display: str | None = None


class DeletedMetadata(_TaggedModel):
    """Metadata of a deleted entry (only listed when requested)."""

    tag: Literal["deleted"] = Field(default="deleted", alias=".tag")
    name: str
    path_lower: str | None = None
    path_display: str | None = None


Metadata = Annotated[
    Union[FileMetadata, FolderMetadata, DeletedMetadata],
    Field(discriminator="tag"),
]

_metadata_adapter: TypeAdapter[Any] = TypeAdapter(Metadata)


def parse_metadata(data: dict[str, Any]) -> FileMetadata | FolderMetadata | DeletedMetadata:
    """Decode a tagged metadata object."""
    return _metadata_adapter.validate_python(data)


class ListFolderResult(BaseModel):
    """One page of ``files/list_folder`` results."""

    entries: list[Metadata]
    cursor: str
    has_more: bool


# ---------------------------------------------------------------------------
# Batch commit
# ---------------------------------------------------------------------------


class BatchEntrySuccess(_FileFields):
    """Successful ``finish_batch`` entry: the committed file's metadata."""

    tag: Literal["success"] = Field(alias=".tag")

    def to_metadata(self) -> FileMetadata:
        return FileMetadata.model_validate(self.model_dump(exclude={"tag"}))


class BatchEntryFailure(_TaggedModel):
    """Failed ``finish_batch`` entry.

    ``failure`` is itself a tagged union (``lookup_failed``, ``path``,
    ``too_many_write_operations``, ...), kept raw since only its tag is
    acted upon.
    """

    tag: Literal["failure"] = Field(alias=".tag")
    failure: dict[str, Any]

    @property
    def reason(self) -> str:
        return str(self.failure.get(".tag", "other"))


BatchEntry = Annotated[
    Union[BatchEntrySuccess, BatchEntryFailure],
    Field(discriminator="tag"),
]


class BatchJobComplete(_TaggedModel):
    tag: Literal["complete"] = Field(alias=".tag")
    entries: list[BatchEntry]


class BatchJobInProgress(_TaggedModel):
    tag: Literal["in_progress"] = Field(alias=".tag")


class BatchJobLaunched(_TaggedModel):
    """Asynchronous batch commit: poll ``async_job_id`` for the outcome."""

    tag: Literal["async_job_id"] = Field(alias=".tag")
    async_job_id: str


FinishBatchLaunch = Annotated[
    Union[BatchJobComplete, BatchJobLaunched],
    Field(discriminator="tag"),
]
FinishBatchJobStatus = Annotated[
    Union[BatchJobComplete, BatchJobInProgress],
    Field(discriminator="tag"),
]

finish_batch_launch_adapter: TypeAdapter[Any] = TypeAdapter(FinishBatchLaunch)
finish_batch_status_adapter: TypeAdapter[Any] = TypeAdapter(FinishBatchJobStatus)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class Name(BaseModel):
    given_name: str
    surname: str
    familiar_name: str
    display_name: str
    abbreviated_name: str


class AccountType(_TaggedModel):
    tag: Literal["basic", "pro", "business"] = Field(alias=".tag")


class FullAccount(BaseModel):
    """Subset of ``users/get_current_account`` used by the CLI."""

    account_id: str
    name: Name
    email: str
    email_verified: bool = False
    disabled: bool = False
    locale: str | None = None
    country: str | None = None
    account_type: AccountType


class IndividualSpaceAllocation(_TaggedModel):
    tag: Literal["individual"] = Field(alias=".tag")
    allocated: int


class TeamSpaceAllocation(_TaggedModel):
    tag: Literal["team"] = Field(alias=".tag")
    used: int
    allocated: int
    user_within_team_space_allocated: int = 0


SpaceAllocation = Annotated[
    Union[IndividualSpaceAllocation, TeamSpaceAllocation],
    Field(discriminator="tag"),
]


class SpaceUsage(BaseModel):
    used: int
    allocation: SpaceAllocation
