"""Deploy schemas: multipart metadata and streamed progress events."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from backend.schemas.artifacts import EnvVarModel


class DeployMetadata(BaseModel):
    """JSON carried in the ``metadata`` form field of a deploy request."""

    repo_name: str = Field(min_length=1, max_length=100)
    description: str = ""
    private: bool = False
    commit_message: str | None = Field(
        default=None, min_length=1, description="Defaults to 'Update vYYYY-MM-DD'"
    )
    env_vars: list[EnvVarModel] = Field(default_factory=list)
    build_file: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    stack: str = ""
    merge_defaults: bool = False


class SkippedFileModel(BaseModel):
    path: str
    reason: str


class FailedFileModel(BaseModel):
    path: str
    error: str


class DeployEvent(BaseModel):
    """One line of the NDJSON deploy stream."""

    event: Literal["progress", "finished", "error"]
    phase: str
    percent: int = Field(ge=0, le=100)
    message: str = ""
    repo_url: str | None = None
    commit_sha: str | None = None
    detail: str | None = None
    orphaned_commit: str | None = None
    skipped: list[SkippedFileModel] | None = None
    failed: list[FailedFileModel] | None = None
