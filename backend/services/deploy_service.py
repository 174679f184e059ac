"""Deploy service: create a repository and publish a project with its artifacts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

import httpx

from backend.exceptions import GitHubAPIError, SyncError
from backend.services.sync_service import (
    RepositoryTarget,
    SyncPhase,
    SyncProgress,
    SyncRun,
    project_progress,
)
from backend.services.template_service import regenerate, validate_artifacts

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Sequence

    from backend.config import Settings
    from backend.githost.base import GitHost
    from backend.services.sync_service import (
        FileRecord,
        ProgressCallback,
        SkippedFile,
        UploadAttempt,
    )
    from backend.services.template_service import ArtifactPair, EnvVar

logger = logging.getLogger(__name__)

_REPO_NAME_INVALID_RE = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_REPO_NAME = 100


@dataclass(frozen=True)
class DeployRequest:
    """Everything a deploy needs besides the file set."""

    repo_name: str
    env_vars: Sequence[EnvVar]
    build_file: str
    port: int
    commit_message: str
    description: str = ""
    private: bool = False
    stack: str = ""


@dataclass(frozen=True)
class DeployResult:
    """Outcome of a successful deploy."""

    repo_url: str
    commit_sha: str
    artifacts: ArtifactPair
    uploaded: list[str] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)
    failed: list[UploadAttempt] = field(default_factory=list)


def default_commit_message(today: date | None = None) -> str:
    """Return the default commit message, e.g. ``Update v2026-01-31``."""
    day = today or datetime.now(UTC).date()
    return f"Update v{day.isoformat()}"


def sanitize_repo_name(name: str) -> str:
    """Turn a project name into a valid GitHub repository name."""
    cleaned = _REPO_NAME_INVALID_RE.sub("-", name.strip()).strip("-.")
    return cleaned[:_MAX_REPO_NAME] or "app"


def default_description(stack: str) -> str:
    """Return the repository description used when none is given."""
    return f"Deployed via autodeploy. Stack: {stack or 'unknown'}"


async def deploy_project(
    host: GitHost,
    request: DeployRequest,
    files: Sequence[FileRecord],
    settings: Settings,
    *,
    on_progress: ProgressCallback | None = None,
    cancel_event: asyncio.Event | None = None,
) -> DeployResult:
    """Create the repository and publish ``files`` plus regenerated artifacts.

    The artifacts are always rebuilt from ``request.env_vars`` so they cannot
    disagree with the variable list. Raises ValueError before any remote
    call and SyncError, qualified by phase, for any remote failure. The
    branch is ``settings.target_branch`` when set, else the new repository's
    default branch.
    """
    if not request.commit_message.strip():
        raise ValueError("Commit message must not be empty")

    artifacts = regenerate(request.env_vars, request.build_file, request.port)
    validate_artifacts(artifacts, request.env_vars)

    repo_name = sanitize_repo_name(request.repo_name)
    visibility = "private" if request.private else "public"
    if on_progress is not None:
        on_progress(
            SyncProgress(
                percent=project_progress(SyncPhase.INITIALIZING),
                message=f"Creating {visibility} repository {repo_name}...",
                phase=SyncPhase.INITIALIZING,
            )
        )
    try:
        created = await host.create_repository(
            repo_name,
            request.description or default_description(request.stack),
            request.private,
        )
    except (GitHubAPIError, httpx.HTTPError) as exc:
        logger.error("Failed to create repository %s: %s", repo_name, exc)
        raise SyncError(
            str(SyncPhase.INITIALIZING), f"Failed to create repository {repo_name}: {exc}"
        ) from exc
    logger.info("Created repository %s/%s", created.owner, created.name)

    target = RepositoryTarget(
        owner=created.owner,
        name=created.name,
        branch=settings.target_branch or created.default_branch,
        html_url=created.html_url or None,
    )
    sync_run = SyncRun(
        host,
        target,
        files,
        artifacts,
        request.commit_message,
        on_progress=on_progress,
        excluded_dirs=settings.excluded_dirs,
        max_file_size=settings.max_file_size_bytes,
        concurrency=settings.upload_concurrency,
        cancel_event=cancel_event,
        web_base=settings.github_web_base,
    )
    result = await sync_run.run()
    return DeployResult(
        repo_url=result.repo_url,
        commit_sha=result.commit_sha,
        artifacts=artifacts,
        uploaded=result.uploaded,
        skipped=result.skipped,
        failed=result.failed,
    )
