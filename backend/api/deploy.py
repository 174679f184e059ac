"""Deploy endpoint: publish an uploaded project and stream progress as NDJSON."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from backend.api.deps import HostFactory, get_github_token, get_host_factory, get_settings
from backend.config import Settings
from backend.exceptions import RefUpdateError, SyncError
from backend.filesystem.folder_reader import records_from_uploads
from backend.schemas.deploy import DeployEvent, DeployMetadata, FailedFileModel, SkippedFileModel
from backend.services.deploy_service import (
    DeployRequest,
    DeployResult,
    default_commit_message,
    deploy_project,
)
from backend.services.sync_service import FileRecord, SyncPhase, SyncProgress
from backend.services.template_service import merge_defaults

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deploy", tags=["deploy"])

# Deploys keep running after the client disconnects until the next
# cancellation boundary; hold references so they are not collected.
_background_deploys: set[asyncio.Task[None]] = set()


def _parse_metadata(metadata_json: str) -> DeployRequest:
    try:
        meta = DeployMetadata.model_validate_json(metadata_json)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]) or "metadata", "message": err["msg"]}
            for err in exc.errors()
        ]
        raise HTTPException(status_code=422, detail=errors) from exc

    env_vars = [model.to_env_var() for model in meta.env_vars]
    if meta.merge_defaults:
        env_vars = merge_defaults(env_vars)
    return DeployRequest(
        repo_name=meta.repo_name,
        env_vars=env_vars,
        build_file=meta.build_file,
        port=meta.port,
        commit_message=meta.commit_message or default_commit_message(),
        description=meta.description,
        private=meta.private,
        stack=meta.stack,
    )


async def _read_uploads(files: list[UploadFile]) -> list[FileRecord]:
    pairs: list[tuple[str, bytes]] = []
    for upload in files:
        if not upload.filename:
            logger.warning("Deploy upload with no filename, skipping")
            continue
        pairs.append((upload.filename, await upload.read()))
    return records_from_uploads(pairs)


def _finished_event(result: DeployResult) -> DeployEvent:
    return DeployEvent(
        event="finished",
        phase=str(SyncPhase.FINISHED),
        percent=100,
        message="Done!",
        repo_url=result.repo_url,
        commit_sha=result.commit_sha,
        skipped=[SkippedFileModel(path=s.path, reason=str(s.reason)) for s in result.skipped],
        failed=[FailedFileModel(path=f.path, error=f.error or "") for f in result.failed],
    )


async def _deploy_events(
    factory: HostFactory,
    token: str,
    request: DeployRequest,
    records: list[FileRecord],
    settings: Settings,
) -> AsyncIterator[str]:
    """Run the deploy in a task and yield its progress as NDJSON lines."""
    queue: asyncio.Queue[DeployEvent | None] = asyncio.Queue()
    cancel_event = asyncio.Event()
    last = SyncProgress(percent=0, message="", phase=SyncPhase.INITIALIZING)

    def on_progress(progress: SyncProgress) -> None:
        nonlocal last
        last = progress
        queue.put_nowait(
            DeployEvent(
                event="progress",
                phase=str(progress.phase),
                percent=progress.percent,
                message=progress.message,
            )
        )

    def error_event(phase: str, detail: str, orphaned: str | None = None) -> DeployEvent:
        return DeployEvent(
            event="error",
            phase=phase,
            percent=last.percent,
            message=f"Error: {detail}",
            detail=detail,
            orphaned_commit=orphaned,
        )

    async def worker() -> None:
        try:
            async with factory(token) as host:
                result = await deploy_project(
                    host,
                    request,
                    records,
                    settings,
                    on_progress=on_progress,
                    cancel_event=cancel_event,
                )
        except RefUpdateError as exc:
            queue.put_nowait(error_event(exc.phase, exc.message, exc.orphaned_commit))
        except SyncError as exc:
            queue.put_nowait(error_event(exc.phase, exc.message))
        except ValueError as exc:
            queue.put_nowait(error_event(str(last.phase), str(exc)))
        except Exception as exc:
            logger.exception("Deploy of %s failed unexpectedly", request.repo_name)
            queue.put_nowait(error_event(str(last.phase), f"Unexpected error: {exc}"))
        else:
            queue.put_nowait(_finished_event(result))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(worker())
    _background_deploys.add(task)
    task.add_done_callback(_background_deploys.discard)
    try:
        while (event := await queue.get()) is not None:
            yield event.model_dump_json(exclude_none=True) + "\n"
    finally:
        if not task.done():
            logger.info("Deploy stream closed early; cancelling %s", request.repo_name)
            cancel_event.set()


@router.post("")
async def deploy(
    settings: Annotated[Settings, Depends(get_settings)],
    factory: Annotated[HostFactory, Depends(get_host_factory)],
    token: Annotated[str, Depends(get_github_token)],
    metadata: Annotated[str, Form()],
    files: Annotated[list[UploadFile] | None, File()] = None,
) -> StreamingResponse:
    """Create a repository and publish the uploaded project to it.

    Accepts multipart form data with:
    - ``metadata``: JSON with the repository name, variables, build file and port
    - ``files``: uploaded files whose filenames carry the relative path

    The response is a stream of JSON lines. The last line is a ``finished``
    event with the repository URL or an ``error`` event naming the phase.
    """
    request = _parse_metadata(metadata)
    records = await _read_uploads(files or [])
    logger.info("Deploying %d file(s) to %s", len(records), request.repo_name)
    return StreamingResponse(
        _deploy_events(factory, token, request, records, settings),
        media_type="application/x-ndjson",
    )
