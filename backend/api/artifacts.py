"""Artifact regeneration endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from backend.schemas.artifacts import ArtifactsResponse, EnvVarModel, RegenerateRequest
from backend.services.template_service import merge_defaults, regenerate

router = APIRouter(prefix="/api/artifacts", tags=["artifacts"])


@router.post("/regenerate", response_model=ArtifactsResponse)
async def regenerate_artifacts(body: RegenerateRequest) -> ArtifactsResponse:
    """Rebuild the Dockerfile ENV block and the compose file from a variable list."""
    env_vars = [model.to_env_var() for model in body.env_vars]
    if body.merge_defaults:
        env_vars = merge_defaults(env_vars)
    artifacts = regenerate(env_vars, body.build_file, body.port)
    return ArtifactsResponse(
        env_vars=[EnvVarModel.from_env_var(var) for var in env_vars],
        build_file=artifacts.build_file,
        compose_file=artifacts.compose_file,
        port=artifacts.port,
    )
