"""Project analysis endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from backend.api.deps import get_settings
from backend.config import Settings
from backend.schemas.analysis import AnalysisRequest, AnalysisResponse
from backend.schemas.artifacts import EnvVarModel
from backend.services.analysis_service import (
    AnalysisConfig,
    FileExcerpt,
    analyze_excerpts,
    select_context_paths,
)
from backend.services.template_service import merge_defaults, regenerate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


@router.post("", response_model=AnalysisResponse)
async def analyze(
    body: AnalysisRequest,
    settings: Annotated[Settings, Depends(get_settings)],
) -> AnalysisResponse:
    """Analyze file excerpts and return merged variables plus regenerated artifacts.

    Only the critical files among ``files`` are forwarded, with the same
    fallback as a local folder scan.
    """
    by_path = {f.path: f.content for f in body.files}
    chosen = select_context_paths(list(by_path)) or list(by_path)
    excerpts = [FileExcerpt(path=path, content=by_path[path]) for path in chosen]
    config = AnalysisConfig.from_settings(settings, provider=body.provider, model=body.model)

    result = await analyze_excerpts(
        excerpts, config, max_chars=settings.analysis_max_file_chars
    )
    env_vars = merge_defaults(result.to_env_vars())
    artifacts = regenerate(env_vars, result.build_file, result.port)
    logger.info("Analysis detected %s on port %d", result.stack, result.port)
    return AnalysisResponse(
        project_name=result.project_name,
        stack=result.stack,
        explanation=result.explanation,
        port=result.port,
        env_vars=[EnvVarModel.from_env_var(var) for var in env_vars],
        build_file=artifacts.build_file,
        compose_file=artifacts.compose_file,
    )
