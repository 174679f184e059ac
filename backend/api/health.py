"""Health check endpoint."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.api.deps import get_settings
from backend.config import Settings
from backend.services.analysis_service import list_providers

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    analysis_provider: str
    providers: list[str]
    github_token_configured: bool


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    return HealthResponse(
        status="ok",
        version="0.1.0",
        analysis_provider=settings.ai_provider,
        providers=list_providers(),
        github_token_configured=bool(settings.github_token),
    )
