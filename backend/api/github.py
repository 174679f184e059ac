"""GitHub account endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.api.deps import get_github_client
from backend.githost.github import GitHubClient

router = APIRouter(prefix="/api/github", tags=["github"])


class GitHubUserResponse(BaseModel):
    login: str


@router.get("/user", response_model=GitHubUserResponse)
async def github_user(
    client: Annotated[GitHubClient, Depends(get_github_client)],
) -> GitHubUserResponse:
    """Validate the GitHub token and return its owner."""
    login = await client.get_authenticated_user()
    return GitHubUserResponse(login=login)
