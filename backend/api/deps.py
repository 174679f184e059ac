"""Shared API dependencies: settings and the GitHub client."""

from __future__ import annotations

import functools
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.config import Settings
from backend.exceptions import ConfigurationError
from backend.githost.github import GitHubClient

security = HTTPBearer(auto_error=False)

HostFactory = Callable[[str], GitHubClient]


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_github_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> str:
    """Return the bearer credential, falling back to the configured token."""
    token = credentials.credentials if credentials is not None else settings.github_token
    if not token:
        raise ConfigurationError(
            "GitHub token is missing. Send it as a Bearer credential or set GITHUB_TOKEN."
        )
    return token


def get_host_factory(settings: Annotated[Settings, Depends(get_settings)]) -> HostFactory:
    """Return a callable that opens a GitHub client for a token.

    Streaming endpoints open their own client so it outlives the request
    handler.
    """
    return functools.partial(
        GitHubClient,
        api_base=settings.github_api_base,
        timeout=settings.github_timeout_seconds,
    )


async def get_github_client(
    factory: Annotated[HostFactory, Depends(get_host_factory)],
    token: Annotated[str, Depends(get_github_token)],
) -> AsyncGenerator[GitHubClient]:
    """Open a GitHub client for the duration of one request."""
    async with factory(token) as client:
        yield client
