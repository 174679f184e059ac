"""Shared test fixtures for autodeploy."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from backend.api.deps import get_host_factory
from backend.config import Settings
from backend.main import create_app
from tests.test_services._fake_store import FakeObjectStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

TEST_GITHUB_TOKEN = "ghp_test_token"
TEST_API_KEY = "test-api-key"


@asynccontextmanager
async def create_test_client(
    settings: Settings, store: FakeObjectStore | None = None
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client for the app.

    When ``store`` is given, every GitHub client the app opens is replaced by
    it. ASGITransport does not run the lifespan, which only logs.
    """
    app = create_app(settings)
    if store is not None:
        app.dependency_overrides[get_host_factory] = lambda: store.bind

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        debug=True,
        github_token=TEST_GITHUB_TOKEN,
        api_key=TEST_API_KEY,
        ai_provider="openrouter",
        upload_concurrency=4,
    )


@pytest.fixture
def fake_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A small Node project with dependency and VCS directories."""
    root = tmp_path / "proj"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / ".git").mkdir()
    (root / "package.json").write_text('{"name": "proj", "scripts": {"start": "node src"}}')
    (root / "src" / "index.js").write_text("require('http').createServer().listen(3000)\n")
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1\n")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (root / ".env.example").write_text("DATABASE_URL=\n")
    return root
