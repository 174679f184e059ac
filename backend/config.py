"""Application configuration loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

EXTRA_EXCLUDED_DIRS = [
    ".nuxt",
    ".svelte-kit",
    "__pycache__",
    ".venv",
]


class Settings(BaseSettings):
    """autodeploy settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)

    # GitHub
    github_api_base: str = "https://api.github.com"
    github_web_base: str = "https://github.com"
    github_token: str = ""
    github_timeout_seconds: float = Field(default=30.0, gt=0)
    # Empty: publish to the default branch of the created repository.
    target_branch: str = ""

    # Sync
    max_file_size_bytes: int = Field(default=1024 * 1024, ge=1)
    upload_concurrency: int = Field(default=8, ge=1, le=64)
    excluded_dirs: list[str] = Field(default_factory=lambda: list(EXTRA_EXCLUDED_DIRS))

    # Analysis backend
    ai_provider: Literal["gemini", "openrouter"] = "openrouter"
    api_key: str = ""
    ai_base_url: str = "https://openrouter.ai/api/v1"
    ai_model: str = "meta-llama/llama-3.1-8b-instruct"
    gemini_model: str = "gemini-2.5-flash"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    analysis_timeout_seconds: float = Field(default=120.0, gt=0)
    analysis_max_file_chars: int = Field(default=4000, ge=1)
