"""Analysis schemas: the payload returned by the analysis backend."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from backend.schemas.artifacts import EnvVarModel
from backend.services.template_service import EnvVar, normalize_key


class EnvVarSuggestion(BaseModel):
    """A variable proposed by the analysis backend."""

    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(min_length=1)
    description: str = ""
    default_value: str | None = Field(default=None, alias="defaultValue")
    value: str | None = None


class AnalysisResult(BaseModel):
    """Analysis of a project folder.

    Only ``dockerfile``, ``envVars`` and ``port`` are required; the rest is
    descriptive.
    """

    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(default="", alias="projectName")
    stack: str = "unknown"
    build_file: str = Field(alias="dockerfile", min_length=1)
    compose_file: str | None = Field(default=None, alias="dockerCompose")
    env_vars: list[EnvVarSuggestion] = Field(alias="envVars")
    explanation: str = ""
    port: int = Field(ge=1, le=65535)

    def to_env_vars(self) -> list[EnvVar]:
        """Convert suggestions to template variables with normalized keys.

        ``defaultValue`` stays a hint; only an explicit ``value`` is carried.
        """
        result: list[EnvVar] = []
        for suggestion in self.env_vars:
            key = normalize_key(suggestion.key)
            if not key:
                continue
            result.append(
                EnvVar(
                    key=key,
                    value=suggestion.value or "",
                    description=suggestion.description,
                    default_value=suggestion.default_value,
                )
            )
        return result


class AnalysisFile(BaseModel):
    """A file excerpt sent for analysis."""

    path: str = Field(min_length=1)
    content: str


class AnalysisRequest(BaseModel):
    """Request to analyze a project from file excerpts."""

    files: list[AnalysisFile] = Field(min_length=1)
    provider: str | None = Field(default=None, description="'gemini' or 'openrouter'")
    model: str | None = None


class AnalysisResponse(BaseModel):
    """Analysis plus the merged variable list and regenerated artifacts."""

    project_name: str
    stack: str
    explanation: str
    port: int
    env_vars: list[EnvVarModel]
    build_file: str
    compose_file: str
