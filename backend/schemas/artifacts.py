"""Artifact schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from backend.services.template_service import EnvVar

ENV_KEY_PATTERN = r"^[A-Z0-9_]+$"


class EnvVarModel(BaseModel):
    """One configuration entry as exchanged with clients."""

    key: str = Field(min_length=1, pattern=ENV_KEY_PATTERN)
    value: str = ""
    description: str = ""
    default_value: str | None = None

    @classmethod
    def from_env_var(cls, var: EnvVar) -> EnvVarModel:
        return cls(
            key=var.key,
            value=var.value,
            description=var.description,
            default_value=var.default_value,
        )

    def to_env_var(self) -> EnvVar:
        return EnvVar(
            key=self.key,
            value=self.value,
            description=self.description,
            default_value=self.default_value,
        )


class RegenerateRequest(BaseModel):
    """Request to regenerate both artifacts from a variable list."""

    env_vars: list[EnvVarModel]
    build_file: str
    port: int = Field(ge=1, le=65535)
    merge_defaults: bool = Field(
        default=False, description="Merge the mandatory variables before regenerating"
    )


class ArtifactsResponse(BaseModel):
    """Regenerated artifacts and the variable list they were derived from."""

    env_vars: list[EnvVarModel]
    build_file: str
    compose_file: str
    port: int
