"""Artifact templating: Dockerfile ENV block and compose file from one variable list.

Both artifacts are pure functions of the variable list and the port. Editing
operations never mutate a list in place; they return a new one.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)

BUILD_FILE_PATH = "Dockerfile"
COMPOSE_FILE_PATH = "docker-compose.yaml"
COMPOSE_SERVICE = "app"
COMPOSE_NETWORK = "coolify"

_ENV_LINE_RE = re.compile(r"^\s*ENV\s", re.IGNORECASE)
_WORKDIR_RE = re.compile(r"^\s*WORKDIR\b", re.IGNORECASE)
_FROM_RE = re.compile(r"^\s*FROM\b", re.IGNORECASE)
_INVALID_KEY_CHARS_RE = re.compile(r"[^A-Z0-9_]")
_COMPOSE_REF_RE = re.compile(r"^([A-Za-z0-9_]+)=\$\{([A-Za-z0-9_]+)\}$")


@dataclass(frozen=True)
class EnvVar:
    """One configuration entry.

    ``default_value`` is a placeholder hint for editing surfaces; it is never
    written into an artifact.
    """

    key: str
    value: str = ""
    description: str = ""
    default_value: str | None = None


@dataclass(frozen=True)
class ArtifactPair:
    """Generated build file and compose file for one variable list."""

    build_file: str
    compose_file: str
    port: int


MANDATORY_ENV_VARS: tuple[EnvVar, ...] = (
    EnvVar("LLM_PROVIDER", "openrouter", "Set to 'openrouter' or 'gemini'"),
    EnvVar("OPENROUTER_API_KEY", "", "Required if LLM_PROVIDER is openrouter"),
    EnvVar("GOOGLE_API_KEY", "", "Required if LLM_PROVIDER is gemini"),
    EnvVar("BASE_URL", "https://openrouter.ai/api/v1", "API endpoint (for OpenRouter)"),
    EnvVar("MODEL_NAME", "meta-llama/llama-3.1-8b-instruct", "Model ID (for OpenRouter)"),
    EnvVar("HOST", "0.0.0.0", "Required for Docker networking"),
)

PRIORITY_KEYS: tuple[str, ...] = (
    "HOST",
    "PORT",
    "LLM_PROVIDER",
    "OPENROUTER_API_KEY",
    "GOOGLE_API_KEY",
    "BASE_URL",
    "MODEL_NAME",
)

SYSTEM_KEYS = frozenset({"HOST", "PORT", "CI"})


def normalize_key(raw: str) -> str:
    """Upper-case a user-supplied key and replace characters outside [A-Z0-9_]."""
    return _INVALID_KEY_CHARS_RE.sub("_", raw.strip().upper())


def dedupe_env_vars(env_vars: Iterable[EnvVar]) -> list[EnvVar]:
    """Drop repeated keys, keeping the first occurrence."""
    seen: set[str] = set()
    result: list[EnvVar] = []
    for var in env_vars:
        if var.key in seen:
            continue
        seen.add(var.key)
        result.append(var)
    return result


def _sort_key(var: EnvVar) -> tuple[int, str]:
    try:
        return (PRIORITY_KEYS.index(var.key), "")
    except ValueError:
        return (len(PRIORITY_KEYS), var.key)


def sort_env_vars(env_vars: Iterable[EnvVar]) -> list[EnvVar]:
    """Order infrastructure keys first in fixed order, then the rest alphabetically."""
    return sorted(env_vars, key=_sort_key)


def visible_env_vars(env_vars: Iterable[EnvVar]) -> list[EnvVar]:
    """Entries a user is expected to edit (system keys are handled automatically)."""
    return [var for var in env_vars if var.key not in SYSTEM_KEYS]


def merge_defaults(env_vars: Iterable[EnvVar]) -> list[EnvVar]:
    """Union the mandatory variables into ``env_vars`` and sort the result.

    Existing entries keep their value unless it is empty, in which case the
    mandatory default fills it. Missing mandatory keys are appended. Applying
    this twice gives the same list as applying it once.
    """
    merged = dedupe_env_vars(env_vars)
    index = {var.key: i for i, var in enumerate(merged)}
    for required in MANDATORY_ENV_VARS:
        position = index.get(required.key)
        if position is None:
            index[required.key] = len(merged)
            merged.append(required)
            continue
        existing = merged[position]
        if not existing.value and required.value:
            merged[position] = replace(existing, value=required.value)
    return sort_env_vars(merged)


def add_env_var(
    env_vars: Sequence[EnvVar], raw_key: str, value: str = "", description: str = ""
) -> list[EnvVar]:
    """Return a new list with a user-added variable appended.

    The key is normalized first. An empty or already-present key leaves the
    list unchanged.
    """
    key = normalize_key(raw_key)
    if not key or any(var.key == key for var in env_vars):
        return list(env_vars)
    return [
        *env_vars,
        EnvVar(key, value, description or "User added variable", default_value=""),
    ]


def update_env_var(env_vars: Sequence[EnvVar], key: str, value: str) -> list[EnvVar]:
    """Return a new list with the value of ``key`` replaced."""
    return [replace(var, value=value) if var.key == key else var for var in env_vars]


def remove_env_var(env_vars: Sequence[EnvVar], key: str) -> list[EnvVar]:
    """Return a new list without ``key``."""
    return [var for var in env_vars if var.key != key]


def _quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )
    return f'"{escaped}"'


def _strip_env_instructions(lines: list[str]) -> list[str]:
    """Remove every ENV instruction, including backslash continuation lines."""
    kept: list[str] = []
    continuing = False
    for line in lines:
        if continuing or _ENV_LINE_RE.match(line):
            continuing = line.rstrip().endswith("\\")
            continue
        kept.append(line)
    return kept


def _anchor_index(lines: list[str]) -> int:
    """Index of the line after which ENV lines go, or -1 for the top of the file."""
    for pattern in (_WORKDIR_RE, _FROM_RE):
        for i, line in enumerate(lines):
            if pattern.match(line):
                return i
    return -1


def regenerate_build_file(build_file: str, env_vars: Iterable[EnvVar]) -> str:
    """Rewrite the ENV block of a Dockerfile from ``env_vars``.

    All existing ENV instructions are removed, then one ``ENV KEY="value"``
    line per key is inserted after the first WORKDIR (else the first FROM,
    else at the top). Running this on its own output is a no-op.
    """
    lines = _strip_env_instructions(build_file.split("\n"))
    env_lines = [f"ENV {var.key}={_quote(var.value or '')}" for var in dedupe_env_vars(env_vars)]
    insert_at = _anchor_index(lines) + 1
    lines[insert_at:insert_at] = env_lines
    return "\n".join(lines)


def render_compose_file(env_vars: Iterable[EnvVar], port: int) -> str:
    """Build the compose file from scratch.

    The environment block references each key for substitution by the host;
    values are never embedded.
    """
    unique = dedupe_env_vars(env_vars)
    env_block = "\n".join(f"      - {var.key}=${{{var.key}}}" for var in unique)
    if not env_block:
        env_block = "      # No environment variables defined"
    return (
        "version: '3.8'\n"
        "services:\n"
        f"  {COMPOSE_SERVICE}:\n"
        "    build: .\n"
        "    restart: always\n"
        "    expose:\n"
        f'      - "{port}"\n'
        "    networks:\n"
        f"      - {COMPOSE_NETWORK}\n"
        "    environment:\n"
        f"{env_block}\n"
        "\n"
        "networks:\n"
        f"  {COMPOSE_NETWORK}:\n"
        "    external: true\n"
    )


def regenerate(env_vars: Sequence[EnvVar], previous_build_file: str, port: int) -> ArtifactPair:
    """Derive both artifacts from the variable list and port."""
    return ArtifactPair(
        build_file=regenerate_build_file(previous_build_file, env_vars),
        compose_file=render_compose_file(env_vars, port),
        port=port,
    )


def compose_environment_keys(compose_file: str) -> list[str]:
    """Return the environment keys of the app service, in file order.

    Raises ValueError if an entry embeds a literal value instead of a
    ``KEY=${KEY}`` reference, and ``yaml.YAMLError`` on unparseable text.
    """
    data: Any = yaml.safe_load(compose_file)
    if not isinstance(data, dict):
        raise ValueError("Compose file is not a mapping")
    service = (data.get("services") or {}).get(COMPOSE_SERVICE)
    if not isinstance(service, dict):
        raise ValueError(f"Compose file has no '{COMPOSE_SERVICE}' service")
    environment = service.get("environment") or []
    keys: list[str] = []
    for item in environment:
        match = _COMPOSE_REF_RE.match(str(item))
        if match is None or match.group(1) != match.group(2):
            raise ValueError(f"Compose environment entry is not a substitution: {item!r}")
        keys.append(match.group(1))
    return keys


def build_file_env_keys(build_file: str) -> list[str]:
    """Return the keys declared by single-line ENV instructions, in file order."""
    keys: list[str] = []
    for line in build_file.split("\n"):
        if _ENV_LINE_RE.match(line):
            declaration = line.strip()[4:].strip()
            keys.append(declaration.split("=", 1)[0].split(" ", 1)[0])
    return keys


def validate_artifacts(artifacts: ArtifactPair, env_vars: Sequence[EnvVar]) -> None:
    """Check that both artifacts declare every variable exactly once.

    Raises ValueError describing the first inconsistency found.
    """
    expected = [var.key for var in dedupe_env_vars(env_vars)]
    compose_keys = compose_environment_keys(artifacts.compose_file)
    if sorted(compose_keys) != sorted(expected):
        msg = f"Compose environment keys {compose_keys} do not match variables {expected}"
        raise ValueError(msg)
    build_keys = build_file_env_keys(artifacts.build_file)
    if sorted(build_keys) != sorted(expected):
        msg = f"Dockerfile ENV keys {build_keys} do not match variables {expected}"
        raise ValueError(msg)
    logger.debug("Artifacts declare %d variable(s) consistently", len(expected))
