"""Analysis service: ask a generative model to infer a project's stack and Dockerfile."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from backend.exceptions import AnalysisError, ConfigurationError
from backend.filesystem.folder_reader import read_text_head
from backend.schemas.analysis import AnalysisResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from backend.config import Settings
    from backend.services.sync_service import FileRecord

logger = logging.getLogger(__name__)

CRITICAL_FILES = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "requirements.txt",
        "Pipfile",
        "pyproject.toml",
        "go.mod",
        "Gemfile",
        "composer.json",
        "Dockerfile",
        "docker-compose.yml",
        "docker-compose.yaml",
        "next.config.js",
        "vite.config.ts",
        "vite.config.js",
        "nuxt.config.ts",
        "webpack.config.js",
        "pom.xml",
        "build.gradle",
        "app.json",
        "config.js",
        "config.ts",
        "settings.py",
    }
)
_FALLBACK_SUFFIXES = (".js", ".ts", ".py", ".json")
_FALLBACK_LIMIT = 5

_SYSTEM_MESSAGE = "You are a JSON-only API. Return valid JSON matching the requested schema."

_PROMPT_TEMPLATE = """\
You are an expert DevOps engineer reviewing a software project.
The files below are excerpts from the project.

Your goal is to:
1. Identify the project name (from the package manifest or folder structure) and the stack.
2. Identify the port the application listens on. If uncertain, use 3000 for Node and
   8000 for Python.
3. Write a production-ready Dockerfile for a Coolify deployment.
4. List the environment variables the application needs.

Environment variables:
- List only real application secrets or configuration (DATABASE_URL, API keys, JWT_SECRET).
- Never list npm_config_*, npm_package_*, NODE_VERSION, PYTHON_VERSION, TERM, COLOR,
  HOSTNAME, HOME, PWD, HOST, PORT or CI.
- Always include LLM_PROVIDER (default 'openrouter'), BASE_URL (default
  'https://openrouter.ai/api/v1'), MODEL_NAME (default 'meta-llama/llama-3.1-8b-instruct'),
  OPENROUTER_API_KEY and GOOGLE_API_KEY (both default '').

Dockerfile:
- Copy sources with 'COPY . .'.
- EXPOSE the detected port.
- The application must listen on 0.0.0.0. For Node add 'ENV HOST=0.0.0.0'; for Python
  pass '--host 0.0.0.0' in CMD.
- For Vite projects build the bundle and serve it with 'serve -s dist' instead of
  'vite preview'.
- For Node use 'npm install' rather than 'npm ci', set 'ENV CI=true' before installing,
  and on Alpine images run 'apk add --no-cache git' before any git command.
- Declare every environment variable with an 'ENV KEY="default"' line.

Respond with a JSON object with the keys projectName, stack, dockerfile, explanation,
port and envVars (a list of objects with key, description and defaultValue).

Files provided:
{files}

Return JSON only. No markdown."""

_GEMINI_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "projectName": {"type": "STRING"},
        "stack": {"type": "STRING"},
        "dockerfile": {"type": "STRING"},
        "explanation": {"type": "STRING"},
        "port": {"type": "INTEGER"},
        "envVars": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "key": {"type": "STRING"},
                    "description": {"type": "STRING"},
                    "defaultValue": {"type": "STRING"},
                },
            },
        },
    },
    "required": ["projectName", "stack", "dockerfile", "envVars", "port"],
}


@dataclass(frozen=True)
class FileExcerpt:
    """Leading text of one project file."""

    path: str
    content: str


@dataclass(frozen=True)
class AnalysisConfig:
    """Provider selection and credentials for one analysis call."""

    provider: str
    api_key: str
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "meta-llama/llama-3.1-8b-instruct"
    gemini_model: str = "gemini-2.5-flash"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout: float = 120.0

    @classmethod
    def from_settings(
        cls, settings: Settings, *, provider: str | None = None, model: str | None = None
    ) -> AnalysisConfig:
        return cls(
            provider=provider or settings.ai_provider,
            api_key=settings.api_key,
            base_url=settings.ai_base_url,
            model=model or settings.ai_model,
            gemini_model=model or settings.gemini_model,
            gemini_api_base=settings.gemini_api_base,
            timeout=settings.analysis_timeout_seconds,
        )


def is_critical_file(path: str) -> bool:
    """Return True for manifests, lockfiles, build configs and env templates."""
    name = PurePosixPath(path).name
    return name in CRITICAL_FILES or name.startswith(".env")


def select_context_paths(paths: Sequence[str]) -> list[str]:
    """Choose which files to send for analysis.

    Critical files anywhere in the tree; if there are none, up to five
    root-level source files.
    """
    selected = [p for p in paths if is_critical_file(p)]
    if selected:
        return selected
    root_files = [p for p in paths if "/" not in p and p.endswith(_FALLBACK_SUFFIXES)]
    return root_files[:_FALLBACK_LIMIT]


def build_analysis_prompt(excerpts: Sequence[FileExcerpt], max_chars: int = 4000) -> str:
    """Render the analysis prompt for the given file excerpts."""
    blocks = [f"File: {e.path}\nContent:\n{e.content[:max_chars]}\n---\n" for e in excerpts]
    return _PROMPT_TEMPLATE.format(files="\n".join(blocks))


def clean_json_response(text: str) -> str:
    """Strip Markdown code fences some models wrap around JSON."""
    clean = text.strip()
    if clean.startswith("```json"):
        clean = clean[len("```json") :]
    elif clean.startswith("```"):
        clean = clean[len("```") :]
    else:
        return clean
    if clean.rstrip().endswith("```"):
        clean = clean.rstrip()[: -len("```")]
    return clean.strip()


def parse_analysis_response(text: str) -> AnalysisResult:
    """Parse and shape-check a model response.

    Raises AnalysisError when the text is not JSON or misses required fields.
    """
    cleaned = clean_json_response(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.error("Analysis backend returned invalid JSON: %.200s", text)
        raise AnalysisError("AI returned invalid JSON. Please try again.") from exc
    if not isinstance(payload, dict):
        raise AnalysisError("AI response is not a JSON object")
    try:
        return AnalysisResult.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise AnalysisError(f"AI response is missing or has invalid fields: {fields}") from exc


async def _call_gemini(client: httpx.AsyncClient, prompt: str, config: AnalysisConfig) -> str:
    resp = await client.post(
        f"{config.gemini_api_base.rstrip('/')}/models/{config.gemini_model}:generateContent",
        headers={"x-goog-api-key": config.api_key},
        json={
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": _GEMINI_RESPONSE_SCHEMA,
            },
        },
    )
    if resp.status_code != 200:
        msg = f"Gemini request failed: {resp.status_code}"
        raise AnalysisError(msg)
    data = resp.json()
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as exc:
        raise AnalysisError("Gemini response has no candidates") from exc
    return "".join(str(part.get("text", "")) for part in parts) or "{}"


async def _call_openrouter(
    client: httpx.AsyncClient, prompt: str, config: AnalysisConfig
) -> str:
    resp = await client.post(
        f"{config.base_url.rstrip('/')}/chat/completions",
        headers={"Authorization": f"Bearer {config.api_key}"},
        json={
            "model": config.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        },
    )
    if resp.status_code != 200:
        msg = f"OpenRouter request failed: {resp.status_code}"
        raise AnalysisError(msg)
    data = resp.json()
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise AnalysisError("OpenRouter response has no choices") from exc
    return content or "{}"


PROVIDERS: dict[
    str, Callable[[httpx.AsyncClient, str, AnalysisConfig], Awaitable[str]]
] = {
    "gemini": _call_gemini,
    "openrouter": _call_openrouter,
}


def list_providers() -> list[str]:
    """Return the supported provider names."""
    return list(PROVIDERS.keys())


async def analyze_excerpts(
    excerpts: Sequence[FileExcerpt],
    config: AnalysisConfig,
    *,
    max_chars: int = 4000,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AnalysisResult:
    """Send file excerpts to the configured provider and return the parsed analysis.

    Raises ConfigurationError before any request when the key or provider is
    missing, and AnalysisError for transport or payload failures.
    """
    if not config.api_key:
        raise ConfigurationError(
            "Environment variable API_KEY is missing. The application cannot access AI services."
        )
    call = PROVIDERS.get(config.provider)
    if call is None:
        msg = f"Unknown analysis provider: {config.provider!r}. Available: {list_providers()}"
        raise ConfigurationError(msg)

    prompt = build_analysis_prompt(excerpts, max_chars=max_chars)
    logger.info("Analyzing %d file(s) with %s", len(excerpts), config.provider)
    try:
        async with httpx.AsyncClient(timeout=config.timeout, transport=transport) as client:
            text = await call(client, prompt, config)
    except httpx.HTTPError as exc:
        raise AnalysisError(f"Analysis request failed: {exc}") from exc
    except ValueError as exc:
        raise AnalysisError("Analysis backend returned a non-JSON envelope") from exc
    return parse_analysis_response(text)


def excerpts_from_records(
    records: Sequence[FileRecord], max_chars: int = 4000
) -> list[FileExcerpt]:
    """Read the leading text of the records chosen by :func:`select_context_paths`."""
    by_path = {record.path: record for record in records}
    return [
        FileExcerpt(path=path, content=read_text_head(by_path[path], max_chars))
        for path in select_context_paths(list(by_path))
    ]


async def analyze_project(
    records: Sequence[FileRecord],
    config: AnalysisConfig,
    *,
    max_chars: int = 4000,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AnalysisResult:
    """Analyze a scanned project folder."""
    if not config.api_key:
        raise ConfigurationError(
            "Environment variable API_KEY is missing. The application cannot access AI services."
        )
    excerpts = await asyncio.to_thread(excerpts_from_records, records, max_chars)
    if not excerpts:
        raise AnalysisError("No configuration or source files found to analyze")
    return await analyze_excerpts(excerpts, config, max_chars=max_chars, transport=transport)
