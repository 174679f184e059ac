"""CLI client: analyze a local project, render its artifacts and publish it to GitHub."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from backend.config import Settings
from backend.exceptions import (
    AnalysisError,
    ConfigurationError,
    GitHubAPIError,
    RefUpdateError,
    SyncError,
)
from backend.filesystem.folder_reader import scan_project_folder
from backend.githost.github import GitHubClient
from backend.services.analysis_service import AnalysisConfig, analyze_project
from backend.services.deploy_service import (
    DeployRequest,
    DeployResult,
    default_commit_message,
    deploy_project,
    sanitize_repo_name,
)
from backend.services.template_service import (
    BUILD_FILE_PATH,
    COMPOSE_FILE_PATH,
    EnvVar,
    add_env_var,
    merge_defaults,
    normalize_key,
    regenerate,
    update_env_var,
    visible_env_vars,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from backend.schemas.analysis import AnalysisResult
    from backend.services.sync_service import FileRecord, SyncProgress

DEFAULT_PORT = 3000


def parse_env_assignments(values: Sequence[str]) -> list[tuple[str, str]]:
    """Parse repeated ``KEY=VALUE`` flags into normalized pairs."""
    pairs: list[tuple[str, str]] = []
    for raw in values:
        key, sep, value = raw.partition("=")
        key = normalize_key(key)
        if not sep or not key:
            msg = f"Invalid --env value {raw!r}, expected KEY=VALUE"
            raise ValueError(msg)
        pairs.append((key, value))
    return pairs


def apply_env_overrides(
    env_vars: Sequence[EnvVar], assignments: Sequence[tuple[str, str]]
) -> list[EnvVar]:
    """Set each assigned value, adding keys that are not in the list yet."""
    result = list(env_vars)
    for key, value in assignments:
        if any(var.key == key for var in result):
            result = update_env_var(result, key, value)
        else:
            result = add_env_var(result, key, value)
    return result


def format_progress(progress: SyncProgress) -> str:
    return f"[{progress.percent:3d}%] {progress.message}"


def print_progress(progress: SyncProgress) -> None:
    print(format_progress(progress), flush=True)


def print_env_vars(env_vars: Sequence[EnvVar]) -> None:
    shown = visible_env_vars(env_vars)
    if not shown:
        print("  (none)")
        return
    for var in shown:
        hint = f"  # {var.description}" if var.description else ""
        print(f"  {var.key}={var.value}{hint}")


def print_analysis(result: AnalysisResult, env_vars: Sequence[EnvVar]) -> None:
    print(f"Project:  {result.project_name or '(unnamed)'}")
    print(f"Stack:    {result.stack}")
    print(f"Port:     {result.port}")
    if result.explanation:
        print(f"Notes:    {result.explanation}")
    print("Environment variables:")
    print_env_vars(env_vars)


def print_result(result: DeployResult) -> None:
    print(f"Deployed to {result.repo_url}")
    print(f"  Commit:   {result.commit_sha}")
    print(f"  Uploaded: {len(result.uploaded)}")
    if result.skipped:
        print(f"  Skipped:  {len(result.skipped)}")
        for item in result.skipped:
            print(f"    - {item.path} ({item.reason})")
    if result.failed:
        print(f"  Failed:   {len(result.failed)}")
        for attempt in result.failed:
            print(f"    ! {attempt.path}: {attempt.error}")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )


async def run_analyze(
    settings: Settings, records: Sequence[FileRecord], provider: str | None = None
) -> tuple[AnalysisResult, list[EnvVar]]:
    """Analyze the records and return the result with merged variables."""
    config = AnalysisConfig.from_settings(settings, provider=provider)
    result = await analyze_project(
        records, config, max_chars=settings.analysis_max_file_chars
    )
    return result, merge_defaults(result.to_env_vars())


async def run_deploy(
    settings: Settings,
    token: str,
    request: DeployRequest,
    records: Sequence[FileRecord],
) -> DeployResult:
    async with GitHubClient(
        token,
        api_base=settings.github_api_base,
        timeout=settings.github_timeout_seconds,
    ) as client:
        return await deploy_project(
            client, request, records, settings, on_progress=print_progress
        )


def _render(args: argparse.Namespace, project_dir: Path) -> None:
    build_path = Path(args.build_file) if args.build_file else project_dir / BUILD_FILE_PATH
    if not build_path.is_file():
        raise FileNotFoundError(f"Build file not found: {build_path}")
    env_vars = apply_env_overrides([], parse_env_assignments(args.env))
    if not args.no_defaults:
        env_vars = merge_defaults(env_vars)
    artifacts = regenerate(env_vars, build_path.read_text(encoding="utf-8"), args.port)
    if args.output:
        out_dir = Path(args.output)
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / BUILD_FILE_PATH).write_text(artifacts.build_file, encoding="utf-8")
        (out_dir / COMPOSE_FILE_PATH).write_text(artifacts.compose_file, encoding="utf-8")
        print(f"Wrote {BUILD_FILE_PATH} and {COMPOSE_FILE_PATH} to {out_dir}")
        return
    print(f"# {BUILD_FILE_PATH}")
    print(artifacts.build_file, end="")
    print(f"# {COMPOSE_FILE_PATH}")
    print(artifacts.compose_file, end="")


def _deploy(args: argparse.Namespace, settings: Settings, project_dir: Path) -> None:
    token = args.token or settings.github_token
    if not token:
        raise ConfigurationError("GitHub token is missing. Pass --token or set GITHUB_TOKEN.")
    records = scan_project_folder(project_dir, settings.excluded_dirs)
    assignments = parse_env_assignments(args.env)

    stack = ""
    if args.build_file:
        build_file = Path(args.build_file).read_text(encoding="utf-8")
        port = args.port or DEFAULT_PORT
        env_vars = merge_defaults([])
    else:
        print("Analyzing project...", flush=True)
        analysis, env_vars = asyncio.run(run_analyze(settings, records, args.provider))
        build_file = analysis.build_file
        port = args.port or analysis.port
        stack = analysis.stack
    env_vars = apply_env_overrides(env_vars, assignments)

    request = DeployRequest(
        repo_name=args.repo or sanitize_repo_name(project_dir.name),
        env_vars=env_vars,
        build_file=build_file,
        port=port,
        commit_message=args.message or default_commit_message(),
        description=args.description,
        private=args.private,
        stack=stack,
    )
    result = asyncio.run(run_deploy(settings, token, request, records))
    print_result(result)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autodeploy",
        description="Analyze a project, generate its Dockerfile and compose file, "
        "and publish it to a new GitHub repository",
    )
    parser.add_argument("--dir", "-d", default=".", help="Project directory (default: current)")
    parser.add_argument("--token", "-t", help="GitHub token (default: GITHUB_TOKEN)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    analyze = subparsers.add_parser("analyze", help="Detect the stack, port and variables")
    analyze.add_argument("--provider", choices=["gemini", "openrouter"])

    render = subparsers.add_parser("render", help="Regenerate artifacts from a build file")
    render.add_argument("--build-file", help="Dockerfile to start from (default: DIR/Dockerfile)")
    render.add_argument("--port", type=int, default=DEFAULT_PORT)
    render.add_argument("--env", "-e", action="append", default=[], metavar="KEY=VALUE")
    render.add_argument(
        "--no-defaults", action="store_true", help="Do not merge the mandatory variables"
    )
    render.add_argument("--output", "-o", help="Write the artifacts to this directory")

    deploy = subparsers.add_parser("deploy", help="Create a repository and publish the project")
    deploy.add_argument("--repo", help="Repository name (default: directory name)")
    deploy.add_argument("--description", default="")
    deploy.add_argument("--private", action="store_true")
    deploy.add_argument("--message", "-m", help="Commit message (default: Update vYYYY-MM-DD)")
    deploy.add_argument("--build-file", help="Use this Dockerfile instead of running analysis")
    deploy.add_argument("--port", type=int)
    deploy.add_argument("--env", "-e", action="append", default=[], metavar="KEY=VALUE")
    deploy.add_argument("--provider", choices=["gemini", "openrouter"])
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    if args.command is None:
        parser.print_help()
        return

    settings = Settings()
    project_dir = Path(args.dir).resolve()

    try:
        if args.command == "analyze":
            records = scan_project_folder(project_dir, settings.excluded_dirs)
            result, env_vars = asyncio.run(run_analyze(settings, records, args.provider))
            print_analysis(result, env_vars)
        elif args.command == "render":
            _render(args, project_dir)
        elif args.command == "deploy":
            _deploy(args, settings, project_dir)
    except RefUpdateError as exc:
        print(f"Error: {exc}")
        print(f"Commit {exc.orphaned_commit} was created but the branch was not moved.")
        sys.exit(1)
    except (
        ConfigurationError,
        AnalysisError,
        GitHubAPIError,
        SyncError,
        httpx.HTTPError,
        ValueError,
        OSError,
    ) as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
