"""Sync service: publish a file set and generated artifacts as one commit.

A run walks a fixed sequence of phases (resolve target, upload artifacts,
upload files, build tree, commit, move the branch). Every phase needs the
previous phase's output, so phases never overlap. Inside the file phase
uploads run concurrently and each file yields an independent attempt result;
a failed file is left out of the tree instead of aborting the run.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import httpx

from backend.exceptions import GitHubAPIError, RefUpdateError, SyncCancelledError, SyncError
from backend.githost.base import BlobEncoding, FileMode, TreeEntry
from backend.services.template_service import BUILD_FILE_PATH, COMPOSE_FILE_PATH

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable, Sequence
    from pathlib import Path

    from backend.githost.base import GitObjectStore
    from backend.services.template_service import ArtifactPair

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 1024 * 1024
DEFAULT_UPLOAD_CONCURRENCY = 8

# Dependency caches, VCS metadata and build output. Always skipped, whatever
# extra exclusions the caller adds.
ALWAYS_EXCLUDED_DIRS = frozenset({"node_modules", ".git", ".next"})

# Root paths owned by the generated artifacts, plus the other file names
# compose discovers on its own.
RESERVED_PATHS = frozenset(
    {BUILD_FILE_PATH, COMPOSE_FILE_PATH, "docker-compose.yml", "compose.yaml", "compose.yml"}
)

# Errors from a single remote call. Anything else is a bug and propagates.
_REMOTE_ERRORS = (GitHubAPIError, httpx.HTTPError)


class SyncPhase(StrEnum):
    """Phase of a sync run, in emission order."""

    INITIALIZING = "initializing"
    UPLOADING_ARTIFACTS = "uploading_artifacts"
    UPLOADING_FILES = "uploading_files"
    BUILDING_TREE = "building_tree"
    COMMITTING = "committing"
    UPDATING_REF = "updating_ref"
    FINISHED = "finished"
    ERROR = "error"


class SkipReason(StrEnum):
    """Why a file was left out without an upload attempt."""

    EXCLUDED = "excluded"
    TOO_LARGE = "too_large"
    RESERVED_PATH = "reserved_path"


# Percent range covered by each phase. Only FINISHED reaches 100.
_PHASE_SPANS: dict[SyncPhase, tuple[int, int]] = {
    SyncPhase.INITIALIZING: (0, 10),
    SyncPhase.UPLOADING_ARTIFACTS: (10, 30),
    SyncPhase.UPLOADING_FILES: (30, 80),
    SyncPhase.BUILDING_TREE: (80, 90),
    SyncPhase.COMMITTING: (90, 95),
    SyncPhase.UPDATING_REF: (95, 99),
    SyncPhase.FINISHED: (100, 100),
}

# Cancellation is honoured before these phases only; once committing starts
# the run goes to completion or error.
_CANCELLABLE_PHASES = frozenset(
    {
        SyncPhase.UPLOADING_ARTIFACTS,
        SyncPhase.UPLOADING_FILES,
        SyncPhase.BUILDING_TREE,
        SyncPhase.COMMITTING,
    }
)


@dataclass(frozen=True)
class FileRecord:
    """One local file, addressed by its repository-relative path.

    ``source`` is either a filesystem path or the file's bytes.
    """

    path: str
    source: Path | bytes
    size_bytes: int
    executable: bool = False

    async def read_bytes(self) -> bytes:
        """Read the file contents without blocking the event loop."""
        if isinstance(self.source, bytes):
            return self.source
        return await asyncio.to_thread(self.source.read_bytes)


@dataclass(frozen=True)
class RepositoryTarget:
    """Repository and branch a run publishes to.

    ``base_commit``/``base_tree`` are None for a branch with no history.
    """

    owner: str
    name: str
    branch: str = "main"
    base_commit: str | None = None
    base_tree: str | None = None
    html_url: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class SyncProgress:
    """Progress snapshot reported to the caller."""

    percent: int
    message: str
    phase: SyncPhase


@dataclass(frozen=True)
class SkippedFile:
    """A file left out before any upload attempt."""

    path: str
    reason: SkipReason


@dataclass(frozen=True)
class UploadAttempt:
    """Outcome of uploading one file: a blob sha or an error message."""

    path: str
    sha: str | None = None
    error: str | None = None
    mode: FileMode = FileMode.REGULAR

    @property
    def ok(self) -> bool:
        return self.sha is not None

    def tree_entry(self) -> TreeEntry:
        if self.sha is None:
            msg = f"Upload of {self.path} failed; it has no tree entry"
            raise ValueError(msg)
        return TreeEntry(path=self.path, sha=self.sha, mode=self.mode)


@dataclass(frozen=True)
class SyncResult:
    """Summary of a completed run."""

    repo_url: str
    commit_sha: str
    tree_sha: str
    uploaded: list[str] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)
    failed: list[UploadAttempt] = field(default_factory=list)


@dataclass(frozen=True)
class SyncState:
    """Values accumulated by the phases of one run."""

    target: RepositoryTarget
    entries: tuple[TreeEntry, ...] = ()
    attempts: tuple[UploadAttempt, ...] = ()
    skipped: tuple[SkippedFile, ...] = ()
    tree_sha: str | None = None
    commit_sha: str | None = None


ProgressCallback = Callable[[SyncProgress], None]


def project_progress(phase: SyncPhase, fraction: float = 0.0) -> int:
    """Map a phase and the fraction of it completed to an overall percent."""
    if phase is SyncPhase.ERROR:
        raise ValueError("The error phase has no progress position")
    start, end = _PHASE_SPANS[phase]
    fraction = min(max(fraction, 0.0), 1.0)
    return start + math.floor((end - start) * fraction)


class ProgressReporter:
    """Forwards progress to a callback, never letting the percent go down."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self.current = SyncProgress(percent=0, message="", phase=SyncPhase.INITIALIZING)

    def report(self, phase: SyncPhase, message: str, fraction: float = 0.0) -> None:
        percent = max(project_progress(phase, fraction), self.current.percent)
        self.current = SyncProgress(percent=percent, message=message, phase=phase)
        if self._callback is not None:
            self._callback(self.current)

    def fail(self, message: str) -> None:
        """Enter the terminal error state. The callback is not invoked."""
        self.current = SyncProgress(
            percent=self.current.percent, message=message, phase=SyncPhase.ERROR
        )


def is_excluded_path(path: str, excluded_dirs: Iterable[str] = ()) -> bool:
    """Return True if any directory segment of ``path`` is excluded.

    ``ALWAYS_EXCLUDED_DIRS`` apply in addition to ``excluded_dirs``.
    """
    excluded = ALWAYS_EXCLUDED_DIRS.union(excluded_dirs)
    parts = PurePosixPath(path).parts
    return any(part in excluded for part in parts[:-1])


def partition_files(
    files: Iterable[FileRecord],
    *,
    excluded_dirs: Iterable[str] = (),
    max_size: int = DEFAULT_MAX_FILE_SIZE,
) -> tuple[list[FileRecord], list[SkippedFile]]:
    """Split ``files`` into records to upload and records skipped by policy."""
    excluded = ALWAYS_EXCLUDED_DIRS.union(excluded_dirs)
    eligible: list[FileRecord] = []
    skipped: list[SkippedFile] = []
    for record in files:
        if is_excluded_path(record.path, excluded):
            skipped.append(SkippedFile(record.path, SkipReason.EXCLUDED))
        elif record.path in RESERVED_PATHS:
            skipped.append(SkippedFile(record.path, SkipReason.RESERVED_PATH))
        elif record.size_bytes > max_size:
            skipped.append(SkippedFile(record.path, SkipReason.TOO_LARGE))
        else:
            eligible.append(record)
    return eligible, skipped


async def resolve_target(
    store: GitObjectStore, owner: str, name: str, branch: str = "main", html_url: str | None = None
) -> RepositoryTarget:
    """Read the branch tip and its tree once.

    A missing branch is the empty-history case and is not an error.
    """
    base_commit = await store.get_branch_tip(owner, name, branch)
    base_tree = None
    if base_commit is not None:
        base_tree = await store.get_commit_tree(owner, name, base_commit)
    return RepositoryTarget(
        owner=owner,
        name=name,
        branch=branch,
        base_commit=base_commit,
        base_tree=base_tree,
        html_url=html_url,
    )


class SyncRun:
    """One publish of a file set plus artifacts to a repository branch."""

    def __init__(
        self,
        store: GitObjectStore,
        target: RepositoryTarget,
        files: Sequence[FileRecord],
        artifacts: ArtifactPair,
        message: str,
        *,
        on_progress: ProgressCallback | None = None,
        excluded_dirs: Iterable[str] = (),
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        concurrency: int = DEFAULT_UPLOAD_CONCURRENCY,
        resolve: bool = True,
        cancel_event: asyncio.Event | None = None,
        web_base: str = "https://github.com",
    ) -> None:
        if not message.strip():
            raise ValueError("Commit message must not be empty")
        if concurrency < 1:
            raise ValueError("Upload concurrency must be at least 1")
        self.store = store
        self.target = target
        self.files = list(files)
        self.artifacts = artifacts
        self.message = message
        self.reporter = ProgressReporter(on_progress)
        self.excluded_dirs = frozenset(excluded_dirs)
        self.max_file_size = max_file_size
        self.concurrency = concurrency
        self.resolve = resolve
        self.cancel_event = cancel_event
        self.web_base = web_base.rstrip("/")

    @property
    def progress(self) -> SyncProgress:
        return self.reporter.current

    async def run(self) -> SyncResult:
        """Execute every phase in order and return the published result.

        Raises SyncError (or a subclass) naming the phase that failed.
        """
        phases: list[tuple[SyncPhase, Callable[[SyncState], Awaitable[SyncState]]]] = [
            (SyncPhase.INITIALIZING, self._initialize),
            (SyncPhase.UPLOADING_ARTIFACTS, self._upload_artifacts),
            (SyncPhase.UPLOADING_FILES, self._upload_files),
            (SyncPhase.BUILDING_TREE, self._build_tree),
            (SyncPhase.COMMITTING, self._commit),
            (SyncPhase.UPDATING_REF, self._update_ref),
        ]
        state = SyncState(target=self.target)
        for phase, handler in phases:
            self._check_cancelled(phase)
            try:
                state = await handler(state)
            except SyncError as exc:
                self.reporter.fail(str(exc))
                raise
            except _REMOTE_ERRORS as exc:
                error = self._phase_error(phase, state, exc)
                logger.error("Sync of %s failed: %s", self.target.full_name, error)
                self.reporter.fail(str(error))
                raise error from exc

        assert state.commit_sha is not None and state.tree_sha is not None
        result = SyncResult(
            repo_url=self._repo_url(state.target),
            commit_sha=state.commit_sha,
            tree_sha=state.tree_sha,
            uploaded=[entry.path for entry in state.entries],
            skipped=list(state.skipped),
            failed=[attempt for attempt in state.attempts if not attempt.ok],
        )
        self.reporter.report(SyncPhase.FINISHED, "Done!")
        logger.info(
            "Published %d file(s) to %s at %s (%d skipped, %d failed)",
            len(result.uploaded),
            state.target.full_name,
            result.commit_sha,
            len(result.skipped),
            len(result.failed),
        )
        return result

    def _check_cancelled(self, phase: SyncPhase) -> None:
        if self.cancel_event is None or not self.cancel_event.is_set():
            return
        if phase not in _CANCELLABLE_PHASES:
            return
        error = SyncCancelledError(str(phase), "Sync cancelled")
        self.reporter.fail(str(error))
        raise error

    def _phase_error(self, phase: SyncPhase, state: SyncState, exc: Exception) -> SyncError:
        if phase is SyncPhase.UPDATING_REF and state.commit_sha is not None:
            return RefUpdateError(
                str(phase),
                f"Failed to update ref {state.target.branch}: {exc}",
                orphaned_commit=state.commit_sha,
            )
        descriptions = {
            SyncPhase.INITIALIZING: "Failed to resolve branch",
            SyncPhase.UPLOADING_ARTIFACTS: "Failed to upload generated artifacts",
            SyncPhase.BUILDING_TREE: "Failed to create tree",
            SyncPhase.COMMITTING: "Failed to create commit",
        }
        return SyncError(str(phase), f"{descriptions.get(phase, 'Sync failed')}: {exc}")

    def _repo_url(self, target: RepositoryTarget) -> str:
        return target.html_url or f"{self.web_base}/{target.full_name}"

    # ── Phases ───────────────────────────────────────

    async def _initialize(self, state: SyncState) -> SyncState:
        self.reporter.report(SyncPhase.INITIALIZING, "Getting repo info...")
        if not self.resolve:
            return state
        target = await resolve_target(
            self.store,
            state.target.owner,
            state.target.name,
            state.target.branch,
            html_url=state.target.html_url,
        )
        if target.base_commit is None:
            logger.info("%s has no history on %s", target.full_name, target.branch)
        return replace(state, target=target)

    async def _upload_artifacts(self, state: SyncState) -> SyncState:
        owner, repo = state.target.owner, state.target.name
        self.reporter.report(SyncPhase.UPLOADING_ARTIFACTS, f"Uploading {BUILD_FILE_PATH}...")
        build_sha = await self.store.create_blob(
            owner, repo, self.artifacts.build_file, BlobEncoding.UTF8
        )
        self.reporter.report(
            SyncPhase.UPLOADING_ARTIFACTS, f"Uploading {COMPOSE_FILE_PATH}...", 0.5
        )
        compose_sha = await self.store.create_blob(
            owner, repo, self.artifacts.compose_file, BlobEncoding.UTF8
        )
        entries = (
            TreeEntry(path=BUILD_FILE_PATH, sha=build_sha),
            TreeEntry(path=COMPOSE_FILE_PATH, sha=compose_sha),
        )
        return replace(state, entries=entries)

    async def _upload_files(self, state: SyncState) -> SyncState:
        eligible, skipped = partition_files(
            self.files, excluded_dirs=self.excluded_dirs, max_size=self.max_file_size
        )
        for item in skipped:
            logger.debug("Skipping %s (%s)", item.path, item.reason)

        total = len(eligible)
        self.reporter.report(SyncPhase.UPLOADING_FILES, f"Uploading {total} file(s)...")
        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def attempt(record: FileRecord) -> UploadAttempt:
            nonlocal done
            async with semaphore:
                result = await self._upload_one(state.target, record)
            done += 1
            self.reporter.report(
                SyncPhase.UPLOADING_FILES, f"Uploading {record.path}...", done / total
            )
            return result

        attempts = await asyncio.gather(*(attempt(record) for record in eligible))
        if total == 0:
            self.reporter.report(SyncPhase.UPLOADING_FILES, "No files to upload", 1.0)

        accepted = tuple(a.tree_entry() for a in attempts if a.ok)
        failed = [a for a in attempts if not a.ok]
        if failed:
            logger.warning("%d of %d file upload(s) failed", len(failed), total)
        return replace(
            state,
            entries=state.entries + accepted,
            attempts=tuple(attempts),
            skipped=tuple(skipped),
        )

    async def _upload_one(self, target: RepositoryTarget, record: FileRecord) -> UploadAttempt:
        mode = FileMode.EXECUTABLE if record.executable else FileMode.REGULAR
        try:
            raw = await record.read_bytes()
            content = base64.b64encode(raw).decode("ascii")
            sha = await self.store.create_blob(
                target.owner, target.name, content, BlobEncoding.BASE64
            )
        except (*_REMOTE_ERRORS, OSError) as exc:
            logger.warning("Failed to upload %s: %s", record.path, exc)
            return UploadAttempt(path=record.path, error=str(exc), mode=mode)
        return UploadAttempt(path=record.path, sha=sha, mode=mode)

    async def _build_tree(self, state: SyncState) -> SyncState:
        self.reporter.report(SyncPhase.BUILDING_TREE, "Creating file tree...")
        tree_sha = await self.store.create_tree(
            state.target.owner,
            state.target.name,
            list(state.entries),
            base_tree=state.target.base_tree,
        )
        return replace(state, tree_sha=tree_sha)

    async def _commit(self, state: SyncState) -> SyncState:
        assert state.tree_sha is not None
        self.reporter.report(SyncPhase.COMMITTING, "Committing changes...")
        commit_sha = await self.store.create_commit(
            state.target.owner,
            state.target.name,
            state.tree_sha,
            self.message,
            parent=state.target.base_commit,
        )
        return replace(state, commit_sha=commit_sha)

    async def _update_ref(self, state: SyncState) -> SyncState:
        assert state.commit_sha is not None
        self.reporter.report(SyncPhase.UPDATING_REF, "Updating repository...")
        target = state.target
        if target.base_commit is None:
            logger.info("Creating branch %s in %s", target.branch, target.full_name)
            await self.store.create_ref(target.owner, target.name, target.branch, state.commit_sha)
        else:
            await self.store.update_ref(
                target.owner, target.name, target.branch, state.commit_sha, force=True
            )
        return state


async def run_sync(
    store: GitObjectStore,
    target: RepositoryTarget,
    files: Sequence[FileRecord],
    artifacts: ArtifactPair,
    message: str,
    **options: Any,
) -> SyncResult:
    """Publish ``files`` and ``artifacts`` to ``target`` as one commit."""
    sync_run = SyncRun(store, target, files, artifacts, message, **options)
    return await sync_run.run()
