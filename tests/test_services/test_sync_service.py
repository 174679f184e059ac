"""Tests for the sync engine: upload, tree, commit and ref phases."""

from __future__ import annotations

import asyncio

import pytest

from backend.exceptions import GitHubAPIError, RefUpdateError, SyncCancelledError, SyncError
from backend.githost.base import FileMode
from backend.services.sync_service import (
    FileRecord,
    ProgressReporter,
    RepositoryTarget,
    SkipReason,
    SyncPhase,
    SyncProgress,
    SyncRun,
    is_excluded_path,
    partition_files,
    project_progress,
    resolve_target,
    run_sync,
)
from backend.services.template_service import merge_defaults, regenerate
from tests.test_services._fake_store import FakeObjectStore

OWNER = "octocat"
REPO = "demo"
BUILD_FILE = "FROM node:20-alpine\nWORKDIR /app\nCOPY . .\nCMD [\"node\", \"index.js\"]\n"


def _record(path: str, content: bytes | str = b"x", *, executable: bool = False) -> FileRecord:
    raw = content.encode() if isinstance(content, str) else content
    return FileRecord(path=path, source=raw, size_bytes=len(raw), executable=executable)


def _artifacts():
    return regenerate(merge_defaults([]), BUILD_FILE, 3000)


def _target() -> RepositoryTarget:
    return RepositoryTarget(owner=OWNER, name=REPO)


def _empty_store() -> FakeObjectStore:
    return FakeObjectStore(login=OWNER, auto_init=False)


class TestIsExcludedPath:
    def test_always_excluded_segments(self) -> None:
        assert is_excluded_path("node_modules/react/index.js")
        assert is_excluded_path("packages/web/node_modules/a.js")
        assert is_excluded_path(".git/HEAD")
        assert is_excluded_path(".next/cache/x")

    def test_extra_exclusions_are_added(self) -> None:
        assert is_excluded_path("__pycache__/mod.pyc", ["__pycache__"])
        assert not is_excluded_path("__pycache__/mod.pyc")

    def test_file_name_alone_is_not_a_directory_match(self) -> None:
        assert not is_excluded_path("node_modules")
        assert not is_excluded_path("src/node_modules.txt")


class TestPartitionFiles:
    def test_splits_by_policy(self) -> None:
        files = [
            _record("src/index.js"),
            _record("node_modules/a/index.js"),
            _record("big.bin", b"x" * 11),
            _record("Dockerfile", "FROM scratch\n"),
            _record("docker-compose.yaml", "services: {}\n"),
        ]
        eligible, skipped = partition_files(files, max_size=10)
        assert [r.path for r in eligible] == ["src/index.js"]
        reasons = {s.path: s.reason for s in skipped}
        assert reasons == {
            "node_modules/a/index.js": SkipReason.EXCLUDED,
            "big.bin": SkipReason.TOO_LARGE,
            "Dockerfile": SkipReason.RESERVED_PATH,
            "docker-compose.yaml": SkipReason.RESERVED_PATH,
        }

    def test_file_at_size_ceiling_is_kept(self) -> None:
        eligible, skipped = partition_files([_record("a.bin", b"x" * 10)], max_size=10)
        assert [r.path for r in eligible] == ["a.bin"]
        assert skipped == []

    def test_reserved_path_wins_over_size_ceiling(self) -> None:
        _, skipped = partition_files([_record("Dockerfile", b"x" * 64)], max_size=10)
        assert [(s.path, s.reason) for s in skipped] == [("Dockerfile", SkipReason.RESERVED_PATH)]

    @pytest.mark.parametrize("path", ["docker-compose.yml", "compose.yaml", "compose.yml"])
    def test_other_compose_names_are_reserved(self, path: str) -> None:
        eligible, skipped = partition_files([_record(path, "services: {}\n")])
        assert eligible == []
        assert skipped[0].reason is SkipReason.RESERVED_PATH

    def test_nested_reserved_name_is_an_ordinary_file(self) -> None:
        eligible, _ = partition_files([_record("docker/Dockerfile")])
        assert [r.path for r in eligible] == ["docker/Dockerfile"]


class TestProjectProgress:
    def test_phase_spans(self) -> None:
        assert project_progress(SyncPhase.INITIALIZING) == 0
        assert project_progress(SyncPhase.UPLOADING_ARTIFACTS) == 10
        assert project_progress(SyncPhase.UPLOADING_FILES) == 30
        assert project_progress(SyncPhase.UPLOADING_FILES, 0.5) == 55
        assert project_progress(SyncPhase.UPLOADING_FILES, 1.0) == 80
        assert project_progress(SyncPhase.BUILDING_TREE) == 80
        assert project_progress(SyncPhase.COMMITTING) == 90
        assert project_progress(SyncPhase.UPDATING_REF) == 95
        assert project_progress(SyncPhase.FINISHED) == 100

    def test_only_finished_reaches_100(self) -> None:
        for phase in SyncPhase:
            if phase in (SyncPhase.FINISHED, SyncPhase.ERROR):
                continue
            assert project_progress(phase, 1.0) < 100

    def test_fraction_is_clamped(self) -> None:
        assert project_progress(SyncPhase.UPLOADING_FILES, 7.0) == 80
        assert project_progress(SyncPhase.UPLOADING_FILES, -1.0) == 30

    def test_error_has_no_position(self) -> None:
        with pytest.raises(ValueError):
            project_progress(SyncPhase.ERROR)


class TestProgressReporter:
    def test_percent_never_decreases(self) -> None:
        seen: list[SyncProgress] = []
        reporter = ProgressReporter(seen.append)
        reporter.report(SyncPhase.UPLOADING_FILES, "half", 0.5)
        reporter.report(SyncPhase.UPLOADING_ARTIFACTS, "late artifact message")
        assert [p.percent for p in seen] == [55, 55]

    def test_fail_keeps_percent_and_skips_callback(self) -> None:
        seen: list[SyncProgress] = []
        reporter = ProgressReporter(seen.append)
        reporter.report(SyncPhase.BUILDING_TREE, "Creating file tree...")
        reporter.fail("boom")
        assert len(seen) == 1
        assert reporter.current.phase is SyncPhase.ERROR
        assert reporter.current.percent == 80
        assert reporter.current.message == "boom"


class TestResolveTarget:
    @pytest.mark.asyncio
    async def test_missing_branch_is_empty_history(self) -> None:
        store = _empty_store()
        target = await resolve_target(store, OWNER, REPO)
        assert target.base_commit is None
        assert target.base_tree is None
        assert "get_commit_tree" not in store.calls

    @pytest.mark.asyncio
    async def test_existing_branch_reads_tip_and_tree(self) -> None:
        store = _empty_store()
        tip = store.seed(OWNER, REPO, {"a.txt": b"A"})
        target = await resolve_target(store, OWNER, REPO)
        assert target.base_commit == tip
        assert target.base_tree == store.commits[tip].tree


class TestSyncRunSuccess:
    @pytest.mark.asyncio
    async def test_empty_history_creates_root_commit(self) -> None:
        store = _empty_store()
        artifacts = _artifacts()
        result = await run_sync(
            store, _target(), [_record("index.js", "console.log(1)")], artifacts, "Initial"
        )

        head = store.head(OWNER, REPO)
        assert head.parent is None
        assert head.message == "Initial"
        assert result.commit_sha == store.refs[(OWNER, REPO, "main")]
        assert store.files_at(OWNER, REPO) == {
            "Dockerfile": artifacts.build_file.encode(),
            "docker-compose.yaml": artifacts.compose_file.encode(),
            "index.js": b"console.log(1)",
        }
        assert result.repo_url == f"https://github.com/{OWNER}/{REPO}"

    @pytest.mark.asyncio
    async def test_tree_is_additive_over_base(self) -> None:
        store = _empty_store()
        tip = store.seed(OWNER, REPO, {"a": b"X", "b": b"Y"})
        artifacts = _artifacts()

        await run_sync(store, _target(), [_record("b", b"Z"), _record("c", b"W")], artifacts, "m")

        files = store.files_at(OWNER, REPO)
        assert files["a"] == b"X"
        assert files["b"] == b"Z"
        assert files["c"] == b"W"
        assert set(files) == {"a", "b", "c", "Dockerfile", "docker-compose.yaml"}
        assert store.head(OWNER, REPO).parent == tip

    @pytest.mark.asyncio
    async def test_generated_artifacts_win_over_local_copies(self) -> None:
        store = _empty_store()
        artifacts = _artifacts()
        result = await run_sync(
            store, _target(), [_record("Dockerfile", "FROM stale\n")], artifacts, "m"
        )
        assert store.files_at(OWNER, REPO)["Dockerfile"] == artifacts.build_file.encode()
        assert [s.reason for s in result.skipped] == [SkipReason.RESERVED_PATH]

    @pytest.mark.asyncio
    async def test_executable_bit_is_kept(self) -> None:
        store = _empty_store()
        await run_sync(
            store, _target(), [_record("run.sh", "#!/bin/sh\n", executable=True)], _artifacts(), "m"
        )
        tree = store.trees[store.head(OWNER, REPO).tree]
        assert tree["run.sh"][0] == FileMode.EXECUTABLE
        assert tree["Dockerfile"][0] == FileMode.REGULAR

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_ends_at_100(self) -> None:
        store = _empty_store()
        seen: list[SyncProgress] = []
        files = [_record(f"src/f{i}.js", f"{i}") for i in range(5)]

        sync_run = SyncRun(store, _target(), files, _artifacts(), "m", on_progress=seen.append)
        await sync_run.run()

        percents = [p.percent for p in seen]
        assert percents == sorted(percents)
        assert all(p < 100 for p in percents[:-1])
        assert seen[-1] == SyncProgress(100, "Done!", SyncPhase.FINISHED)
        assert seen[0].message == "Getting repo info..."
        messages = [p.message for p in seen]
        for expected in (
            "Uploading Dockerfile...",
            "Uploading docker-compose.yaml...",
            "Creating file tree...",
            "Committing changes...",
            "Updating repository...",
        ):
            assert expected in messages

    @pytest.mark.asyncio
    async def test_no_files_still_publishes_artifacts(self) -> None:
        store = _empty_store()
        result = await run_sync(store, _target(), [], _artifacts(), "m")
        assert result.uploaded == ["Dockerfile", "docker-compose.yaml"]
        assert set(store.files_at(OWNER, REPO)) == {"Dockerfile", "docker-compose.yaml"}

    @pytest.mark.asyncio
    async def test_uploads_respect_concurrency_limit(self) -> None:
        store = FakeObjectStore(login=OWNER, auto_init=False, blob_delay=0.01)
        files = [_record(f"f{i}.txt", f"{i}") for i in range(12)]
        await run_sync(store, _target(), files, _artifacts(), "m", concurrency=3)
        assert 1 < store.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_excluded_and_oversized_files_are_never_uploaded(self) -> None:
        store = _empty_store()
        files = [
            _record("node_modules/x/index.js", "module"),
            _record("huge.bin", b"x" * 32),
            _record("ok.txt", "ok"),
        ]
        result = await run_sync(store, _target(), files, _artifacts(), "m", max_file_size=16)
        assert b"module" not in store.blobs.values()
        assert set(store.files_at(OWNER, REPO)) == {"Dockerfile", "docker-compose.yaml", "ok.txt"}
        assert {s.path for s in result.skipped} == {"node_modules/x/index.js", "huge.bin"}


class TestSyncRunFailures:
    @pytest.mark.asyncio
    async def test_one_failed_file_is_skipped_not_fatal(self) -> None:
        store = FakeObjectStore(login=OWNER, auto_init=False, fail_blob=lambda raw: raw == b"bad")
        files = [_record("bad.txt", b"bad")] + [_record(f"f{i}.txt", f"ok{i}") for i in range(9)]

        result = await run_sync(store, _target(), files, _artifacts(), "m")

        tree = store.trees[store.head(OWNER, REPO).tree]
        assert len(tree) == 2 + 9
        assert "bad.txt" not in tree
        assert [a.path for a in result.failed] == ["bad.txt"]
        assert result.failed[0].error is not None

    @pytest.mark.asyncio
    async def test_artifact_upload_failure_is_fatal(self) -> None:
        artifacts = _artifacts()
        store = FakeObjectStore(
            login=OWNER,
            auto_init=False,
            fail_blob=lambda raw: raw == artifacts.build_file.encode(),
        )
        with pytest.raises(SyncError) as exc_info:
            await run_sync(store, _target(), [_record("a.txt")], artifacts, "m")
        assert exc_info.value.phase == "uploading_artifacts"
        assert "create_tree" not in store.calls

    @pytest.mark.asyncio
    async def test_tree_failure_stops_before_commit(self) -> None:
        store = _empty_store()
        store.failures["create_tree"] = GitHubAPIError(422, "tree rejected")
        seen: list[SyncProgress] = []
        sync_run = SyncRun(
            store, _target(), [_record("a.txt")], _artifacts(), "m", on_progress=seen.append
        )

        with pytest.raises(SyncError) as exc_info:
            await sync_run.run()

        assert exc_info.value.phase == "building_tree"
        assert not isinstance(exc_info.value, RefUpdateError)
        assert "create_commit" not in store.calls
        assert "update_ref" not in store.calls
        assert sync_run.progress.phase is SyncPhase.ERROR
        assert all(p.phase is not SyncPhase.ERROR for p in seen)
        assert seen[-1].percent < 100

    @pytest.mark.asyncio
    async def test_commit_failure_leaves_branch_alone(self) -> None:
        store = _empty_store()
        tip = store.seed(OWNER, REPO, {"a": b"A"})
        store.failures["create_commit"] = GitHubAPIError(500, "server error")

        with pytest.raises(SyncError) as exc_info:
            await run_sync(store, _target(), [_record("b")], _artifacts(), "m")

        assert exc_info.value.phase == "committing"
        assert "update_ref" not in store.calls
        assert store.refs[(OWNER, REPO, "main")] == tip

    @pytest.mark.asyncio
    async def test_ref_failure_reports_orphaned_commit(self) -> None:
        store = _empty_store()
        tip = store.seed(OWNER, REPO, {"a": b"A"})
        store.failures["update_ref"] = GitHubAPIError(422, "Reference update failed")

        with pytest.raises(RefUpdateError) as exc_info:
            await run_sync(store, _target(), [_record("b")], _artifacts(), "m")

        error = exc_info.value
        assert error.phase == "updating_ref"
        assert error.orphaned_commit in store.commits
        assert store.commits[error.orphaned_commit].parent == tip
        assert store.refs[(OWNER, REPO, "main")] == tip

    @pytest.mark.asyncio
    async def test_branch_lookup_failure_is_an_initializing_error(self) -> None:
        store = _empty_store()
        store.failures["get_branch_tip"] = GitHubAPIError(403, "Forbidden")
        with pytest.raises(SyncError) as exc_info:
            await run_sync(store, _target(), [], _artifacts(), "m")
        assert exc_info.value.phase == "initializing"
        assert "create_blob" not in store.calls

    @pytest.mark.asyncio
    async def test_empty_message_is_rejected_before_any_call(self) -> None:
        store = _empty_store()
        with pytest.raises(ValueError, match="Commit message"):
            await run_sync(store, _target(), [_record("a")], _artifacts(), "   ")
        assert store.calls == []

    def test_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="concurrency"):
            SyncRun(_empty_store(), _target(), [], _artifacts(), "m", concurrency=0)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_uploads(self) -> None:
        store = _empty_store()
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(SyncCancelledError) as exc_info:
            await run_sync(store, _target(), [_record("a")], _artifacts(), "m", cancel_event=cancel)

        assert exc_info.value.phase == "uploading_artifacts"
        assert "create_blob" not in store.calls

    @pytest.mark.asyncio
    async def test_cancel_during_file_upload_stops_before_tree(self) -> None:
        store = _empty_store()
        cancel = asyncio.Event()

        def on_progress(progress: SyncProgress) -> None:
            if progress.phase is SyncPhase.UPLOADING_FILES:
                cancel.set()

        with pytest.raises(SyncCancelledError) as exc_info:
            await run_sync(
                store,
                _target(),
                [_record("a")],
                _artifacts(),
                "m",
                on_progress=on_progress,
                cancel_event=cancel,
            )
        assert exc_info.value.phase == "building_tree"
        assert "create_tree" not in store.calls

    @pytest.mark.asyncio
    async def test_cancel_after_commit_started_is_ignored(self) -> None:
        store = _empty_store()
        cancel = asyncio.Event()

        def on_progress(progress: SyncProgress) -> None:
            if progress.phase is SyncPhase.COMMITTING:
                cancel.set()

        result = await run_sync(
            store,
            _target(),
            [_record("a")],
            _artifacts(),
            "m",
            on_progress=on_progress,
            cancel_event=cancel,
        )
        assert store.refs[(OWNER, REPO, "main")] == result.commit_sha


class TestUnresolvedTarget:
    @pytest.mark.asyncio
    async def test_resolve_false_uses_given_base(self) -> None:
        store = _empty_store()
        tip = store.seed(OWNER, REPO, {"keep": b"K"})
        target = RepositoryTarget(
            owner=OWNER, name=REPO, base_commit=tip, base_tree=store.commits[tip].tree
        )
        await run_sync(store, target, [_record("new", b"N")], _artifacts(), "m", resolve=False)
        assert "get_branch_tip" not in store.calls
        assert store.files_at(OWNER, REPO)["keep"] == b"K"


class TestBranchCreation:
    @pytest.mark.asyncio
    async def test_empty_history_creates_the_branch(self) -> None:
        store = _empty_store()
        result = await run_sync(store, _target(), [_record("a.txt")], _artifacts(), "m")
        assert "create_ref" in store.calls
        assert "update_ref" not in store.calls
        assert store.refs[(OWNER, REPO, "main")] == result.commit_sha
        assert store.head(OWNER, REPO).parent is None

    @pytest.mark.asyncio
    async def test_existing_branch_is_moved(self) -> None:
        store = _empty_store()
        tip = store.seed(OWNER, REPO, {"a": b"A"})
        result = await run_sync(store, _target(), [_record("b")], _artifacts(), "m")
        assert "create_ref" not in store.calls
        assert "update_ref" in store.calls
        assert store.head(OWNER, REPO).parent == tip
        assert store.refs[(OWNER, REPO, "main")] == result.commit_sha

    @pytest.mark.asyncio
    async def test_branch_creation_failure_reports_orphaned_commit(self) -> None:
        store = _empty_store()
        store.failures["create_ref"] = GitHubAPIError(422, "Reference already exists")
        with pytest.raises(RefUpdateError) as exc_info:
            await run_sync(store, _target(), [_record("a")], _artifacts(), "m")
        assert exc_info.value.phase == "updating_ref"
        assert exc_info.value.orphaned_commit in store.commits
        assert (OWNER, REPO, "main") not in store.refs
