"""Read a local project folder into a flat list of file records."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

from backend.services.sync_service import ALWAYS_EXCLUDED_DIRS, FileRecord

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)


def _normalize(path: str) -> str:
    return path.replace("\\", "/").lstrip("/")


def _picker_root(first_path: str) -> str:
    """Return ``"<folder>/"`` for a nested first path, else an empty string."""
    parts = _normalize(first_path).split("/")
    return parts[0] + "/" if len(parts) > 1 else ""


def _strip_root(path: str, root: str) -> str:
    path = _normalize(path)
    if root and path.startswith(root):
        return path[len(root) :]
    return path


def flatten_relative_paths(paths: Sequence[str]) -> list[str]:
    """Strip the picked folder's own name from directory-picker paths.

    Directory pickers report ``proj/src/index.js``; the repository root must
    be the folder's contents, so the first segment of the first path is
    removed from every path that starts with it. Paths that become empty are
    dropped.
    """
    if not paths:
        return []
    root = _picker_root(paths[0])
    return [flat for flat in (_strip_root(p, root) for p in paths) if flat]


def records_from_uploads(uploads: Sequence[tuple[str, bytes]]) -> list[FileRecord]:
    """Build in-memory records from ``(relative_path, content)`` pairs.

    Paths are flattened as in :func:`flatten_relative_paths`; pairs whose
    path flattens to nothing are dropped.
    """
    if not uploads:
        return []
    root = _picker_root(uploads[0][0])
    records: list[FileRecord] = []
    for raw_path, content in uploads:
        path = _strip_root(raw_path, root)
        if not path:
            continue
        if ".." in path.split("/"):
            logger.warning("Rejected upload path with parent segment: %s", raw_path)
            continue
        records.append(FileRecord(path=path, source=content, size_bytes=len(content)))
    return records


def scan_project_folder(root: Path, excluded_dirs: Iterable[str] = ()) -> list[FileRecord]:
    """Walk ``root`` and return one record per regular file.

    Excluded directories are pruned from the walk. Paths are relative to
    ``root`` with forward slashes, so ``root`` itself never appears in them.
    """
    if not root.is_dir():
        msg = f"Project folder does not exist or is not a directory: {root}"
        raise NotADirectoryError(msg)

    excluded = ALWAYS_EXCLUDED_DIRS.union(excluded_dirs)
    records: list[FileRecord] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in excluded)
        for filename in sorted(files):
            full = Path(dirpath) / filename
            try:
                info = full.stat()
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", full, exc)
                continue
            if not stat.S_ISREG(info.st_mode):
                continue
            records.append(
                FileRecord(
                    path=full.relative_to(root).as_posix(),
                    source=full,
                    size_bytes=info.st_size,
                    executable=bool(info.st_mode & stat.S_IXUSR),
                )
            )
    logger.info("Found %d file(s) in %s", len(records), root)
    return records


def read_text_head(record: FileRecord, limit: int) -> str:
    """Return up to ``limit`` characters of a record decoded as UTF-8."""
    raw = record.source if isinstance(record.source, bytes) else record.source.read_bytes()
    return raw.decode("utf-8", errors="replace")[:limit]
