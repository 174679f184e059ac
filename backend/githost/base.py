"""Base protocols and data classes for the remote Git object store."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence


class FileMode(StrEnum):
    """Git tree entry modes for blobs."""

    REGULAR = "100644"
    EXECUTABLE = "100755"


class BlobEncoding(StrEnum):
    """Encodings accepted by the blob endpoint."""

    UTF8 = "utf-8"
    BASE64 = "base64"


@dataclass(frozen=True)
class TreeEntry:
    """One path in a new tree, pointing at an uploaded blob."""

    path: str
    sha: str
    mode: FileMode = FileMode.REGULAR


@dataclass(frozen=True)
class CreatedRepository:
    """Repository returned by the host after creation."""

    owner: str
    name: str
    html_url: str
    default_branch: str = "main"


@runtime_checkable
class GitObjectStore(Protocol):
    """Low-level Git data operations against one remote host."""

    async def get_branch_tip(self, owner: str, repo: str, branch: str) -> str | None:
        """Return the commit sha the branch points at, or None if it has no history."""
        ...

    async def get_commit_tree(self, owner: str, repo: str, commit_sha: str) -> str:
        """Return the tree sha of a commit."""
        ...

    async def create_blob(
        self, owner: str, repo: str, content: str, encoding: BlobEncoding
    ) -> str:
        """Store one content object and return its sha."""
        ...

    async def create_tree(
        self,
        owner: str,
        repo: str,
        entries: Sequence[TreeEntry],
        base_tree: str | None = None,
    ) -> str:
        """Create a tree that overlays ``entries`` on ``base_tree``."""
        ...

    async def create_commit(
        self,
        owner: str,
        repo: str,
        tree_sha: str,
        message: str,
        parent: str | None = None,
    ) -> str:
        """Create a commit for ``tree_sha`` with zero or one parent."""
        ...

    async def update_ref(
        self,
        owner: str,
        repo: str,
        branch: str,
        commit_sha: str,
        force: bool = True,
    ) -> None:
        """Move an existing ``branch`` to ``commit_sha``."""
        ...

    async def create_ref(self, owner: str, repo: str, branch: str, commit_sha: str) -> None:
        """Create ``branch`` pointing at ``commit_sha``."""
        ...


@runtime_checkable
class RepositoryHost(Protocol):
    """Account-level operations: identity and repository creation."""

    async def get_authenticated_user(self) -> str:
        """Return the login of the token owner."""
        ...

    async def create_repository(
        self, name: str, description: str, private: bool
    ) -> CreatedRepository:
        """Create a repository with an initialized default branch."""
        ...


@runtime_checkable
class GitHost(RepositoryHost, GitObjectStore, Protocol):
    """A host that can both create repositories and write Git objects."""
