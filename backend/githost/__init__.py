"""Remote Git hosting: object store protocol and the GitHub implementation."""

from backend.githost.base import (
    BlobEncoding,
    CreatedRepository,
    FileMode,
    GitHost,
    GitObjectStore,
    RepositoryHost,
    TreeEntry,
)
from backend.githost.github import GitHubClient

__all__ = [
    "BlobEncoding",
    "CreatedRepository",
    "FileMode",
    "GitHubClient",
    "GitHost",
    "GitObjectStore",
    "RepositoryHost",
    "TreeEntry",
]
