"""GitHub implementation of the Git object store using the REST Git data API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from backend.exceptions import GitHubAPIError
from backend.githost.base import BlobEncoding, CreatedRepository, TreeEntry

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"

# 404: branch missing. 409: "Git Repository is empty".
_EMPTY_HISTORY_STATUSES = frozenset({404, 409})


def _github_headers(token: str) -> dict[str, str]:
    return {
        "Accept": "application/vnd.github+json",
        "Authorization": f"Bearer {token}",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "User-Agent": "autodeploy/0.1",
    }


def _error_message(resp: httpx.Response, fallback: str) -> str:
    """Extract GitHub's ``message`` field from an error response."""
    try:
        data = resp.json()
    except ValueError:
        return fallback
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, str) and message:
            return message
    return fallback


def _sha_field(data: dict[str, Any], kind: str) -> str:
    sha = data.get("sha")
    if not isinstance(sha, str) or not sha:
        raise GitHubAPIError(200, f"{kind} response missing sha")
    return sha


class GitHubClient:
    """Async GitHub REST client covering repository creation and Git data objects."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.api_base,
            headers=_github_headers(token),
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        fallback: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        resp = await self.client.request(method, url, json=json)
        if resp.status_code >= 400:
            message = _error_message(resp, fallback)
            logger.debug("GitHub %s %s failed: %d %s", method, url, resp.status_code, message)
            raise GitHubAPIError(resp.status_code, message)
        data = resp.json()
        if not isinstance(data, dict):
            raise GitHubAPIError(resp.status_code, f"{fallback}: unexpected response payload")
        return data

    # ── Account ──────────────────────────────────────

    async def get_authenticated_user(self) -> str:
        """Validate the token and return the login of its owner."""
        data = await self._request("GET", "/user", fallback="Invalid GitHub token")
        login = data.get("login")
        if not isinstance(login, str) or not login:
            raise GitHubAPIError(200, "GitHub user response missing login")
        return login

    async def create_repository(
        self, name: str, description: str, private: bool
    ) -> CreatedRepository:
        """Create a repository under the authenticated user.

        ``auto_init`` gives the new repository a README commit so the default
        branch exists before the first sync.
        """
        data = await self._request(
            "POST",
            "/user/repos",
            fallback="Failed to create repository",
            json={
                "name": name,
                "description": description,
                "private": private,
                "auto_init": True,
            },
        )
        owner = data.get("owner") or {}
        return CreatedRepository(
            owner=str(owner.get("login", "")),
            name=str(data.get("name", name)),
            html_url=str(data.get("html_url", "")),
            default_branch=str(data.get("default_branch") or "main"),
        )

    # ── Git data ─────────────────────────────────────

    async def get_branch_tip(self, owner: str, repo: str, branch: str) -> str | None:
        """Return the commit sha of ``branch``, or None when there is no history."""
        resp = await self.client.get(f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        if resp.status_code in _EMPTY_HISTORY_STATUSES:
            logger.info(
                "Branch %s not found in %s/%s; treating as empty history", branch, owner, repo
            )
            return None
        if resp.status_code >= 400:
            raise GitHubAPIError(
                resp.status_code, _error_message(resp, "Failed to resolve branch")
            )
        data = resp.json()
        sha = data.get("object", {}).get("sha") if isinstance(data, dict) else None
        if not isinstance(sha, str) or not sha:
            raise GitHubAPIError(resp.status_code, "Branch reference response missing sha")
        return sha

    async def get_commit_tree(self, owner: str, repo: str, commit_sha: str) -> str:
        """Return the tree sha of ``commit_sha``."""
        data = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/commits/{commit_sha}",
            fallback="Failed to read commit",
        )
        tree_sha = data.get("tree", {}).get("sha")
        if not isinstance(tree_sha, str) or not tree_sha:
            raise GitHubAPIError(200, "Commit response missing tree sha")
        return tree_sha

    async def create_blob(
        self, owner: str, repo: str, content: str, encoding: BlobEncoding
    ) -> str:
        """Upload one blob and return its sha."""
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/blobs",
            fallback="Failed to create blob",
            json={"content": content, "encoding": str(encoding)},
        )
        return _sha_field(data, "Blob")

    async def create_tree(
        self,
        owner: str,
        repo: str,
        entries: Sequence[TreeEntry],
        base_tree: str | None = None,
    ) -> str:
        """Create a tree from ``entries`` layered on ``base_tree``."""
        payload: dict[str, Any] = {
            "tree": [
                {"path": e.path, "mode": str(e.mode), "type": "blob", "sha": e.sha}
                for e in entries
            ],
        }
        if base_tree is not None:
            payload["base_tree"] = base_tree
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/trees",
            fallback="Failed to create tree",
            json=payload,
        )
        return _sha_field(data, "Tree")

    async def create_commit(
        self,
        owner: str,
        repo: str,
        tree_sha: str,
        message: str,
        parent: str | None = None,
    ) -> str:
        """Create a commit object and return its sha."""
        payload: dict[str, Any] = {"message": message, "tree": tree_sha}
        payload["parents"] = [parent] if parent is not None else []
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            fallback="Failed to create commit",
            json=payload,
        )
        return _sha_field(data, "Commit")

    async def update_ref(
        self,
        owner: str,
        repo: str,
        branch: str,
        commit_sha: str,
        force: bool = True,
    ) -> None:
        """Point an existing ``branch`` at ``commit_sha``."""
        await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            fallback="Failed to update ref",
            json={"sha": commit_sha, "force": force},
        )

    async def create_ref(self, owner: str, repo: str, branch: str, commit_sha: str) -> None:
        """Create ``branch``; PATCH answers 422 for a ref that does not exist yet."""
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            fallback="Failed to create ref",
            json={"ref": f"refs/heads/{branch}", "sha": commit_sha},
        )
