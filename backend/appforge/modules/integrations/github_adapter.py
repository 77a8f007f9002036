"""GitHub adapter - pushes generated files through the Git Data API."""

import asyncio
import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import httpx

from appforge.core.config import settings
from appforge.core.exceptions import GitPushError, InvalidRepoUrlError
from appforge.core.logging_config import logger


_SSH_RE = re.compile(r"github\.com[:/](?P<owner>[^/]+)/(?P<repo>[^/]+)$")


def parse_repo_url(repo_url: str) -> Tuple[str, str]:
    """
    Extract (owner, repo) from any of:
      https://github.com/owner/repo
      https://github.com/owner/repo.git
      git@github.com:owner/repo.git
    """
    sanitized = re.sub(r"\.git$", "", repo_url.strip().rstrip("/"))

    match = _SSH_RE.search(sanitized)
    if match:
        return match.group("owner"), match.group("repo")

    parsed = urlparse(sanitized)
    parts = [p for p in parsed.path.split("/") if p]
    if parsed.scheme and len(parts) >= 2:
        return parts[0], parts[1]

    raise InvalidRepoUrlError(repo_url)


class GitHubAdapter:
    """Minimal GitHub REST client for committing a set of files in one commit."""

    def __init__(
        self,
        access_token: str,
        api_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.api_url = (api_url or settings.GITHUB_API_URL).rstrip("/")
        self._client = client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/vnd.github.v3+json",
        }

    async def _request(self, client: httpx.AsyncClient, method: str, path: str,
                       json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await client.request(method, f"{self.api_url}{path}", json=json, headers=self._headers())
        response.raise_for_status()
        return response.json()

    async def push_files(
        self,
        owner: str,
        repo: str,
        branch: str,
        files: Dict[str, str],
        commit_message: str,
    ) -> str:
        """
        Commit `files` on top of the repository's default branch and move
        `branch` to the new commit (force). Returns the commit sha.
        """
        if self._client is not None:
            return await self._push(self._client, owner, repo, branch, files, commit_message)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await self._push(client, owner, repo, branch, files, commit_message)

    async def _push(self, client, owner, repo, branch, files, commit_message) -> str:
        base = f"/repos/{owner}/{repo}"

        # 1. Head of the default branch
        repo_data = await self._request(client, "GET", base)
        default_branch = repo_data["default_branch"]
        latest = await self._request(client, "GET", f"{base}/commits/{default_branch}")
        base_tree = latest["commit"]["tree"]["sha"]

        # 2. One blob per file
        async def create_blob(path: str, content: str) -> Dict[str, str]:
            blob = await self._request(client, "POST", f"{base}/git/blobs",
                                       json={"content": content, "encoding": "utf-8"})
            return {"path": path, "mode": "100644", "type": "blob", "sha": blob["sha"]}

        tree_entries = await asyncio.gather(
            *(create_blob(path, content) for path, content in files.items())
        )

        # 3. Tree and commit
        tree = await self._request(client, "POST", f"{base}/git/trees",
                                   json={"base_tree": base_tree, "tree": list(tree_entries)})
        commit = await self._request(client, "POST", f"{base}/git/commits", json={
            "message": commit_message,
            "tree": tree["sha"],
            "parents": [latest["sha"]],
        })

        # 4. Move the branch, creating it if it does not exist yet
        try:
            await self._request(client, "PATCH", f"{base}/git/refs/heads/{branch}",
                                json={"sha": commit["sha"], "force": True})
        except httpx.HTTPStatusError as e:
            if e.response.status_code not in (404, 422):
                raise
            await self._request(client, "POST", f"{base}/git/refs",
                                json={"ref": f"refs/heads/{branch}", "sha": commit["sha"]})

        return commit["sha"]


async def push_files(
    repo_url: str,
    files: Dict[str, str],
    branch: Optional[str] = None,
    commit_message: Optional[str] = None,
    access_token: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Push files to the repository behind repo_url.

    Raises GitPushError (or InvalidRepoUrlError) on any failure.
    """
    owner, repo = parse_repo_url(repo_url)
    token = access_token or settings.GITHUB_ACCESS_TOKEN
    if not token:
        raise GitPushError("No GitHub access token configured", repo_url=repo_url)

    adapter = GitHubAdapter(token, client=client)
    try:
        sha = await adapter.push_files(
            owner,
            repo,
            branch or settings.GITHUB_DEFAULT_BRANCH,
            files,
            commit_message or settings.GITHUB_COMMIT_MESSAGE,
        )
    except (httpx.HTTPError, KeyError) as e:
        raise GitPushError(f"Push to {owner}/{repo} failed: {e}", repo_url=repo_url) from e

    logger.info(f"Pushed {len(files)} files to {owner}/{repo}@{branch or settings.GITHUB_DEFAULT_BRANCH} ({sha[:7]})")
    return sha
