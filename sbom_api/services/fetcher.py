"""Repository fetch over the GitHub REST API.

Only files an extractor can read are downloaded. ``files`` maps
repository-relative path to text; ``private`` comes from the repository metadata
and decides whether later regenerations need a fresh token.
"""

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import httpx

from sbom_api.config import Settings
from sbom_api.errors import FetchError
from sbom_api.utils import split_github_url

logger = logging.getLogger(__name__)

RepoTree = Dict[str, str]


@dataclass(frozen=True)
class FetchedRepository:
    files: RepoTree
    branch: str
    private: bool = False


SKIPPED_DIRS = {"node_modules", "vendor", ".git", "dist", "build", "target", "__pycache__"}


class RepositoryFetcher(Protocol):
    async def fetch(self, repo_url: str, credential: Optional[str] = None) -> FetchedRepository:
        ...


class GitHubFetcher:
    def __init__(
        self,
        settings: Settings,
        wanted: Callable[[str], bool],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._wanted = wanted
        self._transport = transport

    def _headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": self._settings.user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    async def fetch(self, repo_url: str, credential: Optional[str] = None) -> FetchedRepository:
        coords = split_github_url(repo_url)
        if coords is None:
            raise FetchError(f"unsupported repository host: {repo_url}")
        owner, repo = coords
        base = self._settings.github_api_url.rstrip("/")

        async with self._client(credential) as client:
            meta = await self._get_json(client, f"{base}/repos/{owner}/{repo}", repo_url, credential)
            branch = meta.get("default_branch") or "main"
            tree = await self._get_json(
                client, f"{base}/repos/{owner}/{repo}/git/trees/{branch}?recursive=1", repo_url, credential
            )
            if tree.get("truncated"):
                logger.warning("git tree for %s is truncated; some manifests may be missing", repo_url)

            paths = [
                entry["path"]
                for entry in tree.get("tree", [])
                if entry.get("type") == "blob"
                and self._select(entry["path"], entry.get("size"))
            ]
            limit = self._settings.max_manifest_files
            if len(paths) > limit:
                logger.warning("%s has %d manifests, reading the first %d", repo_url, len(paths), limit)
                paths = sorted(paths)[:limit]

            sem = asyncio.Semaphore(self._settings.fetch_concurrency)

            async def _read(path: str):
                async with sem:
                    r = await client.get(
                        f"{base}/repos/{owner}/{repo}/contents/{path}",
                        params={"ref": branch},
                        headers={"Accept": "application/vnd.github.raw"},
                    )
                if r.status_code != 200:
                    raise FetchError(f"could not read {path} from {repo_url} (HTTP {r.status_code})")
                return path, r.text

            try:
                files = await asyncio.gather(*[_read(p) for p in paths])
            except httpx.RequestError as exc:
                raise FetchError(f"repository unreachable: {repo_url} ({exc.__class__.__name__})") from exc

        logger.info("fetched %d manifest(s) from %s@%s", len(files), repo_url, branch)
        return FetchedRepository(files=dict(files), branch=branch, private=bool(meta.get("private")))

    async def repository_metadata(self, repo_url: str) -> dict:
        """Public ``/repos/{owner}/{repo}`` record, read without any credential."""
        coords = split_github_url(repo_url)
        if coords is None:
            raise FetchError(f"unsupported repository host: {repo_url}")
        owner, repo = coords
        base = self._settings.github_api_url.rstrip("/")
        async with self._client(None) as client:
            return await self._get_json(client, f"{base}/repos/{owner}/{repo}", repo_url, None)

    def _client(self, credential: Optional[str]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.http_timeout,
            headers=self._headers(credential),
            transport=self._transport,
        )

    def _select(self, path: str, size: Optional[int]) -> bool:
        parts = path.split("/")
        if any(p in SKIPPED_DIRS for p in parts[:-1]):
            return False
        if size is not None and size > self._settings.max_manifest_bytes:
            logger.warning("skipping %s: %d bytes exceeds limit", path, size)
            return False
        return self._wanted(posixpath.basename(path))

    async def _get_json(
        self, client: httpx.AsyncClient, url: str, repo_url: str, credential: Optional[str]
    ) -> dict:
        try:
            r = await client.get(url)
        except httpx.RequestError as exc:
            raise FetchError(f"repository unreachable: {repo_url} ({exc.__class__.__name__})") from exc

        if r.status_code in (401, 403) and credential:
            raise FetchError(f"credential rejected for {repo_url} (HTTP {r.status_code})")
        if r.status_code in (401, 403, 404):
            hint = "" if credential else "; private repositories need a github_token"
            raise FetchError(f"repository not accessible: {repo_url} (HTTP {r.status_code}){hint}")
        if r.status_code >= 400:
            raise FetchError(f"GitHub API error {r.status_code} for {repo_url}")
        try:
            return r.json()
        except ValueError as exc:
            raise FetchError(f"GitHub API returned invalid JSON for {repo_url}") from exc
