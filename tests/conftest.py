import asyncio
import os
import sys
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sbom_api.config import Settings  # noqa: E402
from sbom_api.errors import FetchError  # noqa: E402
from sbom_api.main import create_app  # noqa: E402
from sbom_api.services.fetcher import FetchedRepository  # noqa: E402
from sbom_api.services.osv_service import FeedLookupError  # noqa: E402


class FakeFetcher:
    """Serves canned repositories keyed by canonical URL. ``gate`` holds fetches until set."""

    def __init__(self, repos: Optional[Dict[str, FetchedRepository]] = None):
        self.repos = dict(repos or {})
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    def add(self, repo_url: str, files: Dict[str, str], private: bool = False) -> None:
        self.repos[repo_url] = FetchedRepository(files=files, branch="main", private=private)

    async def fetch(self, repo_url: str, credential: Optional[str] = None) -> FetchedRepository:
        self.calls.append((repo_url, credential))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        repo = self.repos.get(repo_url)
        if repo is None:
            raise FetchError(f"repository not accessible: {repo_url} (HTTP 404)")
        if repo.private and not credential:
            raise FetchError(f"repository not accessible: {repo_url} (HTTP 404)")
        return repo


class FakeFeed:
    def __init__(self, advisories: Optional[Dict[tuple, list]] = None, failing: Optional[set] = None):
        self.advisories = dict(advisories or {})
        self.failing = set(failing or ())
        self.calls: List[tuple] = []

    async def fetch_vulnerabilities(self, key):
        self.calls.append(key)
        await asyncio.sleep(0)
        if key in self.failing:
            raise FeedLookupError("feed returned HTTP 500")
        return list(self.advisories.get(key, []))


@pytest.fixture
def settings():
    return Settings(run_timeout_seconds=30, feed_concurrency=4, cors_origins=["*"])


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def app(settings, fetcher, feed):
    return create_app(settings=settings, fetcher=fetcher, feed=feed)


@pytest.fixture
def orchestrator(app):
    return app.state.orchestrator


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
