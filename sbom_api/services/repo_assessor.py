"""Maintenance status of the upstream repositories dependencies point at.

Only GitHub is queried, without any credential. A failed lookup is recorded on
the assessment and never fails the run.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from sbom_api.errors import FetchError
from sbom_api.models import Dependency, RepoAssessment, utcnow
from sbom_api.utils import canonical_repo_url, split_github_url

logger = logging.getLogger(__name__)

MAINTAINED = "Maintained"
STALE = "Stale (> 6 months)"
POSSIBLY_EOL = "Possibly EOL (> 12 months)"
UNKNOWN = "Unknown"


class RepositoryMetadataSource(Protocol):
    async def repository_metadata(self, repo_url: str) -> dict:
        ...


def maintenance(now: datetime, last_activity: Optional[datetime]) -> Tuple[str, int]:
    if last_activity is None:
        return UNKNOWN, 0
    days = int((now - last_activity).total_seconds() // 86400)
    if days <= 183:
        return MAINTAINED, days
    if days <= 365:
        return STALE, days
    return POSSIBLY_EOL, days


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _license(meta: dict) -> Optional[str]:
    lic = meta.get("license") or {}
    spdx = lic.get("spdx_id")
    if spdx and spdx != "NOASSERTION":
        return spdx
    return lic.get("name")


class RepoAssessor:
    def __init__(self, source: RepositoryMetadataSource, concurrency: int = 4):
        self._source = source
        self._concurrency = max(1, concurrency)

    async def assess(
        self, dependencies: Sequence[Dependency], now: Optional[datetime] = None
    ) -> List[RepoAssessment]:
        now = now or utcnow()
        by_repo: Dict[str, List[int]] = {}
        for dep in dependencies:
            if not dep.repo_url:
                continue
            try:
                url = canonical_repo_url(dep.repo_url)
            except ValueError:
                continue
            by_repo.setdefault(url, []).append(dep.id)

        sem = asyncio.Semaphore(self._concurrency)

        async def one(url: str) -> RepoAssessment:
            ids = sorted(by_repo[url])
            if split_github_url(url) is None:
                return RepoAssessment(repo_url=url, dependency_ids=ids, error="only GitHub repositories are assessed")
            async with sem:
                try:
                    meta = await self._source.repository_metadata(url)
                except FetchError as exc:
                    logger.info("repository assessment failed for %s: %s", url, exc)
                    return RepoAssessment(repo_url=url, dependency_ids=ids, error=str(exc))

            candidates = [t for t in (_parse_time(meta.get("pushed_at")), _parse_time(meta.get("updated_at"))) if t]
            last = max(candidates, default=None)
            status, days = maintenance(now, last)
            return RepoAssessment(
                repo_url=url,
                dependency_ids=ids,
                status=status,
                staleness_days=days,
                last_activity_at=last,
                archived=bool(meta.get("archived")),
                stars=int(meta.get("stargazers_count") or 0),
                license=_license(meta),
            )

        return list(await asyncio.gather(*[one(url) for url in sorted(by_repo)]))
