import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Protocol, Sequence

from sbom_api.errors import FeedUnavailable
from sbom_api.models import Dependency, DependencyKey, RunWarning, correlation_warning
from sbom_api.services.osv_service import FeedLookupError

logger = logging.getLogger(__name__)

# One exact release: 4.17.21, v0.9.1, 1.0-SNAPSHOT. Ranges, tags and unresolved
# placeholders are not.
_CONCRETE_VERSION = re.compile(r"^v?\d[0-9A-Za-z.+_-]*$")


def is_concrete_version(version: str) -> bool:
    return bool(_CONCRETE_VERSION.match(version or ""))


class VulnerabilityFeed(Protocol):
    async def fetch_vulnerabilities(self, key: DependencyKey) -> List[dict]:
        ...


@dataclass
class Correlation:
    # dependency id -> normalized advisories
    matches: Dict[int, List[dict]] = field(default_factory=dict)
    warnings: List[RunWarning] = field(default_factory=list)
    lookups: int = 0
    failures: int = 0
    skipped: int = 0


class Correlator:
    def __init__(self, feed: VulnerabilityFeed, concurrency: int = 8, failure_threshold: float = 0.5):
        self._feed = feed
        self._concurrency = max(1, concurrency)
        self._failure_threshold = failure_threshold

    async def correlate(self, dependencies: Sequence[Dependency]) -> Correlation:
        """Query the feed once per distinct coordinate with bounded parallelism.

        Coordinates without one exact version are not looked up: they get no
        matches and a warning, and do not count toward the failure ratio.
        """
        unique: Dict[DependencyKey, Dependency] = {}
        for dep in dependencies:
            unique.setdefault(dep.key, dep)

        result = Correlation()
        queryable: List[Dependency] = []
        for dep in unique.values():
            if is_concrete_version(dep.version):
                queryable.append(dep)
                continue
            result.skipped += 1
            result.matches[dep.id] = []
            result.warnings.append(
                correlation_warning(_coordinate(dep), f"version {dep.version!r} is not a single release; not looked up")
            )

        sem = asyncio.Semaphore(self._concurrency)

        async def lookup(dep: Dependency):
            async with sem:
                try:
                    return dep, await self._feed.fetch_vulnerabilities(dep.key), None
                except FeedLookupError as exc:
                    return dep, [], str(exc)

        results = await asyncio.gather(*[lookup(d) for d in queryable])

        result.lookups = len(results)
        for dep, vulns, error in results:
            if error is not None:
                result.failures += 1
                coordinate = _coordinate(dep)
                logger.warning("vulnerability lookup failed for %s: %s", coordinate, error)
                result.warnings.append(correlation_warning(coordinate, error))
            result.matches[dep.id] = vulns

        if result.lookups and result.failures / result.lookups > self._failure_threshold:
            raise FeedUnavailable(
                f"vulnerability feed unavailable: {result.failures} of {result.lookups} lookups failed",
                warnings=result.warnings,
            )
        return result


def _coordinate(dep: Dependency) -> str:
    return f"{dep.package_type}:{dep.name}@{dep.version}"
