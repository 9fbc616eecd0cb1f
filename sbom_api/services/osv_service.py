import logging
import re
import time
from typing import Dict, List, Optional, Tuple

import httpx

from sbom_api.config import Settings
from sbom_api.models import DependencyKey

logger = logging.getLogger(__name__)

OSV_ECOSYSTEMS = {"go": "Go", "npm": "npm", "python": "PyPI", "maven": "Maven"}

_NUMERIC = re.compile(r"^\d+(\.\d+)?$")
_SEVERITY_SCORES = {"CRITICAL": 9.0, "HIGH": 7.0, "MODERATE": 5.0, "MEDIUM": 5.0, "LOW": 2.0}


class FeedLookupError(Exception):
    pass


def normalize_vuln(vuln: dict) -> dict:
    """Reduce an OSV record to id, severity label, float score and summary."""
    label = str((vuln.get("database_specific") or {}).get("severity") or "").upper()

    score = vuln.get("score")
    if score is None:
        for entry in vuln.get("severity") or []:
            raw = str(entry.get("score", ""))
            if _NUMERIC.match(raw):
                score = raw
                break
    try:
        score = float(score) if score is not None else None
    except (ValueError, TypeError):
        score = None
    if score is None:
        score = _SEVERITY_SCORES.get(label, 0.0)

    return {
        "id": vuln.get("id", ""),
        "severity": label or "UNKNOWN",
        "score": score,
        "summary": vuln.get("summary") or (vuln.get("details") or "")[:200],
        "aliases": list(vuln.get("aliases") or []),
    }


class OSVClient:
    """Vulnerability feed client for api.osv.dev with a per-instance TTL cache."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._transport = transport
        self._cache: Dict[DependencyKey, Tuple[float, List[dict]]] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    async def fetch_vulnerabilities(self, key: DependencyKey) -> List[dict]:
        """Fetch vulnerability data for a single package coordinate with caching."""
        now = time.time()
        cached = self._cache.get(key)
        if cached and now - cached[0] < self._settings.osv_cache_ttl:
            return cached[1]

        package_type, name, version = key
        ecosystem = OSV_ECOSYSTEMS.get(package_type)
        if ecosystem is None:
            raise FeedLookupError(f"no feed ecosystem for package type {package_type!r}")

        payload: dict = {"package": {"name": name, "ecosystem": ecosystem}}
        if version:
            payload["version"] = version

        try:
            async with httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                transport=self._transport,
                headers={"User-Agent": self._settings.user_agent},
            ) as client:
                response = await client.post(f"{self._settings.osv_api_url.rstrip('/')}/v1/query", json=payload)
        except httpx.RequestError as exc:
            raise FeedLookupError(f"{exc.__class__.__name__}: {exc}") from exc

        if response.status_code != 200:
            raise FeedLookupError(f"feed returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise FeedLookupError("feed returned invalid JSON") from exc

        vulns = [normalize_vuln(v) for v in data.get("vulns") or []]
        self._cache[key] = (now, vulns)
        return vulns
