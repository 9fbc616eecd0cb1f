import re
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse

_SCP_LIKE = re.compile(r"^git@(?P<host>[^:]+):(?P<path>.+)$")


def project_severity(vulns: Iterable) -> str:
    """Return severity based on the highest CVSS score."""
    scores = []
    for v in vulns:
        score = v.get("score", 0) if isinstance(v, dict) else getattr(v, "score", 0)
        if isinstance(score, str):
            try:
                score = float(score)
            except ValueError:
                score = 0
        scores.append(score or 0)

    if not scores:
        return "None"

    max_score = max(scores)

    if max_score >= 7.0:
        return "High"
    elif max_score >= 5.0:
        return "Medium"
    elif max_score > 0:
        return "Low"
    return "None"


def canonical_repo_url(raw: str) -> str:
    """Normalize a repository reference to ``https://host/owner/repo``."""
    url = (raw or "").strip()
    m = _SCP_LIKE.match(url)
    if m:
        url = f"https://{m.group('host')}/{m.group('path')}"
    if "://" not in url:
        url = "https://" + url

    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    path = parsed.path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    if not host or not path:
        raise ValueError(f"not a repository URL: {raw!r}")
    return f"https://{host}/{path}"


def split_github_url(repo_url: str) -> Optional[Tuple[str, str]]:
    """Return (owner, repo) for a canonical github.com URL, else None."""
    parsed = urlparse(repo_url)
    if (parsed.hostname or "").lower() not in ("github.com", "www.github.com"):
        return None
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) < 2:
        return None
    return parts[0], parts[1]
