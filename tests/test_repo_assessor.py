from datetime import datetime, timedelta, timezone

import pytest

from sbom_api.errors import FetchError
from sbom_api.models import Dependency
from sbom_api.services.repo_assessor import (
    MAINTAINED,
    POSSIBLY_EOL,
    STALE,
    UNKNOWN,
    RepoAssessor,
    maintenance,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class StaticSource:
    def __init__(self, records):
        self.records = records
        self.calls = []

    async def repository_metadata(self, repo_url):
        self.calls.append(repo_url)
        record = self.records.get(repo_url)
        if record is None:
            raise FetchError(f"repository not accessible: {repo_url} (HTTP 404)")
        return record


def _go(i, module, repo_url):
    return Dependency(id=i, package_type="go", name=module, version="v1.0.0", repo_url=repo_url)


@pytest.mark.parametrize("days,expected", [
    (0, MAINTAINED),
    (183, MAINTAINED),
    (184, STALE),
    (365, STALE),
    (366, POSSIBLY_EOL),
])
def test_maintenance_thresholds(days, expected):
    assert maintenance(NOW, NOW - timedelta(days=days)) == (expected, days)


def test_maintenance_without_activity():
    assert maintenance(NOW, None) == (UNKNOWN, 0)


@pytest.mark.asyncio
async def test_assess_groups_dependencies_by_repository():
    source = StaticSource({
        "https://github.com/pkg/errors": {
            "pushed_at": "2020-01-14T19:00:00Z",
            "updated_at": "2020-02-01T00:00:00Z",
            "archived": True,
            "stargazers_count": 8000,
            "license": {"spdx_id": "BSD-2-Clause", "name": "BSD 2-Clause"},
        },
        "https://github.com/stretchr/testify": {
            "pushed_at": "2024-05-20T00:00:00Z",
            "license": {"spdx_id": "NOASSERTION", "name": "Custom"},
        },
    })
    deps = [
        _go(1, "github.com/pkg/errors", "https://github.com/pkg/errors"),
        _go(2, "github.com/pkg/errors/v2", "https://github.com/pkg/errors.git"),
        _go(3, "github.com/stretchr/testify", "https://github.com/stretchr/testify"),
        Dependency(id=4, package_type="npm", name="lodash", version="4.17.21"),
    ]
    repos = await RepoAssessor(source).assess(deps, now=NOW)

    assert sorted(source.calls) == ["https://github.com/pkg/errors", "https://github.com/stretchr/testify"]
    errors, testify = repos
    assert errors.dependency_ids == [1, 2]
    assert errors.status == POSSIBLY_EOL
    assert errors.archived is True
    assert errors.license == "BSD-2-Clause"
    assert errors.last_activity_at == datetime(2020, 2, 1, tzinfo=timezone.utc)
    assert testify.status == MAINTAINED
    assert testify.staleness_days == 12
    assert testify.license == "Custom"


@pytest.mark.asyncio
async def test_lookup_failures_are_recorded_not_raised():
    source = StaticSource({})
    deps = [
        _go(1, "github.com/gone/away", "https://github.com/gone/away"),
        _go(2, "gitlab.com/acme/lib", "https://gitlab.com/acme/lib"),
    ]
    repos = await RepoAssessor(source).assess(deps, now=NOW)

    assert source.calls == ["https://github.com/gone/away"]
    assert [(r.repo_url, r.status) for r in repos] == [
        ("https://github.com/gone/away", UNKNOWN),
        ("https://gitlab.com/acme/lib", UNKNOWN),
    ]
    assert "HTTP 404" in repos[0].error
    assert "only GitHub" in repos[1].error
