"""In-memory system of record for projects, reports and the shared dependency catalog."""

import asyncio
import itertools
import logging
from collections import Counter, defaultdict
from typing import Dict, List, Optional

from sbom_api.models import Dependency, DependencyKey, Project, Report, utcnow

logger = logging.getLogger(__name__)


class ProjectStore:
    def __init__(self) -> None:
        self._projects: Dict[int, Project] = {}
        self._by_repo_url: Dict[str, int] = {}
        self._ids = itertools.count(1)

    def create(self, repo_url: str, name: str, description: str = "") -> Project:
        if repo_url in self._by_repo_url:
            raise ValueError(f"project already exists for {repo_url}")
        project = Project(id=next(self._ids), repo_url=repo_url, name=name, description=description)
        self._projects[project.id] = project
        self._by_repo_url[repo_url] = project.id
        return project

    def get(self, project_id: int) -> Optional[Project]:
        return self._projects.get(project_id)

    def get_by_repo_url(self, repo_url: str) -> Optional[Project]:
        project_id = self._by_repo_url.get(repo_url)
        return self._projects.get(project_id) if project_id is not None else None

    def list(self) -> List[Project]:
        return [self._projects[k] for k in sorted(self._projects)]

    def update(
        self, project_id: int, name: Optional[str] = None, description: Optional[str] = None
    ) -> Project:
        project = self._projects[project_id]
        changes = {}
        if name:
            changes["name"] = name
        if description:
            changes["description"] = description
        if changes:
            changes["updated_at"] = utcnow()
            project = project.model_copy(update=changes)
            self._projects[project_id] = project
        return project

    def mark_credential_required(self, project_id: int) -> Project:
        project = self._projects[project_id]
        if not project.credential_required:
            project = project.model_copy(update={"credential_required": True})
            self._projects[project_id] = project
        return project


class ReportStore:
    """Append-only report history. A report becomes visible only through ``publish``."""

    def __init__(self) -> None:
        self._reports: Dict[int, Report] = {}
        self._by_project: Dict[int, List[int]] = defaultdict(list)
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def publish(self, report: Report) -> Report:
        if report.id in self._reports:
            raise ValueError(f"report {report.id} already published")
        self._reports[report.id] = report
        self._by_project[report.project_id].append(report.id)
        return report

    def get(self, report_id: int) -> Optional[Report]:
        return self._reports.get(report_id)

    def list_for_project(self, project_id: int) -> List[Report]:
        reports = [self._reports[i] for i in self._by_project.get(project_id, [])]
        return sorted(reports, key=lambda r: (r.generated_at, r.id), reverse=True)

    def count_for_project(self, project_id: int) -> int:
        return len(self._by_project.get(project_id, []))

    def reference_counts(self) -> Counter:
        """How many reports reference each dependency id."""
        counts: Counter = Counter()
        for report in self._reports.values():
            counts.update(set(report.dependency_ids))
        return counts


class DependencyCatalog:
    """Dependencies deduplicated by (package_type, name, version) across all projects.

    Upserts are serialized per key, so runs touching unrelated packages never wait
    on each other.
    """

    def __init__(self) -> None:
        self._by_key: Dict[DependencyKey, Dependency] = {}
        self._by_id: Dict[int, Dependency] = {}
        self._locks: Dict[DependencyKey, asyncio.Lock] = {}
        self._ids = itertools.count(1)

    def _lock_for(self, key: DependencyKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def upsert(
        self, key: DependencyKey, description: Optional[str] = None, repo_url: Optional[str] = None
    ) -> Dependency:
        async with self._lock_for(key):
            current = self._by_key.get(key)
            if current is None:
                package_type, name, version = key
                dep = Dependency(
                    id=next(self._ids),
                    package_type=package_type,
                    name=name,
                    version=version,
                    description=description,
                    repo_url=repo_url,
                )
                self._store(dep)
                return dep

            updates = {}
            for field, value in (("description", description), ("repo_url", repo_url)):
                if value is None:
                    continue
                existing = getattr(current, field)
                if existing is None:
                    updates[field] = value
                elif existing != value:
                    logger.warning(
                        "metadata conflict for %s:%s@%s field=%s kept=%r ignored=%r",
                        *key, field, existing, value,
                    )
            if updates:
                current = current.model_copy(update=updates)
                self._store(current)
            return current

    def _store(self, dep: Dependency) -> None:
        self._by_key[dep.key] = dep
        self._by_id[dep.id] = dep

    def get(self, dependency_id: int) -> Optional[Dependency]:
        return self._by_id.get(dependency_id)

    def get_by_key(self, key: DependencyKey) -> Optional[Dependency]:
        return self._by_key.get(key)

    def all(self) -> List[Dependency]:
        return sorted(self._by_key.values(), key=lambda d: d.key)

    def __len__(self) -> int:
        return len(self._by_key)
