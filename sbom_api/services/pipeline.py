"""Analysis pipeline: fetch -> extract -> resolve -> correlate -> assemble.

One run per project at a time. Nothing a run produces becomes readable until the
assembled Report is published in the final step.
"""

import asyncio
import itertools
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from sbom_api.errors import FetchError, MissingCredential, PipelineError, RunCancelled, RunInProgress
from sbom_api.models import PipelineRun, Project, Report, RunState, RunWarning, utcnow
from sbom_api.services.assembler import assemble
from sbom_api.services.correlator import Correlator
from sbom_api.services.extractors import DEFAULT_EXTRACTORS, ManifestExtractor, extract_all
from sbom_api.services.fetcher import RepositoryFetcher
from sbom_api.services.repo_assessor import RepoAssessor
from sbom_api.services.resolver import persist, resolve
from sbom_api.storage import DependencyCatalog, ProjectStore, ReportStore
from sbom_api.utils import canonical_repo_url

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    def __init__(
        self,
        projects: ProjectStore,
        reports: ReportStore,
        catalog: DependencyCatalog,
        fetcher: RepositoryFetcher,
        correlator: Correlator,
        extractors: Sequence[ManifestExtractor] = DEFAULT_EXTRACTORS,
        run_timeout: float = 300.0,
        assessor: Optional[RepoAssessor] = None,
    ) -> None:
        self.projects = projects
        self.reports = reports
        self.catalog = catalog
        self._fetcher = fetcher
        self._correlator = correlator
        self._extractors = extractors
        self._run_timeout = run_timeout
        self._assessor = assessor
        self._runs: Dict[int, PipelineRun] = {}
        self._active: Dict[int, int] = {}  # project_id -> run_id
        self._run_ids = itertools.count(1)

    async def submit(
        self,
        repo_url: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        credential: Optional[str] = None,
    ) -> Tuple[Project, Report]:
        try:
            canonical = canonical_repo_url(repo_url)
        except ValueError as exc:
            raise FetchError(str(exc)) from exc

        project = self.projects.get_by_repo_url(canonical)
        if project is None:
            project = self.projects.create(canonical, name or canonical, description or "")
            logger.info("created project %d for %s", project.id, canonical)
        else:
            # A known repository is a regeneration: reject it before touching metadata.
            self._check_runnable(project, credential)
            if name or description:
                project = self.projects.update(project.id, name=name, description=description)

        run = self._start(project.id)
        report = await self._execute(run, credential)
        return self.projects.get(project.id), report

    async def regenerate(self, project_id: int, credential: Optional[str] = None) -> Report:
        project = self.projects.get(project_id)
        if project is None:
            raise KeyError(project_id)
        self._check_runnable(project, credential)
        run = self._start(project_id)
        return await self._execute(run, credential)

    def _check_runnable(self, project: Project, credential: Optional[str]) -> None:
        if project.id in self._active:
            raise RunInProgress(f"a report is already being generated for project {project.id}")
        if project.credential_required and not credential:
            raise MissingCredential(
                f"project {project.id} is a private repository; supply a new github_token to regenerate"
            )

    def cancel(self, project_id: int) -> bool:
        run_id = self._active.get(project_id)
        if run_id is None:
            return False
        self._runs[run_id].cancel_requested = True
        logger.info("cancellation requested for run %d (project %d)", run_id, project_id)
        return True

    def get_run(self, run_id: int) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def runs_for_project(self, project_id: int) -> List[PipelineRun]:
        return [r for r in self._runs.values() if r.project_id == project_id]

    def is_running(self, project_id: int) -> bool:
        return project_id in self._active

    def _start(self, project_id: int) -> PipelineRun:
        # No await between the check and the insert, so this is atomic on the event loop.
        if project_id in self._active:
            raise RunInProgress(f"a report is already being generated for project {project_id}")
        run = PipelineRun(id=next(self._run_ids), project_id=project_id)
        self._runs[run.id] = run
        self._active[project_id] = run.id
        return run

    def _advance(self, run: PipelineRun, state: RunState, deadline: float) -> None:
        if run.cancel_requested:
            raise RunCancelled(f"run {run.id} cancelled before {state.value}", warnings=run.warnings)
        if time.monotonic() > deadline:
            raise RunCancelled(f"run {run.id} timed out before {state.value}", warnings=run.warnings)
        run.state = state
        logger.info("run %d project %d -> %s", run.id, run.project_id, state.value)

    async def _execute(self, run: PipelineRun, credential: Optional[str]) -> Report:
        deadline = time.monotonic() + self._run_timeout
        warnings: List[RunWarning] = run.warnings
        try:
            project = self.projects.get(run.project_id)

            self._advance(run, RunState.FETCHING, deadline)
            fetched = await self._fetcher.fetch(project.repo_url, credential)
            if fetched.private and not project.credential_required:
                project = self.projects.mark_credential_required(project.id)

            self._advance(run, RunState.EXTRACTING, deadline)
            packages = list(extract_all(fetched.files, credential, self._extractors, on_warning=warnings.append))

            self._advance(run, RunState.RESOLVING, deadline)
            resolved = await persist(resolve(packages), self.catalog)

            self._advance(run, RunState.CORRELATING, deadline)
            correlation = await self._correlator.correlate(resolved.dependencies)
            warnings.extend(correlation.warnings)
            repos = await self._assessor.assess(resolved.dependencies) if self._assessor else []

            self._advance(run, RunState.ASSEMBLING, deadline)
            report = assemble(
                self.projects.get(project.id), resolved, correlation, warnings, self.reports.next_id(), repos=repos
            )
            self.reports.publish(report)
        except PipelineError as exc:
            exc.warnings = warnings + [w for w in exc.warnings if w not in warnings]
            state = RunState.CANCELLED if isinstance(exc, RunCancelled) else RunState.FAILED
            self._finish(run, state, exc.kind, exc.message)
            logger.warning("run %d project %d %s: %s", run.id, run.project_id, exc.kind, exc.message)
            raise
        except asyncio.CancelledError:
            stage = run.state.value
            self._finish(run, RunState.CANCELLED, RunCancelled.kind, f"run {run.id} task cancelled during {stage}")
            logger.warning("run %d project %d task cancelled during %s", run.id, run.project_id, stage)
            raise
        except Exception as exc:
            self._finish(run, RunState.FAILED, exc.__class__.__name__, str(exc))
            logger.exception("run %d project %d failed unexpectedly", run.id, run.project_id)
            raise
        finally:
            self._active.pop(run.project_id, None)

        run.report_id = report.id
        self._finish(run, RunState.DONE)
        logger.info(
            "run %d project %d published report %d (%d dependencies, %d vulns, %d warnings)",
            run.id, run.project_id, report.id, report.total_dependencies, report.total_vulns, len(warnings),
        )
        return report

    def _finish(
        self, run: PipelineRun, state: RunState, error_kind: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        run.state = state
        run.error_kind = error_kind
        run.error = error
        run.finished_at = utcnow()
