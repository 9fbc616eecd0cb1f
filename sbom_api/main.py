import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from sbom_api.config import Settings, get_settings
from sbom_api.errors import PipelineError
from sbom_api.models import Report
from sbom_api.schemas import (
    DependencyResponse,
    DependencyStatsResponse,
    DependencyUsage,
    ErrorResponse,
    ListProjectsResponse,
    ListReportsResponse,
    ProjectResponse,
    ProjectSummary,
    RegenerateRequest,
    ReportDetail,
    ReportSummary,
    SubmitRequest,
    SubmitResponse,
    UpdateProjectRequest,
    UpdateProjectResponse,
    secret,
)
from sbom_api.services import project_service, query_service
from sbom_api.services.correlator import Correlator, VulnerabilityFeed
from sbom_api.services.extractors import is_manifest
from sbom_api.services.fetcher import GitHubFetcher, RepositoryFetcher
from sbom_api.services.osv_service import OSVClient
from sbom_api.services.pipeline import PipelineOrchestrator
from sbom_api.services.repo_assessor import RepoAssessor
from sbom_api.storage import DependencyCatalog, ProjectStore, ReportStore

logger = logging.getLogger("sbom_api")

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}

router = APIRouter()


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _project_or_404(orchestrator: PipelineOrchestrator, project_id: int):
    project = orchestrator.projects.get(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _report_or_404(orchestrator: PipelineOrchestrator, report_id: int) -> Report:
    report = orchestrator.reports.get(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@router.post("/submit", response_model=SubmitResponse, responses=ERROR_RESPONSES)
async def submit_repository(
    body: SubmitRequest, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    project, report = await project_service.submit_repository(
        orchestrator,
        body.repo_url,
        name=body.name,
        description=body.description,
        github_token=secret(body.github_token),
    )
    return SubmitResponse(
        message="Report generated successfully",
        project_id=project.id,
        report_id=report.id,
        report=ReportSummary.of(report),
    )


@router.get("/projects", response_model=ListProjectsResponse)
async def list_projects(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    projects = [ProjectSummary(id=p.id, name=p.name, repo_url=p.repo_url) for p in orchestrator.projects.list()]
    return ListProjectsResponse(projects=projects, count=len(projects))


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    project = _project_or_404(orchestrator, project_id)
    return ProjectResponse.of(project, orchestrator.reports.list_for_project(project_id))


@router.put("/projects/{project_id}", response_model=UpdateProjectResponse, responses=ERROR_RESPONSES)
async def update_project(
    project_id: int,
    body: UpdateProjectRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    _project_or_404(orchestrator, project_id)
    project, report = await project_service.update_project(
        orchestrator,
        project_id,
        name=body.name,
        description=body.description,
        github_token=secret(body.github_token),
        regenerate=body.regenerate,
    )
    history = orchestrator.reports.list_for_project(project_id)
    return UpdateProjectResponse(
        message="Project updated and report regenerated" if report else "Project updated successfully",
        project_id=project.id,
        report_id=report.id if report else None,
        report=ReportSummary.of(report) if report else None,
        project=ProjectResponse.of(project, history),
    )


@router.post("/projects/{project_id}/regenerate", response_model=SubmitResponse, responses=ERROR_RESPONSES)
async def regenerate_report(
    project_id: int,
    body: Optional[RegenerateRequest] = Body(None),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    _project_or_404(orchestrator, project_id)
    report = await project_service.regenerate_report(
        orchestrator, project_id, github_token=secret(body.github_token) if body else None
    )
    return SubmitResponse(
        message="Report regenerated successfully",
        project_id=project_id,
        report_id=report.id,
        report=ReportSummary.of(report),
    )


@router.get("/projects/{project_id}/reports", response_model=ListReportsResponse)
async def list_reports(project_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    _project_or_404(orchestrator, project_id)
    reports = [ReportSummary.of(r) for r in orchestrator.reports.list_for_project(project_id)]
    return ListReportsResponse(reports=reports, count=len(reports))


@router.get("/reports/{report_id}", response_model=ReportDetail)
async def get_report(
    report_id: int, request: Request, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    report = _report_or_404(orchestrator, report_id)
    base = request.url.path.rstrip("/")
    deps = [orchestrator.catalog.get(i) for i in report.dependency_ids]
    return ReportDetail(
        **ReportSummary.of(report).model_dump(),
        repo_url=report.repo_url,
        dependencies=[DependencyResponse.of(d) for d in deps if d is not None],
        edges=report.edges,
        advisories=report.advisories,
        warnings=report.warnings,
        repos=report.repos,
        html_url=f"{base}/html",
        graph_url=f"{base}/graph",
    )


@router.get("/reports/{report_id}/html", response_class=HTMLResponse)
async def get_report_html(report_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    report = _report_or_404(orchestrator, report_id)
    return HTMLResponse(content=report.html)


@router.get("/reports/{report_id}/graph")
async def get_report_graph(report_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    report = _report_or_404(orchestrator, report_id)
    return Response(content=report.graph_svg, media_type="image/svg+xml")


@router.get("/dependencies", response_model=List[DependencyResponse])
async def list_dependencies(
    type: Optional[str] = Query(None, description="Filter by package type (go, npm, python, maven)"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    deps = query_service.list_dependencies(orchestrator.catalog, type)
    return [DependencyResponse.of(d) for d in deps]


@router.get("/dependencies/stats", response_model=DependencyStatsResponse)
async def dependency_stats(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    stats = query_service.dependency_stats(orchestrator.catalog, orchestrator.reports)
    return DependencyStatsResponse(
        total_dependencies=stats["total_dependencies"],
        by_type=stats["by_type"],
        top_dependencies=[
            DependencyUsage(**DependencyResponse.of(d).model_dump(), report_count=count)
            for d, count in stats["top_dependencies"]
        ],
    )


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def configure_logging(level: str) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    logger.setLevel(level.upper())


def create_app(
    settings: Optional[Settings] = None,
    fetcher: Optional[RepositoryFetcher] = None,
    feed: Optional[VulnerabilityFeed] = None,
    assessor: Optional[RepoAssessor] = None,
) -> FastAPI:
    settings = settings or get_settings()
    if fetcher is None:
        github = GitHubFetcher(settings, wanted=is_manifest)
        fetcher = github
        if assessor is None and settings.assess_repos:
            assessor = RepoAssessor(github, concurrency=settings.assess_concurrency)
    configure_logging(settings.log_level)

    app = FastAPI(title="SBOM Report API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    app.state.settings = settings
    app.state.orchestrator = PipelineOrchestrator(
        projects=ProjectStore(),
        reports=ReportStore(),
        catalog=DependencyCatalog(),
        fetcher=fetcher,
        correlator=Correlator(
            feed or OSVClient(settings),
            concurrency=settings.feed_concurrency,
            failure_threshold=settings.feed_failure_threshold,
        ),
        run_timeout=settings.run_timeout_seconds,
        assessor=assessor,
    )

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(router, prefix="/v1", tags=["sbom"])
    # The web client's default base URL is /api.
    app.include_router(router, prefix="/api/v1", include_in_schema=False)
    return app


app = create_app()
