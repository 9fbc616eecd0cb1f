from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr

from sbom_api.models import Advisory, Dependency, GraphEdge, Project, RepoAssessment, Report, RunWarning


class SubmitRequest(BaseModel):
    repo_url: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    github_token: Optional[SecretStr] = None


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    github_token: Optional[SecretStr] = None
    regenerate: bool = False


class RegenerateRequest(BaseModel):
    github_token: Optional[SecretStr] = None


def secret(value: Optional[SecretStr]) -> Optional[str]:
    if value is None:
        return None
    return value.get_secret_value() or None


class DependencyResponse(BaseModel):
    id: int
    package_type: str
    name: str
    version: str
    description: Optional[str] = None
    repo_url: Optional[str] = None

    @classmethod
    def of(cls, dep: Dependency) -> "DependencyResponse":
        return cls(**dep.model_dump(include=set(cls.model_fields)))


class DependencyUsage(DependencyResponse):
    report_count: int = 0


class ReportSummary(BaseModel):
    id: int
    project_id: int
    generated_at: datetime
    total_dependencies: int
    total_vulns: int
    severity: str
    warning_count: int

    @classmethod
    def of(cls, report: Report) -> "ReportSummary":
        return cls(
            id=report.id,
            project_id=report.project_id,
            generated_at=report.generated_at,
            total_dependencies=report.total_dependencies,
            total_vulns=report.total_vulns,
            severity=report.severity,
            warning_count=len(report.warnings),
        )


class ReportDetail(ReportSummary):
    repo_url: str
    dependencies: List[DependencyResponse]
    edges: List[GraphEdge]
    advisories: List[Advisory]
    warnings: List[RunWarning]
    repos: List[RepoAssessment] = []
    html_url: str
    graph_url: str


class ProjectSummary(BaseModel):
    id: int
    name: str
    repo_url: str


class ProjectResponse(BaseModel):
    id: int
    repo_url: str
    name: str
    description: str
    credential_required: bool
    created_at: datetime
    updated_at: datetime
    report_count: int = 0
    latest_report: Optional[ReportSummary] = None

    @classmethod
    def of(cls, project: Project, reports: List[Report]) -> "ProjectResponse":
        return cls(
            **project.model_dump(),
            report_count=len(reports),
            latest_report=ReportSummary.of(reports[0]) if reports else None,
        )


class ListProjectsResponse(BaseModel):
    projects: List[ProjectSummary]
    count: int


class ListReportsResponse(BaseModel):
    reports: List[ReportSummary]
    count: int


class SubmitResponse(BaseModel):
    message: str
    project_id: int
    report_id: Optional[int] = None
    report: Optional[ReportSummary] = None


class UpdateProjectResponse(SubmitResponse):
    project: ProjectResponse


class DependencyStatsResponse(BaseModel):
    total_dependencies: int
    by_type: Dict[str, int]
    top_dependencies: List[DependencyUsage]


class ErrorResponse(BaseModel):
    error: str
    kind: str
    warnings: List[RunWarning] = []
