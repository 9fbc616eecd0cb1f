from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

PACKAGE_TYPES = ("go", "npm", "python", "maven")

# (package_type, name, version)
DependencyKey = Tuple[str, str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(BaseModel):
    id: int
    repo_url: str
    name: str
    description: str = ""
    credential_required: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Dependency(BaseModel):
    id: int
    package_type: str
    name: str
    version: str
    description: Optional[str] = None
    repo_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> DependencyKey:
        return (self.package_type, self.name, self.version)


class ExtractedPackage(BaseModel):
    """One declared package as seen in a manifest."""

    model_config = ConfigDict(frozen=True)

    package_type: str
    name: str
    version: str = ""
    parent: Optional[DependencyKey] = None
    description: Optional[str] = None
    repo_url: Optional[str] = None
    source: str = ""

    @property
    def key(self) -> DependencyKey:
        return (self.package_type, self.name, self.version)


class RunWarning(BaseModel):
    kind: str  # ExtractionWarning | CorrelationWarning
    source: str
    message: str


def extraction_warning(source: str, message: str) -> RunWarning:
    return RunWarning(kind="ExtractionWarning", source=source, message=message)


def correlation_warning(source: str, message: str) -> RunWarning:
    return RunWarning(kind="CorrelationWarning", source=source, message=message)


class Advisory(BaseModel):
    model_config = ConfigDict(frozen=True)

    report_id: int
    dependency_id: int
    advisory_id: str
    severity: str = "UNKNOWN"
    score: float = 0.0
    summary: str = ""
    source: str = "osv"


class GraphEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    report_id: int
    from_dependency_id: Optional[int]  # None is the project root
    to_dependency_id: int


class RepoAssessment(BaseModel):
    """Upstream repository health for the dependencies that point at it."""

    model_config = ConfigDict(frozen=True)

    repo_url: str
    dependency_ids: List[int]
    status: str = "Unknown"
    staleness_days: int = 0
    last_activity_at: Optional[datetime] = None
    archived: bool = False
    stars: int = 0
    license: Optional[str] = None
    error: Optional[str] = None


class Report(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    project_id: int
    generated_at: datetime
    repo_url: str
    total_dependencies: int
    total_vulns: int
    severity: str
    dependency_ids: List[int]
    edges: List[GraphEdge]
    advisories: List[Advisory]
    warnings: List[RunWarning]
    repos: List[RepoAssessment] = Field(default_factory=list)
    html: str = Field(repr=False)
    graph_svg: str = Field(repr=False)


class RunState(str, Enum):
    PENDING = "PENDING"
    FETCHING = "FETCHING"
    EXTRACTING = "EXTRACTING"
    RESOLVING = "RESOLVING"
    CORRELATING = "CORRELATING"
    ASSEMBLING = "ASSEMBLING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_STATES = {
    RunState.PENDING,
    RunState.FETCHING,
    RunState.EXTRACTING,
    RunState.RESOLVING,
    RunState.CORRELATING,
    RunState.ASSEMBLING,
}


class PipelineRun(BaseModel):
    id: int
    project_id: int
    state: RunState = RunState.PENDING
    warnings: List[RunWarning] = Field(default_factory=list)
    report_id: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_STATES
