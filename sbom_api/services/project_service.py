import logging
from typing import Optional, Tuple

from sbom_api.models import Project, Report
from sbom_api.services.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)


async def submit_repository(
    orchestrator: PipelineOrchestrator,
    repo_url: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    github_token: Optional[str] = None,
) -> Tuple[Project, Report]:
    return await orchestrator.submit(repo_url, name=name, description=description, credential=github_token)


async def update_project(
    orchestrator: PipelineOrchestrator,
    project_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
    github_token: Optional[str] = None,
    regenerate: bool = False,
) -> Tuple[Project, Optional[Report]]:
    """Update name/description, then optionally run a regeneration.

    The metadata change is kept even if the regeneration is rejected.
    """
    if orchestrator.projects.get(project_id) is None:
        raise KeyError(project_id)

    project = orchestrator.projects.update(project_id, name=name, description=description)
    if not regenerate:
        return project, None

    report = await orchestrator.regenerate(project_id, credential=github_token)
    return orchestrator.projects.get(project_id), report


async def regenerate_report(
    orchestrator: PipelineOrchestrator, project_id: int, github_token: Optional[str] = None
) -> Report:
    return await orchestrator.regenerate(project_id, credential=github_token)
