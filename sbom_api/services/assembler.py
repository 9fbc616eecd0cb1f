from datetime import datetime
from html import escape
from typing import Dict, List, Optional, Sequence

from sbom_api.models import Advisory, Dependency, GraphEdge, Project, RepoAssessment, Report, RunWarning, utcnow
from sbom_api.services.correlator import Correlation
from sbom_api.services.graph_render import render_svg
from sbom_api.services.resolver import ResolvedSet
from sbom_api.utils import project_severity

SEVERITY_COLORS = {"High": "#f57c00", "Medium": "#ffa726", "Low": "#388e3c", "None": "#8b949e"}


def assemble(
    project: Project,
    resolved: ResolvedSet,
    correlation: Correlation,
    warnings: Sequence[RunWarning],
    report_id: int,
    generated_at: Optional[datetime] = None,
    repos: Sequence[RepoAssessment] = (),
) -> Report:
    """Build the immutable Report for one run. Counts are derived here and nowhere else."""
    generated_at = generated_at or utcnow()

    advisories: List[Advisory] = []
    for dep in resolved.dependencies:
        for vuln in correlation.matches.get(dep.id, []):
            advisories.append(
                Advisory(
                    report_id=report_id,
                    dependency_id=dep.id,
                    advisory_id=vuln.get("id", ""),
                    severity=vuln.get("severity", "UNKNOWN"),
                    score=float(vuln.get("score") or 0.0),
                    summary=vuln.get("summary") or "",
                )
            )

    edges = [GraphEdge(report_id=report_id, from_dependency_id=p, to_dependency_id=c) for p, c in resolved.edges]
    severity = project_severity(advisories)
    vulnerable = {a.dependency_id for a in advisories}

    graph_svg = render_svg(project.name, resolved.dependencies, resolved.edges, vulnerable)
    html = render_html(project, resolved.dependencies, advisories, warnings, severity, generated_at, repos)

    return Report(
        id=report_id,
        project_id=project.id,
        generated_at=generated_at,
        repo_url=project.repo_url,
        total_dependencies=len(resolved.dependencies),
        total_vulns=len(advisories),
        severity=severity,
        dependency_ids=resolved.ids,
        edges=edges,
        advisories=advisories,
        warnings=list(warnings),
        repos=list(repos),
        html=html,
        graph_svg=graph_svg,
    )


_STYLE = """
body { font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif; margin: 24px;
       line-height: 1.35; color: #e6edf3; background-color: #0d1117; }
h1, h2 { color: #7BEFB2; }
a { color: #02A67F; }
.muted { color: #8b949e; }
.box { border: 1px solid #30363d; border-radius: 10px; padding: 16px; margin: 14px 0; background: #161b22; }
table { border-collapse: collapse; width: 100%; background: #1c2128; }
th, td { border-bottom: 1px solid #30363d; padding: 8px; text-align: left; vertical-align: top; }
th { background: #015945; color: white; }
.bad { font-weight: 700; color: #f85149; }
"""


def render_html(
    project: Project,
    dependencies: Sequence[Dependency],
    advisories: Sequence[Advisory],
    warnings: Sequence[RunWarning],
    severity: str,
    generated_at: datetime,
    repos: Sequence[RepoAssessment] = (),
) -> str:
    by_dep: Dict[int, List[Advisory]] = {}
    for a in advisories:
        by_dep.setdefault(a.dependency_id, []).append(a)
    names = {d.id: f"{d.package_type}:{d.name}@{d.version}" for d in dependencies}

    dep_rows = []
    for dep in dependencies:
        count = len(by_dep.get(dep.id, []))
        cell = '<td class="bad">' if count else "<td>"
        upstream = f'<a href="{escape(dep.repo_url)}">{escape(dep.repo_url)}</a>' if dep.repo_url else ""
        dep_rows.append(
            f"<tr data-type=\"{escape(dep.package_type)}\"><td>{escape(dep.package_type)}</td>"
            f"<td>{escape(dep.name)}</td><td>{escape(dep.version)}</td>"
            f"{cell}{count}</td><td>{upstream}</td></tr>"
        )

    vuln_rows = [
        f"<tr><td>{escape(a.advisory_id)}</td><td>{escape(names.get(a.dependency_id, ''))}</td>"
        f"<td>{escape(a.severity)}</td><td>{a.score:.1f}</td><td>{escape(a.summary)}</td></tr>"
        for a in sorted(advisories, key=lambda a: (-a.score, a.advisory_id))
    ]

    warning_items = [
        f"<li><strong>{escape(w.kind)}</strong> <code>{escape(w.source)}</code>: {escape(w.message)}</li>"
        for w in warnings
    ]

    parts = [
        "<!doctype html>",
        "<html>",
        "<head>",
        '<meta charset="utf-8">',
        f"<title>SBOM Report - {escape(project.name)}</title>",
        '<meta name="viewport" content="width=device-width, initial-scale=1">',
        f"<style>{_STYLE}</style>",
        "</head>",
        "<body>",
        f"<h1>{escape(project.name)}</h1>",
        f'<p class="muted">{escape(project.repo_url)} &middot; generated {generated_at.isoformat()}</p>',
        '<div class="box">',
        f"<p>Dependencies: <strong>{len(dependencies)}</strong></p>",
        f"<p>Vulnerabilities: <strong>{len(advisories)}</strong></p>",
        f'<p>Severity: <strong style="color: {SEVERITY_COLORS.get(severity, "#8b949e")}">'
        f"{escape(severity)}</strong></p>",
        '<p><a href="graph">Dependency graph</a></p>',
        "</div>",
        "<h2>Dependencies</h2>",
        "<table><thead><tr><th>Type</th><th>Name</th><th>Version</th><th>Vulns</th><th>Upstream</th></tr></thead>",
        "<tbody>" + "".join(dep_rows) + "</tbody></table>",
        "<h2>Vulnerabilities</h2>",
    ]
    if vuln_rows:
        parts += [
            "<table><thead><tr><th>ID</th><th>Package</th><th>Severity</th><th>Score</th><th>Summary</th></tr></thead>",
            "<tbody>" + "".join(vuln_rows) + "</tbody></table>",
        ]
    else:
        parts.append('<p class="muted">No known vulnerabilities.</p>')
    if repos:
        parts += [
            "<h2>Upstream repositories</h2>",
            "<table><thead><tr><th>Repository</th><th>Used by</th><th>Status</th>"
            "<th>Last activity</th><th>License</th></tr></thead>",
            "<tbody>" + "".join(_repo_row(r, names) for r in repos) + "</tbody></table>",
        ]
    if warning_items:
        parts += ["<h2>Warnings</h2>", "<ul>" + "".join(warning_items) + "</ul>"]
    parts += ["</body>", "</html>"]
    return "\n".join(parts)


def _repo_row(repo: RepoAssessment, names: Dict[int, str]) -> str:
    used_by = ", ".join(escape(names.get(i, str(i))) for i in repo.dependency_ids)
    status = escape(repo.status) + (" (archived)" if repo.archived else "")
    if repo.error:
        status += f'<div class="muted">{escape(repo.error)}</div>'
    elif repo.staleness_days:
        status += f'<div class="muted">{repo.staleness_days} days since activity</div>'
    last = repo.last_activity_at.date().isoformat() if repo.last_activity_at else ""
    return (
        f'<tr><td><a href="{escape(repo.repo_url)}">{escape(repo.repo_url)}</a></td>'
        f"<td>{used_by}</td><td>{status}</td><td>{last}</td><td>{escape(repo.license or '')}</td></tr>"
    )
