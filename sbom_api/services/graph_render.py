"""SVG rendering of a report's dependency graph, laid out in columns by depth."""

from collections import defaultdict, deque
from html import escape
from typing import Dict, List, Optional, Sequence, Set, Tuple

from sbom_api.models import PACKAGE_TYPES, Dependency

TYPE_COLORS = {
    "go": "#00ADD8",
    "npm": "#CB3837",
    "python": "#3776AB",
    "maven": "#B07219",
}
ROOT_COLOR = "#7BEFB2"
VULN_COLOR = "#f85149"
OTHER_COLOR = "#8b949e"

COLUMN_WIDTH = 280
ROW_HEIGHT = 28
MARGIN = 40
ROOT = "root"


def truncate(s: str, max_len: int = 40) -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def compute_levels(
    node_ids: Sequence[int], edges: Sequence[Tuple[Optional[int], int]]
) -> Dict[int, int]:
    """BFS depth from the project root. Cycles are tolerated; unreachable nodes go one past the deepest level."""
    adjacency: Dict[Optional[int], List[int]] = defaultdict(list)
    for parent, child in edges:
        adjacency[parent].append(child)

    levels: Dict[int, int] = {}
    queue = deque((child, 1) for child in adjacency.get(None, []))
    while queue:
        node, depth = queue.popleft()
        if node in levels:
            continue
        levels[node] = depth
        for child in adjacency.get(node, []):
            if child not in levels:
                queue.append((child, depth + 1))

    orphan_level = max(levels.values(), default=0) + 1
    for node in node_ids:
        levels.setdefault(node, orphan_level)
    return levels


def render_svg(
    project_name: str,
    dependencies: Sequence[Dependency],
    edges: Sequence[Tuple[Optional[int], int]],
    vulnerable: Set[int],
) -> str:
    levels = compute_levels([d.id for d in dependencies], edges)

    columns: Dict[int, List[Dependency]] = defaultdict(list)
    for dep in sorted(dependencies, key=lambda d: d.key):
        columns[levels[dep.id]].append(dep)

    positions: Dict[object, Tuple[int, int]] = {ROOT: (MARGIN, MARGIN + 20)}
    for level, deps in columns.items():
        for row, dep in enumerate(deps):
            positions[dep.id] = (MARGIN + level * COLUMN_WIDTH, MARGIN + 20 + row * ROW_HEIGHT)

    deepest = max(columns, default=0)
    tallest = max((len(v) for v in columns.values()), default=1)
    width = MARGIN * 2 + (deepest + 1) * COLUMN_WIDTH
    height = MARGIN * 2 + 40 + tallest * ROW_HEIGHT

    out: List[str] = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}" font-family="system-ui, sans-serif" font-size="12">',
        "<style>",
        ".edge { stroke: #30363d; stroke-width: 1; fill: none; }",
        ".node text { fill: #e6edf3; }",
        ".node.vulnerable circle { stroke: " + VULN_COLOR + "; stroke-width: 3; }",
        "</style>",
        f'<rect width="{width}" height="{height}" fill="#0d1117"/>',
        _legend(),
        '<g class="edges">',
    ]
    for parent, child in edges:
        x1, y1 = positions[parent if parent is not None else ROOT]
        x2, y2 = positions[child]
        out.append(
            f'<line class="edge" data-from="{parent if parent is not None else ROOT}" data-to="{child}" '
            f'x1="{x1}" y1="{y1}" x2="{x2}" y2="{y2}"/>'
        )
    out.append("</g>")

    out.append('<g class="nodes">')
    x, y = positions[ROOT]
    out.append(
        f'<g class="node project" data-type="project"><circle cx="{x}" cy="{y}" r="8" fill="{ROOT_COLOR}"/>'
        f'<text x="{x + 12}" y="{y + 4}">{escape(truncate(project_name))}</text></g>'
    )
    for dep in dependencies:
        x, y = positions[dep.id]
        is_vuln = dep.id in vulnerable
        classes = f"node pkg-{escape(dep.package_type)}" + (" vulnerable" if is_vuln else "")
        color = TYPE_COLORS.get(dep.package_type, OTHER_COLOR)
        label = escape(truncate(f"{dep.name}@{dep.version}" if dep.version else dep.name))
        out.append(
            f'<g class="{classes}" data-type="{escape(dep.package_type)}" data-id="{dep.id}">'
            f'<title>{escape(dep.package_type)}:{escape(dep.name)}@{escape(dep.version)}</title>'
            f'<circle cx="{x}" cy="{y}" r="6" fill="{color}"/>'
            f'<text x="{x + 10}" y="{y + 4}">{label}</text></g>'
        )
    out.append("</g>")
    out.append("</svg>")
    return "\n".join(out)


def _legend() -> str:
    items = []
    for i, package_type in enumerate(PACKAGE_TYPES):
        x = MARGIN + i * 90
        items.append(
            f'<g class="legend-item" data-type="{package_type}">'
            f'<circle cx="{x}" cy="14" r="5" fill="{TYPE_COLORS[package_type]}"/>'
            f'<text x="{x + 9}" y="18" fill="#8b949e">{package_type}</text></g>'
        )
    x = MARGIN + len(PACKAGE_TYPES) * 90
    items.append(
        f'<g class="legend-item" data-type="vulnerable">'
        f'<circle cx="{x}" cy="14" r="5" fill="none" stroke="{VULN_COLOR}" stroke-width="2"/>'
        f'<text x="{x + 9}" y="18" fill="#8b949e">vulnerable</text></g>'
    )
    return '<g class="legend">' + "".join(items) + "</g>"
