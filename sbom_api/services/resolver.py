import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sbom_api.models import Dependency, DependencyKey, ExtractedPackage
from sbom_api.storage import DependencyCatalog

logger = logging.getLogger(__name__)

KeyEdge = Tuple[Optional[DependencyKey], DependencyKey]
IdEdge = Tuple[Optional[int], int]


def _edge_sort_key(edge: KeyEdge):
    parent, child = edge
    return (parent is not None, parent or ("", "", ""), child)


@dataclass(frozen=True)
class Resolution:
    """Canonical dependency set for one run, before catalog identities are assigned."""

    keys: Tuple[DependencyKey, ...]
    edges: Tuple[KeyEdge, ...]
    metadata: Dict[DependencyKey, Dict[str, Optional[str]]] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ResolvedSet:
    dependencies: Tuple[Dependency, ...]
    edges: Tuple[IdEdge, ...]

    @property
    def ids(self) -> List[int]:
        return [d.id for d in self.dependencies]


def resolve(packages: Iterable[ExtractedPackage]) -> Resolution:
    """Deduplicate extracted packages by (type, name, version).

    Pure and order independent: the same packages in any order give the same result.
    """
    metadata: Dict[DependencyKey, Dict[str, Optional[str]]] = {}
    edges = set()
    for pkg in sorted(packages, key=lambda p: (p.key, p.source, p.parent or ("", "", ""))):
        meta = metadata.setdefault(pkg.key, {"description": None, "repo_url": None})
        for attr in ("description", "repo_url"):
            value = getattr(pkg, attr)
            if value is None:
                continue
            if meta[attr] is None:
                meta[attr] = value
            elif meta[attr] != value:
                logger.info("conflicting %s for %s:%s@%s within one run, keeping %r", attr, *pkg.key, meta[attr])

        parent = pkg.parent
        if parent is not None and parent == pkg.key:
            continue  # self-reference
        edges.add((parent, pkg.key))

    # Edges whose parent was never declared on its own still make the parent a node.
    for parent, _ in list(edges):
        if parent is not None and parent not in metadata:
            metadata[parent] = {"description": None, "repo_url": None}
            edges.add((None, parent))

    return Resolution(
        keys=tuple(sorted(metadata)),
        edges=tuple(sorted(edges, key=_edge_sort_key)),
        metadata=metadata,
    )


async def persist(resolution: Resolution, catalog: DependencyCatalog) -> ResolvedSet:
    """Upsert every resolved key into the shared catalog and map edges to dependency ids."""
    deps: Dict[DependencyKey, Dependency] = {}
    for key in resolution.keys:
        meta = resolution.metadata.get(key, {})
        deps[key] = await catalog.upsert(key, description=meta.get("description"), repo_url=meta.get("repo_url"))

    edges = tuple(
        (deps[parent].id if parent is not None else None, deps[child].id)
        for parent, child in resolution.edges
    )
    return ResolvedSet(dependencies=tuple(deps[k] for k in resolution.keys), edges=edges)
