from collections import Counter
from typing import Dict, List, Optional, Tuple

from sbom_api.models import PACKAGE_TYPES, Dependency
from sbom_api.storage import DependencyCatalog, ReportStore

TOP_DEPENDENCIES = 20


def list_dependencies(catalog: DependencyCatalog, package_type: Optional[str] = None) -> List[Dependency]:
    """Catalog listing. An unknown type yields an empty list rather than an error."""
    deps = catalog.all()
    if not package_type:
        return deps
    if package_type not in PACKAGE_TYPES:
        return []
    return [d for d in deps if d.package_type == package_type]


def dependency_stats(catalog: DependencyCatalog, reports: ReportStore, top: int = TOP_DEPENDENCIES) -> dict:
    deps = catalog.all()
    by_type: Dict[str, int] = {t: 0 for t in PACKAGE_TYPES}
    by_type.update(Counter(d.package_type for d in deps))

    usage = reports.reference_counts()
    ranked: List[Tuple[Dependency, int]] = sorted(
        ((d, usage.get(d.id, 0)) for d in deps),
        key=lambda pair: (-pair[1], pair[0].key),
    )
    return {
        "total_dependencies": len(deps),
        "by_type": by_type,
        "top_dependencies": ranked[:top],
    }
