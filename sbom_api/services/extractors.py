"""Manifest extractors, one per ecosystem, selected by manifest filename."""

import json
import logging
import posixpath
import re
import tomllib
import xml.etree.ElementTree as ET
from collections import defaultdict
from fnmatch import fnmatch
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from sbom_api.errors import ManifestParseError
from sbom_api.models import DependencyKey, ExtractedPackage, RunWarning, extraction_warning

logger = logging.getLogger(__name__)

WarningSink = Optional[Callable[[RunWarning], None]]


class ManifestExtractor:
    package_type = ""
    patterns: Tuple[str, ...] = ()

    def matches(self, filename: str) -> bool:
        return any(fnmatch(filename, p) for p in self.patterns)

    def extract(
        self, tree: Dict[str, str], credential: Optional[str] = None, *, on_warning: WarningSink = None
    ) -> Iterator[ExtractedPackage]:
        for path in sorted(tree):
            if not self.matches(posixpath.basename(path)):
                continue
            packages = self._parse_safely(path, tree[path], on_warning)
            if packages is not None:
                yield from packages

    def parse(self, path: str, content: str, warn: Callable[[str], None]) -> Iterable[ExtractedPackage]:
        raise NotImplementedError

    def _parse_safely(
        self, path: str, content: str, on_warning: WarningSink
    ) -> Optional[List[ExtractedPackage]]:
        try:
            return list(self.parse(path, content, lambda msg: _emit(on_warning, path, msg)))
        except ManifestParseError as exc:
            _emit(on_warning, path, exc.reason)
            return None

    def _package(self, name: str, version: str, path: str, **kw) -> ExtractedPackage:
        return ExtractedPackage(package_type=self.package_type, name=name, version=version, source=path, **kw)


def _emit(on_warning: WarningSink, path: str, message: str) -> None:
    logger.warning("manifest %s: %s", path, message)
    if on_warning is not None:
        on_warning(extraction_warning(path, message))


# --- npm ---

_CONCRETE_SEMVER = re.compile(r"^[v=]?\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?$")
_NPM_DEP_SECTIONS = ("dependencies", "devDependencies", "optionalDependencies")


def clean_npm_version(spec: str) -> str:
    """``^4.17.21`` -> ``4.17.21``; ranges that do not name one version stay as written."""
    raw = (spec or "").strip()
    stripped = raw.lstrip("^~")
    if _CONCRETE_SEMVER.match(stripped):
        return stripped.lstrip("v=")
    return raw


def _load_json(path: str, content: str) -> dict:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ManifestParseError(path, f"invalid JSON: {exc.msg} (line {exc.lineno})") from exc
    if not isinstance(data, dict):
        raise ManifestParseError(path, "expected a JSON object")
    return data


class NpmExtractor(ManifestExtractor):
    package_type = "npm"
    lockfiles = ("package-lock.json", "npm-shrinkwrap.json")
    patterns = lockfiles + ("package.json",)

    def extract(
        self, tree: Dict[str, str], credential: Optional[str] = None, *, on_warning: WarningSink = None
    ) -> Iterator[ExtractedPackage]:
        by_dir: Dict[str, Dict[str, str]] = defaultdict(dict)
        for path in tree:
            name = posixpath.basename(path)
            if self.matches(name):
                by_dir[posixpath.dirname(path)][name] = path

        # A lockfile wins over package.json in the same directory; package.json is
        # the fallback when no lockfile parses.
        for directory in sorted(by_dir):
            files = by_dir[directory]
            manifest = files.get("package.json")
            for lockname in self.lockfiles:
                if lockname not in files:
                    continue
                lock_path = files[lockname]
                packages = self._parse_safely(
                    lock_path, tree[lock_path], on_warning,
                )
                if packages is not None:
                    yield from packages
                    break
            else:
                if manifest is not None:
                    packages = self._parse_safely(manifest, tree[manifest], on_warning)
                    if packages is not None:
                        yield from packages

    def parse(self, path: str, content: str, warn: Callable[[str], None]) -> Iterable[ExtractedPackage]:
        data = _load_json(path, content)
        if posixpath.basename(path) == "package.json":
            return self._parse_manifest(path, data)
        if isinstance(data.get("packages"), dict) and data["packages"]:
            return self._parse_lock_v2(path, data["packages"])
        if isinstance(data.get("dependencies"), dict):
            return self._parse_lock_v1(path, data["dependencies"])
        raise ManifestParseError(path, "lockfile has neither 'packages' nor 'dependencies'")

    def _parse_manifest(self, path: str, data: dict) -> List[ExtractedPackage]:
        out = []
        for section in _NPM_DEP_SECTIONS:
            deps = data.get(section) or {}
            if not isinstance(deps, dict):
                raise ManifestParseError(path, f"'{section}' must be an object")
            for name in sorted(deps):
                out.append(self._package(name, clean_npm_version(str(deps[name])), path))
        return out

    def _parse_lock_v2(self, path: str, packages: dict) -> List[ExtractedPackage]:
        def locate(from_path: str, name: str) -> Optional[str]:
            base = from_path
            while True:
                candidate = f"{base}/node_modules/{name}" if base else f"node_modules/{name}"
                if candidate in packages:
                    return candidate
                if not base:
                    return None
                idx = base.rfind("/node_modules/")
                base = base[:idx] if idx >= 0 else ""

        keys: Dict[str, DependencyKey] = {}
        for lock_path, entry in packages.items():
            if not lock_path or not isinstance(entry, dict) or entry.get("link"):
                continue
            name = entry.get("name") or lock_path.rsplit("node_modules/", 1)[-1]
            keys[lock_path] = (self.package_type, name, str(entry.get("version", "")))

        out: List[ExtractedPackage] = []
        targeted = set()

        def link(parent: Optional[DependencyKey], from_path: str, deps: dict) -> None:
            for name in sorted(deps):
                target = locate(from_path, name)
                if target is None or target not in keys:
                    continue
                targeted.add(target)
                _, dep_name, version = keys[target]
                out.append(self._package(dep_name, version, path, parent=parent))

        root = packages.get("") or {}
        for section in _NPM_DEP_SECTIONS:
            link(None, "", root.get(section) or {})
        for lock_path in sorted(keys):
            entry = packages[lock_path]
            for section in ("dependencies", "optionalDependencies"):
                link(keys[lock_path], lock_path, entry.get(section) or {})

        for lock_path in sorted(set(keys) - targeted):
            _, name, version = keys[lock_path]
            out.append(self._package(name, version, path))
        return out

    def _parse_lock_v1(self, path: str, dependencies: dict) -> List[ExtractedPackage]:
        out: List[ExtractedPackage] = []
        seen = set()
        targeted = set()

        def walk(deps: dict, scopes: List[dict]) -> None:
            chain = [deps] + scopes
            for name in sorted(deps):
                info = deps[name] if isinstance(deps[name], dict) else {}
                key = (self.package_type, name, str(info.get("version", "")))
                seen.add(key)
                nested = info.get("dependencies") or {}
                inner = [nested] + chain
                for req in sorted(info.get("requires") or {}):
                    target = next((s[req] for s in inner if req in s), None)
                    if not isinstance(target, dict):
                        continue
                    child = (self.package_type, req, str(target.get("version", "")))
                    targeted.add(child)
                    out.append(self._package(req, child[2], path, parent=key))
                if nested:
                    walk(nested, chain)

        walk(dependencies, [])
        for _, name, version in sorted(seen - targeted):
            out.append(self._package(name, version, path))
        return out


# --- python ---

_PIP_OPTION = re.compile(r"\s+--?[A-Za-z]")


def _python_version(req: Requirement) -> str:
    specs = list(req.specifier)
    if len(specs) == 1 and specs[0].operator in ("==", "==="):
        return specs[0].version
    return str(req.specifier)


class PythonExtractor(ManifestExtractor):
    package_type = "python"
    patterns = ("requirements*.txt", "pyproject.toml")

    def parse(self, path: str, content: str, warn: Callable[[str], None]) -> Iterable[ExtractedPackage]:
        if posixpath.basename(path) == "pyproject.toml":
            return self._parse_pyproject(path, content, warn)
        return self._parse_requirements(path, content, warn)

    def _requirement(self, path: str, raw: str, warn: Callable[[str], None]) -> Optional[ExtractedPackage]:
        try:
            req = Requirement(raw)
        except InvalidRequirement as exc:
            warn(f"skipped invalid requirement {raw!r}: {exc}")
            return None
        return self._package(canonicalize_name(req.name), _python_version(req), path)

    def _parse_requirements(self, path: str, content: str, warn: Callable[[str], None]) -> List[ExtractedPackage]:
        out = []
        for line in _logical_lines(content):
            if line.startswith("-") or "://" in line:
                continue  # pip options, includes and direct URLs
            # per-requirement options such as --hash=sha256:...
            line = _PIP_OPTION.split(line, 1)[0].strip()
            pkg = self._requirement(path, line, warn)
            if pkg is not None:
                out.append(pkg)
        return out

    def _parse_pyproject(self, path: str, content: str, warn: Callable[[str], None]) -> List[ExtractedPackage]:
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as exc:
            raise ManifestParseError(path, f"invalid TOML: {exc}") from exc

        project = data.get("project") or {}
        raw: List[str] = list(project.get("dependencies") or [])
        optional = project.get("optional-dependencies") or {}
        if isinstance(optional, dict):
            for extra in sorted(optional):
                raw.extend(optional[extra] or [])

        out = []
        for item in raw:
            pkg = self._requirement(path, str(item), warn)
            if pkg is not None:
                out.append(pkg)

        poetry = ((data.get("tool") or {}).get("poetry") or {}).get("dependencies") or {}
        for name in sorted(poetry):
            if name.lower() == "python":
                continue
            spec = poetry[name]
            version = spec.get("version", "") if isinstance(spec, dict) else str(spec)
            out.append(self._package(canonicalize_name(name), version, path))
        return out


def _logical_lines(content: str) -> Iterator[str]:
    pending = ""
    for raw in content.splitlines():
        line = raw.split(" #", 1)[0].strip()
        if line.startswith("#"):
            continue
        if line.endswith("\\"):
            pending += line[:-1] + " "
            continue
        line = (pending + line).strip()
        pending = ""
        if line:
            yield line
    if pending.strip():
        yield pending.strip()


# --- go ---

_GO_REPO_HOSTS = ("github.com/", "gitlab.com/", "bitbucket.org/")


def go_module_repo_url(module: str) -> Optional[str]:
    for host in _GO_REPO_HOSTS:
        if module.startswith(host):
            parts = module.split("/")
            if len(parts) >= 3:
                return "https://" + "/".join(parts[:3])
    return None


class GoExtractor(ManifestExtractor):
    package_type = "go"
    patterns = ("go.mod",)

    def parse(self, path: str, content: str, warn: Callable[[str], None]) -> Iterable[ExtractedPackage]:
        out = []
        in_block = False
        for lineno, raw in enumerate(content.splitlines(), 1):
            line = raw.split("//", 1)[0].strip()
            if not line:
                continue
            if in_block:
                if line == ")":
                    in_block = False
                    continue
                out.append(self._require(path, lineno, line))
            elif line == "require (":
                in_block = True
            elif line.startswith("require "):
                out.append(self._require(path, lineno, line[len("require "):].strip()))
        if in_block:
            raise ManifestParseError(path, "unterminated require block")
        return out

    def _require(self, path: str, lineno: int, spec: str) -> ExtractedPackage:
        fields = spec.split()
        if len(fields) != 2:
            raise ManifestParseError(path, f"line {lineno}: malformed require {spec!r}")
        module, version = fields
        return self._package(module, version, path, repo_url=go_module_repo_url(module))


# --- maven ---

_MAVEN_PROPERTY = re.compile(r"\$\{([^}]+)\}")


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    for c in elem:
        if _local(c.tag) == name:
            return c
    return None


def _text(elem: ET.Element, name: str) -> str:
    c = _child(elem, name)
    return (c.text or "").strip() if c is not None else ""


class MavenExtractor(ManifestExtractor):
    package_type = "maven"
    patterns = ("pom.xml",)

    def parse(self, path: str, content: str, warn: Callable[[str], None]) -> Iterable[ExtractedPackage]:
        try:
            root = ET.fromstring(content)
        except ET.ParseError as exc:
            raise ManifestParseError(path, f"invalid XML: {exc}") from exc
        if _local(root.tag) != "project":
            raise ManifestParseError(path, "root element is not <project>")

        props = {"project.version": _text(root, "version"), "project.groupId": _text(root, "groupId")}
        properties = _child(root, "properties")
        if properties is not None:
            for p in properties:
                props[_local(p.tag)] = (p.text or "").strip()

        def substitute(value: str) -> str:
            return _MAVEN_PROPERTY.sub(lambda m: props.get(m.group(1), m.group(0)), value)

        out = []
        deps = _child(root, "dependencies")
        for dep in list(deps) if deps is not None else []:
            if _local(dep.tag) != "dependency":
                continue
            group, artifact = substitute(_text(dep, "groupId")), substitute(_text(dep, "artifactId"))
            if not group or not artifact:
                warn("dependency without groupId/artifactId skipped")
                continue
            out.append(self._package(f"{group}:{artifact}", substitute(_text(dep, "version")), path))
        return out


DEFAULT_EXTRACTORS: Sequence[ManifestExtractor] = (
    GoExtractor(),
    NpmExtractor(),
    PythonExtractor(),
    MavenExtractor(),
)


def is_manifest(filename: str, extractors: Sequence[ManifestExtractor] = DEFAULT_EXTRACTORS) -> bool:
    return any(e.matches(filename) for e in extractors)


def extract_all(
    tree: Dict[str, str],
    credential: Optional[str] = None,
    extractors: Sequence[ManifestExtractor] = DEFAULT_EXTRACTORS,
    on_warning: WarningSink = None,
) -> Iterator[ExtractedPackage]:
    for extractor in extractors:
        yield from extractor.extract(tree, credential, on_warning=on_warning)
