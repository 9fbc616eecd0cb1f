import json

import pytest

from factories import package_json
from sbom_api.services.extractors import (
    GoExtractor,
    MavenExtractor,
    NpmExtractor,
    PythonExtractor,
    clean_npm_version,
    extract_all,
    go_module_repo_url,
    is_manifest,
)


def _run(extractor, tree):
    warnings = []
    packages = list(extractor.extract(tree, on_warning=warnings.append))
    return packages, warnings


@pytest.mark.parametrize("spec,expected", [
    ("4.17.21", "4.17.21"),
    ("^4.17.21", "4.17.21"),
    ("~1.2.3", "1.2.3"),
    ("v2.0.0", "2.0.0"),
    (">=1.0.0 <2.0.0", ">=1.0.0 <2.0.0"),
    ("latest", "latest"),
])
def test_clean_npm_version(spec, expected):
    assert clean_npm_version(spec) == expected


def test_npm_package_json():
    packages, warnings = _run(NpmExtractor(), {"package.json": package_json({"lodash": "4.17.21"})})
    assert warnings == []
    assert [p.key for p in packages] == [("npm", "lodash", "4.17.21")]
    assert packages[0].parent is None


def test_npm_lockfile_v2_records_transitive_edges():
    lock = {
        "name": "web",
        "lockfileVersion": 3,
        "packages": {
            "": {"name": "web", "dependencies": {"express": "^4.18.0"}},
            "node_modules/express": {"version": "4.18.2", "dependencies": {"debug": "2.6.9"}},
            "node_modules/debug": {"version": "2.6.9", "dependencies": {"ms": "2.0.0"}},
            "node_modules/debug/node_modules/ms": {"version": "2.0.0"},
            "node_modules/ms": {"version": "2.1.3"},
        },
    }
    tree = {"package.json": package_json({"express": "^4.18.0"}), "package-lock.json": json.dumps(lock)}
    packages, warnings = _run(NpmExtractor(), tree)

    assert warnings == []
    edges = {(p.parent, p.key) for p in packages}
    assert (None, ("npm", "express", "4.18.2")) in edges
    assert (("npm", "express", "4.18.2"), ("npm", "debug", "2.6.9")) in edges
    # nested copy wins over the hoisted one
    assert (("npm", "debug", "2.6.9"), ("npm", "ms", "2.0.0")) in edges
    # unreferenced hoisted package still appears, attached to the root
    assert (None, ("npm", "ms", "2.1.3")) in edges
    assert all(p.source == "package-lock.json" for p in packages)


def test_npm_lockfile_v1():
    lock = {
        "lockfileVersion": 1,
        "dependencies": {
            "a": {"version": "1.0.0", "requires": {"b": "^2.0.0"}},
            "b": {"version": "2.1.0"},
        },
    }
    packages, _ = _run(NpmExtractor(), {"package-lock.json": json.dumps(lock)})
    edges = {(p.parent, p.key) for p in packages}
    assert edges == {
        (("npm", "a", "1.0.0"), ("npm", "b", "2.1.0")),
        (None, ("npm", "a", "1.0.0")),
    }


def test_npm_broken_lockfile_falls_back_to_package_json():
    tree = {"package.json": package_json({"lodash": "4.17.21"}), "package-lock.json": "{ not json"}
    packages, warnings = _run(NpmExtractor(), tree)
    assert [p.key for p in packages] == [("npm", "lodash", "4.17.21")]
    assert len(warnings) == 1
    assert warnings[0].kind == "ExtractionWarning"
    assert warnings[0].source == "package-lock.json"


def test_npm_rejects_non_object_dependencies():
    packages, warnings = _run(NpmExtractor(), {"package.json": json.dumps({"dependencies": ["lodash"]})})
    assert packages == []
    assert "dependencies" in warnings[0].message


def test_python_requirements():
    content = "\n".join([
        "# pinned",
        "Flask==2.0.1",
        "requests>=2.31.0  # http",
        "-r other.txt",
        "git+https://github.com/x/y.git",
        "Django_REST_framework ==3.14.0 ; python_version >= '3.8'",
        "not a valid requirement ===",
    ])
    packages, warnings = _run(PythonExtractor(), {"requirements.txt": content})
    assert [p.key for p in packages] == [
        ("python", "flask", "2.0.1"),
        ("python", "requests", ">=2.31.0"),
        ("python", "django-rest-framework", "3.14.0"),
    ]
    assert len(warnings) == 1
    assert "invalid requirement" in warnings[0].message


def test_python_requirements_with_hashes():
    content = (
        "flask==2.0.1 \\\n"
        "    --hash=sha256:1c4c257b1892aec1398784c63791cbaa43062f1f7aeb555c4da961b20ee68f55 \\\n"
        "    --hash=sha256:a6209ca15eb63fc9385f38e452704113d679511d9574d09b2cf9183ae7d20dc9\n"
        "requests==2.31.0 --hash=sha256:58cd2187c01e70e6e26505bca751777aa9f2ee0b7f4300988b709f44e013003f\n"
        "idna==3.4 ; python_version >= '3.8' --hash=sha256:90b77e79eaa3eba6de819a0c442c0b4ceefc341a7a2ab77d7562bf49f425c5c2\n"
    )
    packages, warnings = _run(PythonExtractor(), {"requirements.txt": content})
    assert warnings == []
    assert [p.key for p in packages] == [
        ("python", "flask", "2.0.1"),
        ("python", "requests", "2.31.0"),
        ("python", "idna", "3.4"),
    ]


def test_python_pyproject():
    content = """
[project]
name = "svc"
dependencies = ["httpx==0.27.0", "pydantic>=2"]

[project.optional-dependencies]
test = ["pytest==8.0.0"]
"""
    packages, warnings = _run(PythonExtractor(), {"pyproject.toml": content})
    assert warnings == []
    assert [p.key for p in packages] == [
        ("python", "httpx", "0.27.0"),
        ("python", "pydantic", ">=2"),
        ("python", "pytest", "8.0.0"),
    ]


def test_python_broken_pyproject_is_a_warning():
    packages, warnings = _run(PythonExtractor(), {"pyproject.toml": "[project\nname="})
    assert packages == []
    assert warnings[0].source == "pyproject.toml"


def test_go_mod():
    content = """module example.com/app

go 1.21

require github.com/pkg/errors v0.9.1

require (
\tgolang.org/x/sys v0.15.0 // indirect
\tgithub.com/stretchr/testify v1.8.4
)

replace example.com/old => ../old
"""
    packages, warnings = _run(GoExtractor(), {"go.mod": content})
    assert warnings == []
    assert [p.key for p in packages] == [
        ("go", "github.com/pkg/errors", "v0.9.1"),
        ("go", "golang.org/x/sys", "v0.15.0"),
        ("go", "github.com/stretchr/testify", "v1.8.4"),
    ]
    assert packages[0].repo_url == "https://github.com/pkg/errors"
    assert packages[1].repo_url is None


def test_go_mod_unterminated_block():
    packages, warnings = _run(GoExtractor(), {"svc/go.mod": "module x\nrequire (\n\tgithub.com/a/b v1.0.0\n"})
    assert packages == []
    assert warnings[0].source == "svc/go.mod"


def test_go_module_repo_url():
    assert go_module_repo_url("github.com/owner/repo/v2/sub") == "https://github.com/owner/repo"
    assert go_module_repo_url("gopkg.in/yaml.v3") is None


def test_maven_pom_with_properties():
    content = """<?xml version="1.0"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
  <version>1.0.0</version>
  <properties><jackson.version>2.15.2</jackson.version></properties>
  <dependencyManagement>
    <dependencies>
      <dependency><groupId>ignored</groupId><artifactId>bom</artifactId><version>1</version></dependency>
    </dependencies>
  </dependencyManagement>
  <dependencies>
    <dependency>
      <groupId>com.fasterxml.jackson.core</groupId>
      <artifactId>jackson-databind</artifactId>
      <version>${jackson.version}</version>
    </dependency>
    <dependency>
      <groupId>junit</groupId>
      <artifactId>junit</artifactId>
    </dependency>
  </dependencies>
</project>
"""
    packages, warnings = _run(MavenExtractor(), {"pom.xml": content})
    assert warnings == []
    assert [p.key for p in packages] == [
        ("maven", "com.fasterxml.jackson.core:jackson-databind", "2.15.2"),
        ("maven", "junit:junit", ""),
    ]


def test_maven_malformed_pom():
    packages, warnings = _run(MavenExtractor(), {"pom.xml": "<project><dependencies>"})
    assert packages == []
    assert "invalid XML" in warnings[0].message


def test_is_manifest():
    assert is_manifest("package.json")
    assert is_manifest("requirements-dev.txt")
    assert is_manifest("go.mod")
    assert not is_manifest("README.md")
    assert not is_manifest("go.sum")


def test_one_broken_manifest_does_not_block_sibling():
    tree = {
        "services/api/requirements.txt": "flask==2.0.1\n",
        "services/worker/pom.xml": "<project><dependencies>",
        "README.md": "# hello",
    }
    warnings = []
    packages = list(extract_all(tree, on_warning=warnings.append))
    assert [p.key for p in packages] == [("python", "flask", "2.0.1")]
    assert [w.source for w in warnings] == ["services/worker/pom.xml"]


def test_extract_is_lazy():
    gen = extract_all({"requirements.txt": "flask==2.0.1\n"})
    assert next(gen).name == "flask"
    with pytest.raises(StopIteration):
        next(gen)
