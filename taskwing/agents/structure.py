"""Structure analyzer: source packages -> Features, imports -> depends_on.

A feature is a directory of source code directly under the root, or under a
conventional container (src/, lib/, internal/, pkg/, cmd/). When the whole
project is one package, its sub-packages become the features instead.
"""

import ast
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from taskwing.agents.base import Agent, AgentInput, AgentOutput
from taskwing.agents.deps import read_manifests
from taskwing.agents.files import language_for
from taskwing.log_config import get_logger
from taskwing.models import EdgeKind, EvidenceRef, Finding, NodeType, Relationship

log = get_logger("agents.structure")

CONTAINER_DIRS = frozenset({"src", "lib", "internal", "pkg", "cmd"})
NON_FEATURE_DIRS = frozenset(
    {"test", "tests", "testing", "docs", "doc", "examples", "example", "scripts", "benchmarks", "e2e", "fixtures"}
)
ENTRY_FILES = ("__init__.py", "index.ts", "index.js", "mod.rs", "lib.rs", "main.rs", "doc.go", "main.go")

_GO_IMPORT_RE = re.compile(r'^\s*(?:import\s+)?(?:\w+\s+)?"([^"]+)"', re.MULTILINE)
_JS_IMPORT_RE = re.compile(r"""(?:from\s+|require\(\s*|import\s+)['"](\.{1,2}/[^'"]+)['"]""")


@dataclass
class PackageDir:
    path: str
    files: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def python_module(self) -> str:
        parts = [p for p in PurePosixPath(self.path).parts if p not in ("src",)]
        return ".".join(parts)


def _group_by_dir(files: list[str], depth: int) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for f in files:
        parts = PurePosixPath(f).parts
        if len(parts) <= depth:
            continue
        key = "/".join(parts[:depth])
        groups.setdefault(key, []).append(f)
    return groups


def discover_packages(source_files: list[str]) -> list[PackageDir]:
    """Directories that count as features, sorted by path."""
    packages: dict[str, PackageDir] = {}
    for top, files in _group_by_dir(source_files, 1).items():
        if top.lower() in NON_FEATURE_DIRS:
            continue
        if top in CONTAINER_DIRS:
            for sub, sub_files in _group_by_dir(files, 2).items():
                if PurePosixPath(sub).name.lower() not in NON_FEATURE_DIRS:
                    packages[sub] = PackageDir(sub, sub_files)
        else:
            packages[top] = PackageDir(top, files)

    if len(packages) == 1:
        only = next(iter(packages.values()))
        depth = len(PurePosixPath(only.path).parts) + 1
        subs = {
            k: v
            for k, v in _group_by_dir(only.files, depth).items()
            if PurePosixPath(k).name.lower() not in NON_FEATURE_DIRS
        }
        if len(subs) >= 2:
            packages = {k: PackageDir(k, v) for k, v in subs.items()}
    return [packages[k] for k in sorted(packages)]


def _entry_file(package: PackageDir) -> str:
    direct = {PurePosixPath(f).name: f for f in package.files if PurePosixPath(f).parent.as_posix() == package.path}
    for name in ENTRY_FILES:
        if name in direct:
            return direct[name]
    return sorted(package.files)[0]


def _python_imports(source: str, rel_path: str) -> set[str]:
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError):
        return set()
    package_parts = [p for p in PurePosixPath(rel_path).parent.parts if p != "src"]
    modules: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            modules.update(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                base = package_parts[: len(package_parts) - (node.level - 1)]
                mod = ".".join(base + ([node.module] if node.module else []))
                modules.add(mod)
                modules.update(f"{mod}.{alias.name}" for alias in node.names)
            elif node.module:
                modules.add(node.module)
    return modules


class StructureAgent(Agent):
    name = "structure"

    def analyze(self, agent_input: AgentInput, output: AgentOutput) -> None:
        walker = agent_input.walker
        source_files = walker.source_files()
        packages = discover_packages(source_files)
        go_module = next(
            (m.module_path for m in read_manifests(walker) if m.module_path), None
        )
        log.debug(f"Discovered {len(packages)} packages under {agent_input.root}")

        deps: dict[str, set[str]] = {}
        for package in packages:
            entry = _entry_file(package)
            languages = sorted({language_for(f) or "" for f in package.files} - {""})
            for rel_path in package.files:
                self.consider_file(agent_input, output, rel_path)
                source = walker.read_text(rel_path)
                if source is None:
                    output.coverage.files_skipped += 1
                    continue
                output.coverage.files_analyzed += 1
                for target in self._imported_packages(source, rel_path, packages, go_module):
                    if target != package.path:
                        deps.setdefault(package.path, set()).add(target)

            self.emit_finding(
                agent_input,
                output,
                Finding(
                    agent=self.name,
                    type=NodeType.FEATURE,
                    title=package.name,
                    body=self._describe(package, languages),
                    evidence=[EvidenceRef(entry)],
                    metadata={
                        "one_liner": self._one_liner(walker.read_text(entry), package, languages),
                        "path": package.path,
                        "tags": languages,
                    },
                    confidence=0.8,
                ),
            )

        names = {p.path: p.name for p in packages}
        for source_path in sorted(deps):
            for target_path in sorted(deps[source_path]):
                output.relationships.append(
                    Relationship(
                        from_title=names[source_path],
                        to_title=names[target_path],
                        kind=EdgeKind.DEPENDS_ON,
                        confidence=0.8,
                        evidence=f"imports from {target_path}",
                        from_type=NodeType.FEATURE,
                        to_type=NodeType.FEATURE,
                    )
                )

    @staticmethod
    def _one_liner(entry_source: str | None, package: PackageDir, languages: list[str]) -> str:
        if entry_source and package.files and language_for(package.files[0]) == "python":
            try:
                doc = ast.get_docstring(ast.parse(entry_source))
            except (SyntaxError, ValueError):
                doc = None
            if doc:
                return doc.strip().splitlines()[0]
        lang = "/".join(languages) or "source"
        return f"{lang} package at {package.path}"

    @staticmethod
    def _describe(package: PackageDir, languages: list[str]) -> str:
        modules = sorted({PurePosixPath(f).stem for f in package.files})[:15]
        return (
            f"{package.name} ({package.path}) holds {len(package.files)} {'/'.join(languages) or 'source'} "
            f"files. Modules: {', '.join(modules)}."
        )

    @staticmethod
    def _imported_packages(
        source: str, rel_path: str, packages: list[PackageDir], go_module: str | None
    ) -> set[str]:
        language = language_for(rel_path)
        found: set[str] = set()
        if language == "python":
            for module in _python_imports(source, rel_path):
                for package in packages:
                    prefix = package.python_module
                    if module == prefix or module.startswith(prefix + "."):
                        found.add(package.path)
        elif language == "go" and go_module:
            for imp in _GO_IMPORT_RE.findall(source):
                if not imp.startswith(go_module + "/"):
                    continue
                local = imp[len(go_module) + 1:]
                for package in packages:
                    if local == package.path or local.startswith(package.path + "/"):
                        found.add(package.path)
        elif language in ("javascript", "typescript"):
            base = posixpath.dirname(rel_path)
            for imp in _JS_IMPORT_RE.findall(source):
                target = posixpath.normpath(posixpath.join(base, imp))
                for package in packages:
                    if target == package.path or target.startswith(package.path + "/"):
                        found.add(package.path)
        return found
