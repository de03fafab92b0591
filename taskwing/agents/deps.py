"""Dependency analyzer: manifests -> technology Decisions and version Constraints.

Each runtime dependency becomes a Decision grouped under the "Technology
Stack" feature; toolchain requirements (requires-python, go directive,
engines.node, rust-version) become Constraints.
"""

import json
import re
import tomllib
from dataclasses import dataclass, field

from taskwing.agents.base import Agent, AgentInput, AgentOutput
from taskwing.agents.files import FileWalker
from taskwing.log_config import get_logger
from taskwing.models import EvidenceRef, Finding, NodeType

log = get_logger("agents.deps")

# Well-known libraries and the role they play, used for decision summaries
KNOWN_ROLES: dict[str, str] = {
    "fastapi": "web framework",
    "django": "web framework",
    "flask": "web framework",
    "express": "web framework",
    "next": "web framework",
    "github.com/gin-gonic/gin": "web framework",
    "github.com/labstack/echo/v4": "web framework",
    "actix-web": "web framework",
    "axum": "web framework",
    "react": "UI library",
    "vue": "UI library",
    "sqlalchemy": "ORM",
    "prisma": "ORM",
    "gorm.io/gorm": "ORM",
    "diesel": "ORM",
    "pydantic": "data validation",
    "zod": "data validation",
    "tokio": "async runtime",
    "serde": "serialization",
    "github.com/spf13/cobra": "CLI framework",
    "typer": "CLI framework",
    "click": "CLI framework",
    "clap": "CLI framework",
    "loguru": "logging",
    "litellm": "LLM client",
    "openai": "LLM client",
    "numpy": "numerical computing",
    "pandas": "dataframes",
    "torch": "machine learning",
    "typescript": "language",
}

_PEP508_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._\-]*)\s*(\[[^\]]*\])?\s*(.*?)\s*(;.*)?$")


@dataclass
class Dependency:
    name: str
    version: str = ""
    line: int | None = None


@dataclass
class ToolchainRequirement:
    title: str
    description: str
    line: int | None = None


@dataclass
class ManifestInfo:
    """What one manifest declares.

    Attributes:
        file: Manifest path relative to the analyzed root
        ecosystem: python, javascript, rust or go
        name: Declared project name, if any
        description: Declared description, if any
        module_path: Full import path of a Go module
    """

    file: str
    ecosystem: str
    name: str | None = None
    description: str | None = None
    module_path: str | None = None
    dependencies: list[Dependency] = field(default_factory=list)
    requirements: list[ToolchainRequirement] = field(default_factory=list)


def _line_of(text: str, needle: str) -> int | None:
    """First 1-based line mentioning ``needle`` as a quoted or bare token."""
    pattern = re.compile(r"(?<![\w.\-/])" + re.escape(needle) + r"(?![\w\-])")
    for i, line in enumerate(text.splitlines(), start=1):
        if pattern.search(line):
            return i
    return None


def _parse_pep508(spec: str) -> tuple[str, str] | None:
    m = _PEP508_RE.match(spec)
    if not m:
        return None
    return m.group(1), m.group(3).strip()


# =============================================================================
# Manifest parsers
# =============================================================================


def _parse_pyproject(path: str, text: str) -> ManifestInfo:
    data = tomllib.loads(text)
    project = data.get("project", {})
    info = ManifestInfo(
        file=path,
        ecosystem="python",
        name=project.get("name"),
        description=project.get("description"),
    )
    for spec in project.get("dependencies", []):
        parsed = _parse_pep508(str(spec))
        if parsed:
            info.dependencies.append(Dependency(parsed[0], parsed[1], _line_of(text, parsed[0])))
    poetry = data.get("tool", {}).get("poetry", {})
    if poetry:
        info.name = info.name or poetry.get("name")
        info.description = info.description or poetry.get("description")
        for name, version in poetry.get("dependencies", {}).items():
            if name.lower() == "python":
                info.requirements.append(
                    ToolchainRequirement(f"Python {version}", f"Poetry requires Python {version}.", _line_of(text, name))
                )
                continue
            if isinstance(version, dict):
                version = version.get("version", "")
            info.dependencies.append(Dependency(name, str(version), _line_of(text, name)))
    requires = project.get("requires-python")
    if requires:
        info.requirements.append(
            ToolchainRequirement(
                f"Python {requires}",
                f"The project declares requires-python = \"{requires}\".",
                _line_of(text, "requires-python"),
            )
        )
    return info


def _parse_requirements(path: str, text: str) -> ManifestInfo:
    info = ManifestInfo(file=path, ecosystem="python")
    for i, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("-"):
            continue
        parsed = _parse_pep508(line)
        if parsed:
            info.dependencies.append(Dependency(parsed[0], parsed[1], i))
    return info


def _parse_package_json(path: str, text: str) -> ManifestInfo:
    data = json.loads(text)
    info = ManifestInfo(
        file=path,
        ecosystem="javascript",
        name=data.get("name"),
        description=data.get("description"),
    )
    for name, version in (data.get("dependencies") or {}).items():
        info.dependencies.append(Dependency(name, str(version), _line_of(text, f'"{name}"') or _line_of(text, name)))
    engines = data.get("engines") or {}
    for engine, version in sorted(engines.items()):
        info.requirements.append(
            ToolchainRequirement(
                f"{engine.capitalize()} {version}",
                f"package.json engines require {engine} {version}.",
                _line_of(text, f'"{engine}"'),
            )
        )
    return info


def _parse_cargo(path: str, text: str) -> ManifestInfo:
    data = tomllib.loads(text)
    package = data.get("package", {})
    info = ManifestInfo(
        file=path,
        ecosystem="rust",
        name=package.get("name"),
        description=package.get("description"),
    )
    for name, spec in (data.get("dependencies") or {}).items():
        version = spec.get("version", "") if isinstance(spec, dict) else str(spec)
        info.dependencies.append(Dependency(name, version, _line_of(text, name)))
    rust_version = package.get("rust-version")
    if rust_version:
        info.requirements.append(
            ToolchainRequirement(
                f"Rust {rust_version}",
                f"Cargo.toml sets rust-version = \"{rust_version}\".",
                _line_of(text, "rust-version"),
            )
        )
    return info


_GO_REQUIRE_RE = re.compile(r"^\s*(?:require\s+)?([^\s()]+\.[^\s()]+)\s+(v[^\s]+)(\s*//\s*indirect)?\s*$")


def _parse_go_mod(path: str, text: str) -> ManifestInfo:
    info = ManifestInfo(file=path, ecosystem="go")
    in_require = False
    for i, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if line.startswith("module "):
            module = line.split()[1]
            info.name = module.split("/")[-1]
            info.module_path = module
        elif line.startswith("go ") and len(line.split()) == 2:
            version = line.split()[1]
            info.requirements.append(
                ToolchainRequirement(f"Go {version}", f"go.mod declares go {version}.", i)
            )
        elif line.startswith("require ("):
            in_require = True
        elif in_require and line == ")":
            in_require = False
        elif in_require or line.startswith("require "):
            m = _GO_REQUIRE_RE.match(line)
            if m and not m.group(3):
                info.dependencies.append(Dependency(m.group(1), m.group(2), i))
    return info


MANIFEST_FILES = [
    ("pyproject.toml", _parse_pyproject),
    ("requirements.txt", _parse_requirements),
    ("package.json", _parse_package_json),
    ("Cargo.toml", _parse_cargo),
    ("go.mod", _parse_go_mod),
]


def read_manifests(walker: FileWalker) -> list[ManifestInfo]:
    """Parse every known manifest at the walker's root."""
    present = set(walker.files())
    found: list[ManifestInfo] = []
    for filename, parser in MANIFEST_FILES:
        if filename not in present:
            continue
        text = walker.read_text(filename)
        if text is None:
            continue
        try:
            info = parser(filename, text)
        except ValueError as e:
            log.warning(f"Failed to parse {filename}: {e}")
            continue
        log.debug(f"{filename}: {len(info.dependencies)} dependencies")
        found.append(info)
    return found


# =============================================================================
# Agent
# =============================================================================


class DepsAgent(Agent):
    name = "deps"

    def analyze(self, agent_input: AgentInput, output: AgentOutput) -> None:
        manifests = read_manifests(agent_input.walker)
        present = set(agent_input.walker.files())
        for filename, _ in MANIFEST_FILES:
            if filename in present:
                self.consider_file(agent_input, output, filename)
        output.coverage.files_analyzed = len(manifests)
        output.coverage.files_skipped = output.coverage.files_considered - len(manifests)

        seen: set[str] = set()
        for manifest in manifests:
            agent_input.cancel.raise_if_cancelled()
            for dep in manifest.dependencies:
                if dep.name.lower() in seen:
                    continue
                seen.add(dep.name.lower())
                self.emit_finding(agent_input, output, self._dependency_finding(manifest, dep))
            for req in manifest.requirements:
                self.emit_finding(
                    agent_input,
                    output,
                    Finding(
                        agent=self.name,
                        type=NodeType.CONSTRAINT,
                        title=f"Requires {req.title}",
                        body=req.description,
                        evidence=[EvidenceRef(manifest.file, req.line, req.line)] if req.line else [EvidenceRef(manifest.file)],
                        metadata={"scope": "toolchain", "tags": ["toolchain", manifest.ecosystem]},
                        confidence=0.95,
                    ),
                )

    def _dependency_finding(self, manifest: ManifestInfo, dep: Dependency) -> Finding:
        role = KNOWN_ROLES.get(dep.name.lower())
        version = f" {dep.version}" if dep.version else ""
        body = f"{dep.name}{version} is a runtime dependency declared in {manifest.file}."
        if role:
            body = f"{dep.name} is used as the {role}. " + body
        evidence = [EvidenceRef(manifest.file, dep.line, dep.line)] if dep.line else [EvidenceRef(manifest.file)]
        metadata = {"tags": ["dependency", manifest.ecosystem], "version": dep.version}
        if role:
            metadata["one_liner"] = f"{dep.name} ({role})"
        return Finding(
            agent=self.name,
            type=NodeType.DECISION,
            title=f"Use {dep.name}",
            body=body,
            evidence=evidence,
            metadata=metadata,
            confidence=0.9,
        )
