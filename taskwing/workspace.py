"""Workspace shape detection.

A workspace is one of:
- single: one project (root .git or none, no nested repos or packages)
- monorepo: root .git plus nested repositories, or a workspace config /
  service-directory convention with several packages
- multi_repo: no root .git, several independent repositories underneath

In monorepo and multi_repo mode the agents run once per service and every
finding is tagged with its service name.
"""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

from taskwing.errors import ValidationError
from taskwing.log_config import get_logger
from taskwing.models import Workspace, WorkspaceKind

log = get_logger("workspace")

MANIFEST_MARKERS = (
    "go.mod",
    "package.json",
    "pyproject.toml",
    "setup.py",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "build.gradle.kts",
    "Gemfile",
    "composer.json",
    "mix.exs",
)

LOCKFILE_MARKERS = (
    "go.sum",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "Cargo.lock",
    "Gemfile.lock",
)

WORKSPACE_CONFIGS = ("go.work", "pnpm-workspace.yaml", "lerna.json", "nx.json", "turbo.json")

SERVICE_DIR_CONVENTIONS = ("services", "apps", "packages")

SKIPPABLE_DIRS = frozenset(
    {"node_modules", "vendor", "dist", "build", "__pycache__", ".next", "coverage", "target", "venv"}
)


def is_skippable_dir(name: str) -> bool:
    return name.startswith(".") or name in SKIPPABLE_DIRS


def workspace_id_for(root: Path) -> str:
    return hashlib.sha256(str(root.resolve()).encode("utf-8")).hexdigest()[:16]


def _has_git(path: Path) -> bool:
    # .git is a file for worktrees and submodules
    return (path / ".git").exists()


def _has_marker(path: Path) -> str | None:
    for marker in (*MANIFEST_MARKERS, *LOCKFILE_MARKERS):
        if (path / marker).is_file():
            return marker
    return None


def _child_dirs(path: Path) -> list[Path]:
    try:
        return sorted(p for p in path.iterdir() if p.is_dir() and not is_skippable_dir(p.name))
    except OSError as e:
        log.warning(f"Cannot list {path}: {e}")
        return []


@dataclass
class WorkspaceInfo:
    """Detected workspace shape.

    Attributes:
        root: Absolute workspace root
        kind: single, monorepo or multi_repo
        services: Service paths relative to root ("." in single mode)
    """

    root: Path
    kind: WorkspaceKind
    services: list[str] = field(default_factory=lambda: ["."])

    @property
    def id(self) -> str:
        return workspace_id_for(self.root)

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def is_multi_service(self) -> bool:
        return self.kind != WorkspaceKind.SINGLE and len(self.services) > 1

    def service_name(self, service_path: str) -> str:
        """Short name used for tagging and title prefixes ("services/api" -> "api")."""
        return "." if service_path == "." else Path(service_path).name

    def service_path(self, service: str) -> Path:
        return self.root / service

    def to_workspace(self) -> Workspace:
        return Workspace(
            id=self.id,
            root_path=str(self.root),
            kind=self.kind,
            services=[self.service_name(s) for s in self.services],
        )


def detect(base_path: Path | str) -> WorkspaceInfo:
    """Classify the directory at ``base_path``.

    Raises:
        ValidationError: If the path is not a directory
    """
    root = Path(base_path).resolve()
    if not root.is_dir():
        raise ValidationError(f"Workspace root is not a directory: {root}")

    root_git = _has_git(root)
    nested_repos = [p.name for p in _child_dirs(root) if _has_git(p)]

    if nested_repos:
        kind = WorkspaceKind.MONOREPO if root_git else WorkspaceKind.MULTI_REPO
        info = WorkspaceInfo(root=root, kind=kind, services=nested_repos)
        log.info(f"Detected {kind.value} workspace with {len(nested_repos)} repositories")
        return info

    packages: list[str] = []
    has_workspace_config = any((root / cfg).is_file() for cfg in WORKSPACE_CONFIGS)
    for convention in SERVICE_DIR_CONVENTIONS:
        base = root / convention
        if base.is_dir():
            packages.extend(
                f"{convention}/{child.name}" for child in _child_dirs(base) if _has_marker(child)
            )
    if len(packages) >= 2 or (has_workspace_config and packages):
        log.info(f"Detected monorepo with {len(packages)} packages")
        return WorkspaceInfo(root=root, kind=WorkspaceKind.MONOREPO, services=packages)

    marker = _has_marker(root)
    log.debug(f"Detected single workspace (root marker: {marker})")
    return WorkspaceInfo(root=root, kind=WorkspaceKind.SINGLE, services=["."])
