"""Ignore-aware file walking shared by the analyzers.

Exclusion combines a built-in gitignore-style pattern list with the project's
own .gitignore, matched with pathspec.
"""

import os
import threading
from pathlib import Path

import pathspec

from taskwing.log_config import get_logger

log = get_logger("agents.files")

# Built-in exclusion patterns (gitignore syntax)
_BUILTIN_IGNORE_PATTERNS = """
# Version control
.git/
.svn/
.hg/

# TaskWing memory
.taskwing/

# Python environments and caches
*venv*/
.venv/
__pycache__/
*.py[cod]
.pytest_cache/
.mypy_cache/
.ruff_cache/
.tox/
*.egg-info/
dist/
build/
**/site-packages/

# Node.js
node_modules/
.npm/
.yarn/
.pnpm-store/
.next/
.nuxt/

# Go / Rust / JVM
vendor/
target/
out/
bin/
obj/

# IDE/Editor
.idea/
.vscode/
*.swp
*~

# Coverage
coverage/
.coverage
htmlcov/

# Misc
.DS_Store
*.log
*.min.js
"""

# Maximum size of a file the analyzers will read
MAX_FILE_BYTES = 1_000_000

LANGUAGE_MAP: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".go": "go",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".rs": "rust",
}


def language_for(path: str | Path) -> str | None:
    return LANGUAGE_MAP.get(Path(path).suffix.lower())


def _load_gitignore(root: Path) -> list[str]:
    gitignore_path = root / ".gitignore"
    if not gitignore_path.is_file():
        return []
    try:
        return gitignore_path.read_text(encoding="utf-8", errors="ignore").splitlines()
    except OSError as e:
        log.warning(f"Failed to read .gitignore: {e}")
        return []


def build_pathspec(root: Path) -> pathspec.PathSpec:
    """Built-in patterns plus the project's .gitignore."""
    all_patterns = []
    for line in _BUILTIN_IGNORE_PATTERNS.splitlines() + _load_gitignore(root):
        line = line.strip()
        if line and not line.startswith("#"):
            all_patterns.append(line)
    spec = pathspec.PathSpec.from_lines("gitwildmatch", all_patterns)
    log.debug(f"Built pathspec with {len(all_patterns)} patterns for {root}")
    return spec


class FileWalker:
    """Lists and reads the analyzable files under a root.

    The listing is computed once and shared by all agents of a run; reads are
    cached so several agents looking at the same manifest hit the disk once.
    Paths are POSIX-style and relative to ``root``.
    """

    def __init__(self, root: Path, max_file_bytes: int = MAX_FILE_BYTES):
        self.root = Path(root)
        self.max_file_bytes = max_file_bytes
        self._spec = build_pathspec(self.root)
        self._files: list[str] | None = None
        self._cache: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def is_excluded(self, rel_path: str, is_dir: bool = False) -> bool:
        return self._spec.match_file(rel_path + "/" if is_dir else rel_path)

    def files(self) -> list[str]:
        """All non-excluded files, sorted."""
        with self._lock:
            if self._files is None:
                self._files = self._walk()
            return list(self._files)

    def _walk(self) -> list[str]:
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            prefix = "" if rel_dir == "." else rel_dir + "/"
            # Prune in place so os.walk never descends into excluded dirs
            dirnames[:] = sorted(d for d in dirnames if not self.is_excluded(prefix + d, is_dir=True))
            for name in filenames:
                rel = prefix + name
                if not self.is_excluded(rel):
                    found.append(rel)
        found.sort()
        log.debug(f"Walked {self.root}: {len(found)} files")
        return found

    def files_with_suffix(self, *suffixes: str) -> list[str]:
        wanted = {s.lower() for s in suffixes}
        return [f for f in self.files() if Path(f).suffix.lower() in wanted]

    def source_files(self) -> list[str]:
        return [f for f in self.files() if language_for(f) is not None]

    def read_text(self, rel_path: str) -> str | None:
        """File contents, or None if unreadable, binary or over the size cap."""
        with self._lock:
            if rel_path in self._cache:
                return self._cache[rel_path]
        path = self.root / rel_path
        text: str | None = None
        try:
            if path.stat().st_size <= self.max_file_bytes:
                raw = path.read_bytes()
                if b"\x00" not in raw[:8192]:
                    text = raw.decode("utf-8", errors="replace")
        except OSError as e:
            log.debug(f"Cannot read {path}: {e}")
        with self._lock:
            self._cache[rel_path] = text
        return text
