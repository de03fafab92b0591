"""Evidence verification for findings.

An EvidenceRef points at a line range in a workspace file. Its snippet hash is
the sha256 of the referenced lines after normalization (trailing whitespace
stripped, leading and trailing blank lines removed), so reformatting that does
not change the lines' content keeps the hash stable.
"""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

from taskwing.log_config import get_logger
from taskwing.models import EvidenceRef, VerificationStatus
from taskwing.protocols import FileSystem, LocalFileSystem

log = get_logger("knowledge.verification")

# Confidence multiplier applied when a snippet hash no longer matches
MISMATCH_PENALTY = 0.5


def normalize_lines(lines: list[str]) -> str:
    stripped = [line.rstrip() for line in lines]
    while stripped and not stripped[0]:
        stripped.pop(0)
    while stripped and not stripped[-1]:
        stripped.pop()
    return "\n".join(stripped)


def snippet_hash(text: str, start_line: int | None = None, end_line: int | None = None) -> str:
    """Hash of lines ``start_line..end_line`` (1-based, inclusive) of ``text``."""
    lines = text.splitlines()
    if start_line is not None:
        first = max(start_line, 1) - 1
        last = end_line if end_line is not None else start_line
        lines = lines[first:last]
    return hashlib.sha256(normalize_lines(lines).encode("utf-8")).hexdigest()


@dataclass
class VerificationOutcome:
    """Result of checking one node's evidence.

    Attributes:
        status: verified, unverified (any hash mismatch) or skipped (nothing to check)
        confidence: Input confidence, penalized on mismatch
        evidence: Refs that still point at existing files, hashes filled in
        mismatched: Refs whose hash differed from the file
        missing: Refs dropped because the file is gone
    """

    status: VerificationStatus
    confidence: float
    evidence: list[EvidenceRef] = field(default_factory=list)
    mismatched: list[EvidenceRef] = field(default_factory=list)
    missing: list[EvidenceRef] = field(default_factory=list)


class EvidenceVerifier:
    """Checks EvidenceRefs against the files under a workspace root."""

    def __init__(self, root: Path, fs: FileSystem | None = None):
        self.root = Path(root).resolve()
        self.fs = fs or LocalFileSystem()
        self._cache: dict[Path, str | None] = {}

    def _resolve(self, file_path: str) -> Path | None:
        candidate = (self.root / file_path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            return None
        return candidate

    def _read(self, path: Path) -> str | None:
        if path not in self._cache:
            if not self.fs.exists(path):
                self._cache[path] = None
            else:
                try:
                    self._cache[path] = self.fs.read_bytes(path).decode("utf-8", errors="replace")
                except (IsADirectoryError, PermissionError) as e:
                    log.debug(f"Unreadable evidence file {path}: {e}")
                    self._cache[path] = None
        return self._cache[path]

    def verify(self, evidence: list[EvidenceRef], confidence: float = 1.0) -> VerificationOutcome:
        if not evidence:
            return VerificationOutcome(status=VerificationStatus.SKIPPED, confidence=confidence)

        outcome = VerificationOutcome(status=VerificationStatus.VERIFIED, confidence=confidence)
        for ref in evidence:
            path = self._resolve(ref.file_path)
            text = self._read(path) if path is not None else None
            if text is None:
                outcome.missing.append(ref)
                continue
            current = snippet_hash(text, ref.start_line, ref.end_line)
            if ref.snippet_hash is None:
                outcome.evidence.append(
                    EvidenceRef(ref.file_path, ref.start_line, ref.end_line, snippet_hash=current)
                )
            elif ref.snippet_hash == current:
                outcome.evidence.append(ref)
            else:
                outcome.mismatched.append(ref)
                outcome.evidence.append(ref)

        if outcome.mismatched:
            outcome.status = VerificationStatus.UNVERIFIED
            outcome.confidence = round(confidence * MISMATCH_PENALTY, 4)
        elif not outcome.evidence:
            outcome.status = VerificationStatus.SKIPPED
        if outcome.missing:
            log.debug(f"Dropped {len(outcome.missing)} evidence ref(s) to missing files")
        return outcome

    def clear_cache(self) -> None:
        self._cache.clear()
