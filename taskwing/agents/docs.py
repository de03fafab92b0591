"""Documentation analyzer: README and ADR markdown.

- README sections titled like "Features" or "Components" yield one Feature per
  bullet; sections titled like "Patterns" or "Conventions" yield Patterns.
- Architecture decision records (files under an adr/ or decisions/ directory)
  yield one Decision each, built from their Context/Decision/Consequences.
"""

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from taskwing.agents.base import Agent, AgentInput, AgentOutput
from taskwing.agents.files import FileWalker
from taskwing.log_config import get_logger
from taskwing.models import EvidenceRef, Finding, NodeType

log = get_logger("agents.docs")

README_FILES = ("README.md", "README.markdown", "README.rst", "README.txt", "README")
ADR_DIRS = frozenset({"adr", "adrs", "decisions", "architecture-decisions"})

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_BULLET_RE = re.compile(
    r"^\s*[-*+]\s+(?:\*\*(?P<bold>[^*]+)\*\*|`(?P<code>[^`]+)`|(?P<plain>[^:–—]{2,60}?))"
    r"\s*(?:(?::|\s-|–|—)\s*(?P<desc>.+))?$"
)
_ADR_PREFIX_RE = re.compile(r"^(?:ADR[-\s]?\d+|\d+)[:.\s-]*\s*", re.IGNORECASE)

FEATURE_HEADINGS = re.compile(r"\b(features?|capabilities|components|modules|services)\b", re.IGNORECASE)
PATTERN_HEADINGS = re.compile(r"\b(patterns?|conventions|guidelines|principles)\b", re.IGNORECASE)


@dataclass
class Section:
    level: int
    heading: str
    line: int
    body: list[tuple[int, str]] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(line for _, line in self.body).strip()

    @property
    def end_line(self) -> int:
        return self.body[-1][0] if self.body else self.line


def parse_sections(text: str) -> list[Section]:
    """Split markdown into heading sections; fenced code never starts a heading."""
    sections: list[Section] = [Section(level=0, heading="", line=1)]
    in_fence = False
    for i, line in enumerate(text.splitlines(), start=1):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        m = None if in_fence else _HEADING_RE.match(line)
        if m:
            sections.append(Section(level=len(m.group(1)), heading=m.group(2).strip(), line=i))
        else:
            sections[-1].body.append((i, line))
    return sections


def parse_bullet(line: str) -> tuple[str, str] | None:
    m = _BULLET_RE.match(line)
    if not m:
        return None
    name = (m.group("bold") or m.group("code") or m.group("plain") or "").strip().rstrip(":").strip()
    desc = (m.group("desc") or "").strip()
    if not name or (not desc and len(name.split()) > 6):
        return None
    return name, desc


def find_readme(walker: FileWalker) -> tuple[str, str] | None:
    """(path, text) of the root README, if any."""
    present = set(walker.files())
    for name in README_FILES:
        if name in present:
            text = walker.read_text(name)
            if text:
                return name, text
    return None


def readme_summary(text: str) -> tuple[str, str]:
    """(title, first paragraph) of a README, skipping badges and HTML."""
    title = ""
    paragraph: list[str] = []
    for section in parse_sections(text):
        if not title and section.level == 1:
            title = section.heading
        for _, line in section.body:
            stripped = line.strip()
            if not stripped:
                if paragraph:
                    return title, " ".join(paragraph)
                continue
            if stripped.startswith(("[![", "![", "<", "---", "===")):
                continue
            paragraph.append(stripped)
        if paragraph:
            return title, " ".join(paragraph)
    return title, " ".join(paragraph)


def is_adr(rel_path: str) -> bool:
    path = PurePosixPath(rel_path)
    return path.suffix.lower() == ".md" and any(p.lower() in ADR_DIRS for p in path.parts[:-1])


class DocsAgent(Agent):
    name = "doc"

    def analyze(self, agent_input: AgentInput, output: AgentOutput) -> None:
        walker = agent_input.walker
        readme = find_readme(walker)
        if readme is not None:
            path, text = readme
            self.consider_file(agent_input, output, path)
            self._analyze_readme(agent_input, output, path, text)
            output.coverage.files_analyzed += 1

        for rel_path in walker.files():
            if not is_adr(rel_path):
                continue
            self.consider_file(agent_input, output, rel_path)
            text = walker.read_text(rel_path)
            finding = self._adr_finding(rel_path, text) if text else None
            if finding is None:
                output.coverage.files_skipped += 1
                continue
            output.coverage.files_analyzed += 1
            self.emit_finding(agent_input, output, finding)

    def _analyze_readme(self, agent_input: AgentInput, output: AgentOutput, path: str, text: str) -> None:
        for section in parse_sections(text):
            if section.level < 2:
                continue
            if FEATURE_HEADINGS.search(section.heading):
                node_type = NodeType.FEATURE
            elif PATTERN_HEADINGS.search(section.heading):
                node_type = NodeType.PATTERN
            else:
                continue
            for line_no, line in section.body:
                parsed = parse_bullet(line)
                if parsed is None:
                    continue
                name, desc = parsed
                metadata = {"one_liner": desc} if node_type == NodeType.FEATURE else {"solution": desc}
                metadata["section"] = section.heading
                self.emit_finding(
                    agent_input,
                    output,
                    Finding(
                        agent=self.name,
                        type=node_type,
                        title=name,
                        body=desc,
                        evidence=[EvidenceRef(path, line_no, line_no)],
                        metadata=metadata,
                        confidence=0.7,
                    ),
                )

    def _adr_finding(self, rel_path: str, text: str) -> Finding | None:
        sections = parse_sections(text)
        title_section = next((s for s in sections if s.level == 1), None)
        if title_section is None:
            return None
        title = _ADR_PREFIX_RE.sub("", title_section.heading).strip() or title_section.heading
        by_name = {s.heading.lower(): s for s in sections if s.level >= 2}
        context = by_name.get("context") or by_name.get("context and problem statement")
        decision = by_name.get("decision") or by_name.get("decision outcome")
        consequences = by_name.get("consequences")
        status = by_name.get("status")
        status_text = status.text.lower() if status else ""

        summary = decision.text if decision else title_section.text
        end = max(s.end_line for s in sections)
        metadata = {
            "reasoning": context.text if context else "",
            "tradeoffs": consequences.text if consequences else "",
            "adr": rel_path,
        }
        if status_text:
            metadata["adr_status"] = status_text.splitlines()[0].strip()
        confidence = 0.5 if any(w in status_text for w in ("superseded", "deprecated", "rejected")) else 0.85
        log.debug(f"ADR {rel_path}: {title}")
        return Finding(
            agent=self.name,
            type=NodeType.DECISION,
            title=title,
            body=summary,
            evidence=[EvidenceRef(rel_path, 1, end)],
            metadata=metadata,
            confidence=confidence,
        )
