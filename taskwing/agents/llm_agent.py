"""LLM analyzer: asks the chat model for architectural findings.

Enabled with TASKWING_USE_LLM_ANALYZER. The model sees the README, the
manifests and the file listing, and answers with JSON findings that must cite
files from the listing; citations to unknown files are dropped.
"""

import json
from typing import Any

from json_repair import loads as json_repair_loads

from taskwing.agents.base import Agent, AgentInput, AgentOutput
from taskwing.agents.deps import MANIFEST_FILES
from taskwing.agents.docs import find_readme
from taskwing.agents.streaming import EventType
from taskwing.errors import ValidationError
from taskwing.log_config import get_logger
from taskwing.models import EdgeKind, EvidenceRef, Finding, NodeType, Relationship

log = get_logger("agents.llm")

MAX_README_CHARS = 4000
MAX_MANIFEST_CHARS = 2000
MAX_LISTED_FILES = 300

ALLOWED_TYPES = {NodeType.FEATURE, NodeType.DECISION, NodeType.PATTERN, NodeType.CONSTRAINT}

PROMPT = """You are analyzing a software repository to build an architecture knowledge base.

Return JSON with two keys:
- "findings": list of objects with fields
    "type": one of "feature", "decision", "pattern", "constraint"
    "title": short name (features: component name; decisions: "Use X for Y")
    "body": 1-3 sentences
    "feature": for decisions, the feature it belongs to (optional)
    "reasoning": for decisions, why (optional)
    "files": list of file paths from the listing below that support the claim
- "relationships": list of objects with "from", "to" (finding titles) and
  "kind" (one of "depends_on", "related", "extends", "implements")

Only cite files that appear in the listing. Respond with ONLY JSON.

README ({readme_path}):
{readme}

Manifests:
{manifests}

Files:
{files}
"""


class LLMAgent(Agent):
    name = "llm"

    def analyze(self, agent_input: AgentInput, output: AgentOutput) -> None:
        if agent_input.chat is None:
            raise ValidationError(
                "LLM analyzer enabled but no chat model is configured",
                hint="Set TASKWING_CHAT_MODEL or disable TASKWING_USE_LLM_ANALYZER.",
            )
        walker = agent_input.walker
        files = walker.files()
        listed = files[:MAX_LISTED_FILES]
        for rel_path in listed:
            self.consider_file(agent_input, output, rel_path)

        readme = find_readme(walker)
        manifests = []
        for filename, _ in MANIFEST_FILES:
            if filename in files:
                text = walker.read_text(filename) or ""
                manifests.append(f"--- {filename}\n{text[:MAX_MANIFEST_CHARS]}")
        prompt = PROMPT.format(
            readme_path=readme[0] if readme else "none",
            readme=readme[1][:MAX_README_CHARS] if readme else "(no README)",
            manifests="\n".join(manifests) or "(none)",
            files="\n".join(listed),
        )

        tokens_before = getattr(agent_input.chat, "tokens_used", 0)
        self._emit(agent_input, EventType.LLM_CALL, "analyze repository", {"prompt_chars": len(prompt)})
        content = agent_input.chat.chat([{"role": "user", "content": prompt}])
        output.tokens_used += getattr(agent_input.chat, "tokens_used", 0) - tokens_before
        agent_input.cancel.raise_if_cancelled()
        output.coverage.files_analyzed = len(listed)
        output.coverage.files_skipped = len(files) - len(listed)

        data = json_repair_loads(content) if isinstance(content, str) else None
        if not isinstance(data, dict):
            log.warning("LLM analyzer returned no JSON object")
            return
        known = set(files)
        for raw in data.get("findings") or []:
            finding = self._to_finding(raw, known)
            if finding is not None:
                self.emit_finding(agent_input, output, finding)
        for raw in data.get("relationships") or []:
            rel = self._to_relationship(raw)
            if rel is not None:
                output.relationships.append(rel)

    def _to_finding(self, raw: Any, known_files: set[str]) -> Finding | None:
        if not isinstance(raw, dict) or not raw.get("title"):
            return None
        try:
            node_type = NodeType(str(raw.get("type", "")).lower())
        except ValueError:
            return None
        if node_type not in ALLOWED_TYPES:
            return None
        cited = [str(f) for f in raw.get("files") or [] if str(f) in known_files]
        metadata: dict[str, Any] = {}
        for key in ("feature", "reasoning", "tradeoffs", "one_liner"):
            if raw.get(key):
                metadata[key] = str(raw[key])
        return Finding(
            agent=self.name,
            type=node_type,
            title=str(raw["title"]).strip(),
            body=str(raw.get("body", "")).strip(),
            evidence=[EvidenceRef(f) for f in sorted(set(cited))],
            metadata=metadata,
            confidence=0.6,
        )

    @staticmethod
    def _to_relationship(raw: Any) -> Relationship | None:
        if not isinstance(raw, dict) or not raw.get("from") or not raw.get("to"):
            return None
        try:
            kind = EdgeKind(str(raw.get("kind", "related")).lower())
        except ValueError:
            kind = EdgeKind.RELATED
        return Relationship(
            from_title=str(raw["from"]),
            to_title=str(raw["to"]),
            kind=kind,
            confidence=0.6,
            evidence=json.dumps(raw, sort_keys=True)[:200],
        )
