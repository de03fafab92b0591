"""Bootstrap run report, written to last-bootstrap-report.json after every run."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskwing.agents.base import AgentOutput
from taskwing.log_config import get_logger
from taskwing.protocols import FileSystem, LocalFileSystem

log = get_logger("agents.report")


@dataclass
class AgentReport:
    agent: str
    service: str
    duration_ms: float
    tokens_used: int
    coverage: dict[str, Any]
    findings: dict[str, int]
    relationships: int
    error: dict[str, Any] | None = None

    @classmethod
    def from_output(cls, output: AgentOutput, service: str) -> "AgentReport":
        histogram: dict[str, int] = {}
        for finding in output.findings:
            histogram[finding.type.value] = histogram.get(finding.type.value, 0) + 1
        return cls(
            agent=output.agent,
            service=service,
            duration_ms=round(output.duration * 1000, 1),
            tokens_used=output.tokens_used,
            coverage=output.coverage.to_dict(),
            findings=dict(sorted(histogram.items())),
            relationships=len(output.relationships),
            error=output.error.to_envelope() if output.error else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "service": self.service,
            "duration_ms": self.duration_ms,
            "tokens_used": self.tokens_used,
            "coverage": self.coverage,
            "findings": self.findings,
            "relationships": self.relationships,
            "error": self.error,
        }


@dataclass
class BootstrapReport:
    """Outcome of one bootstrap run.

    Attributes:
        status: ok, preview, failed, partial (some services failed) or cancelled
        ingest: IngestReport.to_dict() when ingest ran
        failed_services: Services whose agents errored (multi-service mode)
    """

    workspace_id: str
    root: str
    kind: str
    started_at: float
    finished_at: float = 0.0
    status: str = "ok"
    preview: bool = False
    agents: list[AgentReport] = field(default_factory=list)
    ingest: dict[str, Any] | None = None
    failed_services: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    symbols_collected: int = 0
    overview_generated: bool = False
    trace_events: int = 0
    dropped_events: int = 0

    @property
    def total_tokens(self) -> int:
        return sum(a.tokens_used for a in self.agents)

    @property
    def ok(self) -> bool:
        return self.status in ("ok", "preview")

    def findings_histogram(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for agent in self.agents:
            for node_type, count in agent.findings.items():
                totals[node_type] = totals.get(node_type, 0) + count
        return dict(sorted(totals.items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "root": self.root,
            "kind": self.kind,
            "status": self.status,
            "preview": self.preview,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": round((self.finished_at - self.started_at) * 1000, 1),
            "total_tokens": self.total_tokens,
            "findings": self.findings_histogram(),
            "agents": [a.to_dict() for a in self.agents],
            "ingest": self.ingest,
            "failed_services": self.failed_services,
            "errors": self.errors,
            "symbols_collected": self.symbols_collected,
            "overview_generated": self.overview_generated,
            "trace_events": self.trace_events,
            "dropped_events": self.dropped_events,
        }

    def write(self, path: Path, fs: FileSystem | None = None) -> None:
        fs = fs or LocalFileSystem()
        fs.write_atomic(path, json.dumps(self.to_dict(), indent=2, default=str).encode("utf-8"))
        log.info(f"Bootstrap report written to {path}")
