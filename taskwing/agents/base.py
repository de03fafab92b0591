"""Agent contract for bootstrap analyzers.

An agent is a deterministic analyzer: it reads files under its input root and
produces findings and relationships. Agents never write to storage; the
bootstrap aggregates their outputs and ingests once all agents are done.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskwing.agents.files import FileWalker
from taskwing.agents.streaming import EventType, StreamingOutput
from taskwing.cancellation import CancellationToken
from taskwing.errors import CancelledError, TaskWingError
from taskwing.log_config import get_logger
from taskwing.models import Finding, Relationship
from taskwing.protocols import ChatClient

log = get_logger("agents")


@dataclass
class Coverage:
    """How much of the agent's candidate file set it actually analyzed."""

    files_considered: int = 0
    files_analyzed: int = 0
    files_skipped: int = 0

    @property
    def percent(self) -> float:
        if self.files_considered == 0:
            return 100.0
        return round(100.0 * self.files_analyzed / self.files_considered, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_considered": self.files_considered,
            "files_analyzed": self.files_analyzed,
            "files_skipped": self.files_skipped,
            "percent": self.percent,
        }


@dataclass
class AgentInput:
    """What every agent receives.

    Attributes:
        root: Directory to analyze (a service root in multi-service workspaces)
        workspace_id: Workspace the findings are for
        walker: Shared ignore-aware file walker for ``root``
        cancel: Checked between files
        stream: Progress events sink
        chat: Chat model, for agents that need one
    """

    root: Path
    workspace_id: str
    walker: FileWalker
    cancel: CancellationToken = field(default_factory=CancellationToken)
    stream: StreamingOutput | None = None
    chat: ChatClient | None = None


@dataclass
class AgentOutput:
    agent: str
    findings: list[Finding] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    coverage: Coverage = field(default_factory=Coverage)
    tokens_used: int = 0
    duration: float = 0.0
    error: TaskWingError | None = None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, CancelledError)

    @property
    def failed(self) -> bool:
        return self.error is not None and not self.cancelled


class Agent(ABC):
    """Base class for analyzers.

    Subclasses implement ``analyze`` and append to the output as they go, so a
    cancelled run still returns what was found before the signal.
    """

    name: str = "agent"

    def run(self, agent_input: AgentInput) -> AgentOutput:
        output = AgentOutput(agent=self.name)
        started = time.monotonic()
        self._emit(agent_input, EventType.AGENT_STARTED, f"{self.name} started")
        try:
            agent_input.cancel.raise_if_cancelled()
            self.analyze(agent_input, output)
        except CancelledError as e:
            output.error = e
            log.info(f"Agent {self.name} cancelled with {len(output.findings)} partial findings")
        except TaskWingError as e:
            output.error = e
            log.warning(f"Agent {self.name} failed: {e}")
        except Exception as e:
            # Analyzer bugs are reported per agent, never raised into the runtime
            output.error = TaskWingError(f"{type(e).__name__}: {e}")
            log.exception(f"Agent {self.name} crashed")
        output.duration = time.monotonic() - started
        self._emit(
            agent_input,
            EventType.AGENT_FINISHED,
            f"{self.name} finished",
            {
                "findings": len(output.findings),
                "relationships": len(output.relationships),
                "duration_ms": round(output.duration * 1000, 1),
                "error": output.error.message if output.error else None,
            },
        )
        return output

    @abstractmethod
    def analyze(self, agent_input: AgentInput, output: AgentOutput) -> None:
        """Fill ``output``; check ``agent_input.cancel`` at every file boundary."""
        pass

    def _emit(
        self,
        agent_input: AgentInput,
        event_type: EventType,
        content: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if agent_input.stream is not None:
            agent_input.stream.emit(event_type, self.name, content, metadata)

    def emit_finding(self, agent_input: AgentInput, output: AgentOutput, finding: Finding) -> None:
        output.findings.append(finding)
        self._emit(
            agent_input,
            EventType.FINDING_EMITTED,
            finding.title,
            {"type": finding.type.value},
        )

    def consider_file(self, agent_input: AgentInput, output: AgentOutput, rel_path: str) -> None:
        agent_input.cancel.raise_if_cancelled()
        output.coverage.files_considered += 1
        self._emit(agent_input, EventType.FILE_CONSIDERED, rel_path)
