"""Bootstrap: analyze a workspace and ingest the findings.

Pipeline:
1. Detect the workspace shape (single, monorepo, multi_repo)
2. Run the analyzers in parallel once per service, streaming progress events
   to the trace file and any extra observers
3. Namespace multi-service findings ("[service] title", metadata.service)
4. Ingest everything in one transaction, regenerate the overview, GC symbols
5. Always write last-bootstrap-report.json

Single-service runs refuse to ingest when any analyzer failed; multi-service
runs skip only the failing services.
"""

import dataclasses
import time
from collections.abc import Callable
from pathlib import Path

from json_repair import loads as json_repair_loads

from taskwing.agents import (
    Agent,
    AgentInput,
    AgentOutput,
    AgentReport,
    AgentRuntime,
    BootstrapReport,
    CodeAgent,
    DepsAgent,
    DocsAgent,
    EventType,
    FileWalker,
    LLMAgent,
    StreamEvent,
    StreamingOutput,
    StructureAgent,
    TraceWriter,
)
from taskwing.agents.deps import read_manifests
from taskwing.agents.docs import find_readme, readme_summary
from taskwing.cancellation import CancellationToken
from taskwing.config import Config
from taskwing.errors import CancelledError, ExternalServiceError, TaskWingError
from taskwing.knowledge import IngestOptions, KnowledgeService
from taskwing.log_config import get_logger
from taskwing.models import EvidenceRef, Finding, Relationship
from taskwing.workspace import WorkspaceInfo, detect

log = get_logger("bootstrap")

MAX_SHORT_DESCRIPTION = 300

OVERVIEW_PROMPT = """Summarize this project for a developer joining the team.
Return JSON with "short" (one sentence, under 200 characters) and "long" (one paragraph).

README:
{readme}

Manifest descriptions: {descriptions}
Services: {services}

Respond with ONLY JSON."""


def default_agents(config: Config) -> list[Agent]:
    agents: list[Agent] = [StructureAgent(), CodeAgent(), DepsAgent(), DocsAgent()]
    if config.use_llm_analyzer:
        agents.append(LLMAgent())
    return agents


def _prefixed(service: str, title: str) -> str:
    prefix = f"[{service}] "
    return title if title.startswith(prefix) else prefix + title


def namespace_output(
    output: AgentOutput, service: str, service_path: str
) -> tuple[list[Finding], list[Relationship]]:
    """Tag one service's findings: prefixed titles, service metadata, workspace-relative paths."""
    if service_path == ".":
        return list(output.findings), list(output.relationships)

    def rebase(ref: EvidenceRef) -> EvidenceRef:
        return dataclasses.replace(ref, file_path=f"{service_path}/{ref.file_path}")

    findings = []
    for finding in output.findings:
        metadata = dict(finding.metadata)
        metadata["service"] = service
        for key in ("feature", "component"):
            if metadata.get(key):
                metadata[key] = _prefixed(service, str(metadata[key]))
        if metadata.get("file_path"):
            metadata["file_path"] = f"{service_path}/{metadata['file_path']}"
        findings.append(
            dataclasses.replace(
                finding,
                title=_prefixed(service, finding.title),
                evidence=[rebase(e) for e in finding.evidence],
                metadata=metadata,
            )
        )
    relationships = [
        dataclasses.replace(
            rel,
            from_title=_prefixed(service, rel.from_title),
            to_title=_prefixed(service, rel.to_title),
        )
        for rel in output.relationships
    ]
    return findings, relationships


class Bootstrapper:
    """Runs the analyzers over a workspace and ingests their findings.

    Args:
        service: Knowledge service owning the memory database
        config: Worker count, stream buffer, trace/report paths
        agents_factory: Builds a fresh agent list per service (default analyzers)
    """

    def __init__(
        self,
        service: KnowledgeService,
        config: Config,
        agents_factory: Callable[[], list[Agent]] | None = None,
    ):
        self.service = service
        self.config = config
        self.agents_factory = agents_factory or (lambda: default_agents(config))
        self.runtime = AgentRuntime(config.agent_workers)

    def run(
        self,
        path: Path | str,
        preview: bool = False,
        cancel: CancellationToken | None = None,
        observers: list[Callable[[StreamEvent], None]] | None = None,
    ) -> BootstrapReport:
        cancel = cancel or CancellationToken()
        info = detect(path)
        report = BootstrapReport(
            workspace_id=info.id,
            root=str(info.root),
            kind=info.kind.value,
            started_at=time.time(),
            preview=preview,
        )
        stream = StreamingOutput(self.config.stream_buffer_size)
        trace = TraceWriter(self.config.trace_path)
        stream.subscribe(trace)
        for observer in observers or []:
            stream.subscribe(observer)

        log.info(f"Bootstrap {info.root} ({info.kind.value}, services={info.services}, preview={preview})")
        try:
            findings, relationships = self._analyze(info, stream, cancel, report)
            if report.status in ("cancelled", "failed"):
                log.warning(f"Bootstrap {report.status}; nothing ingested")
            elif preview:
                report.status = "preview"
            else:
                self._ingest(info, findings, relationships, cancel, report)
        finally:
            stream.flush()
            trace.close()
            report.trace_events = trace.count
            report.dropped_events = stream.dropped
            report.finished_at = time.time()
            report.write(self.config.report_path)
        return report

    # =========================================================================
    # Analysis
    # =========================================================================

    def _analyze(
        self,
        info: WorkspaceInfo,
        stream: StreamingOutput,
        cancel: CancellationToken,
        report: BootstrapReport,
    ) -> tuple[list[Finding], list[Relationship]]:
        findings: list[Finding] = []
        relationships: list[Relationship] = []
        for service_path in info.services:
            if cancel.cancelled:
                report.status = "cancelled"
                break
            service = info.service_name(service_path)
            stream.emit(EventType.SERVICE_STARTED, "bootstrap", service_path)
            agent_input = AgentInput(
                root=info.service_path(service_path),
                workspace_id=info.id,
                walker=FileWalker(info.service_path(service_path)),
                cancel=cancel,
                stream=stream,
                chat=self.service.chat,
            )
            outputs = self.runtime.run(self.agents_factory(), agent_input)
            report.agents.extend(AgentReport.from_output(o, service) for o in outputs)

            if any(o.cancelled for o in outputs):
                report.status = "cancelled"
                report.errors.append(cancel.reason or "cancelled")
                break
            failed = [o for o in outputs if o.failed]
            if failed:
                for o in failed:
                    report.errors.append(f"{service}/{o.agent}: {o.error.message}")
                    stream.emit(EventType.ERROR, o.agent, o.error.message, {"service": service})
                if not info.is_multi_service:
                    report.status = "failed"
                    break
                report.failed_services.append(service)
                log.warning(f"Service {service} failed; continuing with remaining services")
                continue

            for output in outputs:
                f, r = namespace_output(output, service, service_path)
                findings.extend(f)
                relationships.extend(r)
        return findings, relationships

    # =========================================================================
    # Ingest and post-processing
    # =========================================================================

    def _ingest(
        self,
        info: WorkspaceInfo,
        findings: list[Finding],
        relationships: list[Relationship],
        cancel: CancellationToken,
        report: BootstrapReport,
    ) -> None:
        try:
            self.service.register_workspace(info)
            ingest_report = self.service.ingest(
                findings,
                relationships,
                IngestOptions(workspace_id=info.id, root=info.root, cancel=cancel),
            )
        except CancelledError as e:
            report.status = "cancelled"
            report.errors.append(e.message)
            return
        except TaskWingError as e:
            report.status = "failed"
            report.errors.append(f"ingest: {e.message}")
            log.error(f"Ingest failed: {e}")
            return
        report.ingest = ingest_report.to_dict()
        report.status = "partial" if report.failed_services else "ok"

        try:
            report.overview_generated = self._generate_overview(info)
        except TaskWingError as e:
            report.errors.append(f"overview: {e.message}")
            log.warning(f"Overview generation failed: {e}")
        report.symbols_collected = len(self.service.gc_symbols(info.id))

    def _generate_overview(self, info: WorkspaceInfo) -> bool:
        """Regenerate the overview unless a human edited it."""
        existing = self.service.get_overview(info.id)
        if existing is not None and existing.last_edited_at is not None:
            log.debug("Overview was edited manually; keeping it")
            return False
        walker = FileWalker(info.root)
        readme = find_readme(walker)
        title, paragraph = readme_summary(readme[1]) if readme else ("", "")
        descriptions = [m.description for m in read_manifests(walker) if m.description]
        services = [info.service_name(s) for s in info.services if s != "."]

        short = descriptions[0] if descriptions else paragraph
        if not short:
            short = f"{title or info.name}: {info.kind.value} workspace"
        parts = [paragraph] if paragraph and paragraph != short else []
        if services:
            parts.append(f"Services: {', '.join(services)}.")
        long = "\n\n".join(parts)

        if self.config.use_llm_analyzer and self.service.chat is not None:
            try:
                short, long = self._overview_from_llm(readme[1] if readme else "", descriptions, services, short, long)
            except ExternalServiceError as e:
                log.warning(f"LLM overview unavailable, using README summary: {e}")

        self.service.set_overview(info.id, short[:MAX_SHORT_DESCRIPTION], long)
        log.info(f"Overview generated: {short[:80]}")
        return True

    def _overview_from_llm(
        self, readme: str, descriptions: list[str], services: list[str], short: str, long: str
    ) -> tuple[str, str]:
        content = self.service.chat.chat(
            [
                {
                    "role": "user",
                    "content": OVERVIEW_PROMPT.format(
                        readme=readme[:4000] or "(none)",
                        descriptions="; ".join(descriptions) or "(none)",
                        services=", ".join(services) or "(single service)",
                    ),
                }
            ]
        )
        data = json_repair_loads(content) if isinstance(content, str) else None
        if not isinstance(data, dict):
            return short, long
        return str(data.get("short") or short), str(data.get("long") or long)
