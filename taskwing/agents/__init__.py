"""Bootstrap analyzers and their runtime.

Module Structure:
- base.py: Agent contract, input/output types
- files.py: gitignore-aware file walker
- streaming.py: bounded progress event bus, JSONL trace writer
- runtime.py: thread-pool execution
- report.py: bootstrap report
- code.py, structure.py, deps.py, docs.py, llm_agent.py: the analyzers
"""

from taskwing.agents.base import Agent, AgentInput, AgentOutput, Coverage
from taskwing.agents.code import CodeAgent
from taskwing.agents.deps import DepsAgent
from taskwing.agents.docs import DocsAgent
from taskwing.agents.files import FileWalker
from taskwing.agents.llm_agent import LLMAgent
from taskwing.agents.report import AgentReport, BootstrapReport
from taskwing.agents.runtime import AgentRuntime
from taskwing.agents.streaming import EventType, StreamEvent, StreamingOutput, TraceWriter
from taskwing.agents.structure import StructureAgent

__all__ = [
    "Agent",
    "AgentInput",
    "AgentOutput",
    "AgentReport",
    "AgentRuntime",
    "BootstrapReport",
    "CodeAgent",
    "Coverage",
    "DepsAgent",
    "DocsAgent",
    "EventType",
    "FileWalker",
    "LLMAgent",
    "StreamEvent",
    "StreamingOutput",
    "StructureAgent",
    "TraceWriter",
]
