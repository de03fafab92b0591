"""Parallel agent execution.

Agents run on a bounded thread pool. Each agent owns its output until it
returns; the runtime only collects them, in the order the agents were given,
so aggregation downstream is deterministic regardless of completion order.
"""

from concurrent.futures import ThreadPoolExecutor

from taskwing.agents.base import Agent, AgentInput, AgentOutput
from taskwing.log_config import get_logger, log_timing

log = get_logger("agents.runtime")


class AgentRuntime:
    """Runs a set of agents over one input with at most ``workers`` in flight."""

    def __init__(self, workers: int = 4):
        self.workers = max(1, workers)

    def run(self, agents: list[Agent], agent_input: AgentInput) -> list[AgentOutput]:
        if not agents:
            return []
        with log_timing(f"{len(agents)} agents on {agent_input.root}", log, level="info"):
            with ThreadPoolExecutor(
                max_workers=min(self.workers, len(agents)), thread_name_prefix="taskwing-agent"
            ) as pool:
                futures = [pool.submit(agent.run, agent_input) for agent in agents]
                outputs = [f.result() for f in futures]

        failed = [o.agent for o in outputs if o.failed]
        log.info(
            f"Agents done: {sum(len(o.findings) for o in outputs)} findings, failed={failed or 'none'}"
        )
        return outputs
