"""Task context rendering for executors.

Assembles the markdown block injected into an executor's conversation when
the hook continues a session: the task, plan progress, acceptance criteria,
dependency statuses and the most relevant architecture memory.
"""

from taskwing.errors import TaskWingError
from taskwing.knowledge import KnowledgeService, SearchOptions
from taskwing.log_config import get_logger
from taskwing.models import Plan, SearchResult, Task, TaskStatus
from taskwing.planning.engine import PlanEngine

log = get_logger("planning.presentation")

CONTEXT_CONTENT_CHARS = 300
DEFAULT_RECALL_LIMIT = 5


def truncate(text: str, limit: int = CONTEXT_CONTENT_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _checkbox(status: TaskStatus) -> str:
    return "[x]" if status == TaskStatus.COMPLETED else "[ ]"


class TaskContextBuilder:
    """Renders the context for one task.

    Args:
        engine: Plan engine for progress and dependency lookups
        knowledge: Memory to recall architecture context from (optional)
        recall_limit: Number of memory results to include
    """

    def __init__(
        self,
        engine: PlanEngine,
        knowledge: KnowledgeService | None = None,
        recall_limit: int = DEFAULT_RECALL_LIMIT,
    ):
        self.engine = engine
        self.knowledge = knowledge
        self.recall_limit = recall_limit

    def build(self, task: Task, plan: Plan) -> str:
        progress = self.engine.progress(plan.id)
        lines = [
            f"## Current Task: {task.title}",
            "",
            f"Task ID: {task.id}",
            f"Plan: {plan.goal}",
            f"Progress: {progress.completed}/{progress.total} tasks completed ({progress.percent:.0f}%)",
            f"Priority: {task.priority} | Complexity: {task.complexity.value}",
        ]
        if task.description:
            lines += ["", "### Description", task.description.strip()]

        if task.acceptance_criteria:
            lines += ["", "### Acceptance Criteria"]
            lines += [f"- [ ] {c}" for c in task.acceptance_criteria]

        if task.dependencies:
            lines += ["", "### Dependencies"]
            for dep_id in sorted(task.dependencies):
                dep = self.engine.db.plans.get_task(dep_id)
                if dep is None:
                    lines.append(f"- [ ] (missing task {dep_id})")
                else:
                    lines.append(f"- {_checkbox(dep.status)} {dep.title} ({dep.status.value})")

        recalled = self.recall(task, plan)
        if recalled:
            lines += ["", "### Relevant Architecture Context"]
            for result in recalled:
                summary = truncate(result.summary or result.snippet or "")
                entry = f"- **{result.title}** ({result.type.value})"
                lines.append(f"{entry}: {summary}" if summary else entry)

        lines += [
            "",
            "When done, mark the task complete with "
            f"`taskwing task status {task.id} completed`.",
        ]
        return "\n".join(lines)

    def recall(self, task: Task, plan: Plan) -> list[SearchResult]:
        """Top memory results for the task, deduplicated by node and title."""
        if self.knowledge is None or self.recall_limit <= 0:
            return []
        query = " ".join(p for p in (task.title, task.description) if p).strip()
        if not query:
            return []
        try:
            response = self.knowledge.search(
                query,
                SearchOptions(limit=self.recall_limit * 2, workspace_id=plan.workspace_id, use_reranker=False),
            )
        except TaskWingError as e:
            log.warning(f"Memory recall failed for task {task.id}: {e}")
            return []
        seen_ids: set[str] = set()
        seen_titles: set[str] = set()
        unique: list[SearchResult] = []
        for result in response.results:
            key = result.title.strip().lower()
            if result.node_id in seen_ids or key in seen_titles:
                continue
            seen_ids.add(result.node_id)
            seen_titles.add(key)
            unique.append(result)
            if len(unique) >= self.recall_limit:
                break
        return unique
