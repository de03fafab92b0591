"""Plan and Task engine.

State machines:
    Plan:  draft -> active <-> archived, active -> completed
    Task:  pending -> in_progress -> {completed, blocked}; blocked -> pending;
           any -> cancelled

Task dependencies form a DAG per plan. Every mutation that would close a cycle
raises CycleError carrying the cycle path; a task may start only once all of
its dependencies are completed.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from taskwing.db import DatabaseManager
from taskwing.db.graph_analytics import bfs_path
from taskwing.errors import CycleError, InvalidTransitionError, NotFoundError, ValidationError
from taskwing.log_config import get_logger
from taskwing.models import Complexity, Plan, PlanStatus, Task, TaskStatus, new_id

log = get_logger("planning.engine")

PLAN_TRANSITIONS: dict[PlanStatus, set[PlanStatus]] = {
    PlanStatus.DRAFT: {PlanStatus.ACTIVE},
    PlanStatus.ACTIVE: {PlanStatus.ARCHIVED, PlanStatus.COMPLETED},
    PlanStatus.ARCHIVED: {PlanStatus.ACTIVE},
    PlanStatus.COMPLETED: set(),
}

TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.CANCELLED},
    TaskStatus.BLOCKED: {TaskStatus.PENDING, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: {TaskStatus.CANCELLED},
    TaskStatus.CANCELLED: set(),
}


@dataclass
class TaskSpec:
    """A task in a create_plan request.

    ``ref`` is a temporary id that other specs in the same request may list in
    ``depends_on``; it is replaced by a generated id before persistence.
    """

    ref: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM
    priority: int = 0
    depends_on: list[str] = field(default_factory=list)
    parent: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int = 0) -> "TaskSpec":
        try:
            complexity = Complexity(str(data.get("complexity", "medium")).lower())
        except ValueError as e:
            raise ValidationError(f"Invalid complexity: {data.get('complexity')!r}") from e
        return cls(
            ref=str(data.get("id") or data.get("ref") or f"task-{index + 1}"),
            title=str(data.get("title", "")).strip(),
            description=str(data.get("description", "")),
            acceptance_criteria=[str(c) for c in data.get("acceptance_criteria") or []],
            complexity=complexity,
            priority=int(data.get("priority", 0)),
            depends_on=[str(d) for d in data.get("depends_on") or data.get("dependencies") or []],
            parent=data.get("parent") or data.get("parent_id"),
        )


@dataclass
class PlanProgress:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    blocked: int = 0
    cancelled: int = 0

    @property
    def percent(self) -> float:
        effective = self.total - self.cancelled
        if effective <= 0:
            return 100.0 if self.total else 0.0
        return round(100.0 * self.completed / effective, 1)

    @property
    def done(self) -> bool:
        return self.total > 0 and self.completed + self.cancelled == self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "pending": self.pending,
            "blocked": self.blocked,
            "cancelled": self.cancelled,
            "percent": self.percent,
        }


# =============================================================================
# DAG helpers
# =============================================================================


def find_cycle(graph: dict[str, set[str]]) -> list[str] | None:
    """A dependency cycle as [a, b, ..., a], or None if the graph is acyclic."""
    for start in sorted(graph):
        for dep in sorted(graph[start]):
            path = bfs_path(dep, start, lambda n: graph.get(n, ()), max_depth=len(graph) + 1)
            if path is not None:
                return [start] + path
    return None


def topological_order(graph: dict[str, set[str]]) -> list[str]:
    """Dependencies-first order; ties broken by id.

    Raises:
        CycleError: If the graph has a cycle
    """
    remaining = {node: set(d for d in deps if d in graph) for node, deps in graph.items()}
    order: list[str] = []
    ready = sorted(n for n, deps in remaining.items() if not deps)
    while ready:
        node = ready.pop(0)
        order.append(node)
        del remaining[node]
        newly = [n for n, deps in remaining.items() if node in deps]
        for n in newly:
            remaining[n].discard(node)
        ready = sorted(set(ready) | {n for n in newly if not remaining[n]})
    if remaining:
        cycle = find_cycle(remaining)
        raise CycleError(cycle or sorted(remaining))
    return order


def ready_sort_key(task: Task) -> tuple:
    return (-task.priority, len(task.dependencies), task.created_at, task.id)


class PlanEngine:
    """Plan/task operations over the memory database."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # =========================================================================
    # Plans
    # =========================================================================

    def create_plan(
        self,
        workspace_id: str,
        goal: str,
        tasks: Iterable[TaskSpec],
        enriched_goal: str = "",
        activate: bool = False,
    ) -> tuple[Plan, list[Task]]:
        """Create a plan and its tasks atomically, resolving temporary task refs.

        Raises:
            ValidationError: Empty goal or title, duplicate ref, unknown or self dependency
            CycleError: If the requested dependencies contain a cycle
        """
        if not goal or not goal.strip():
            raise ValidationError("Plan goal must not be empty")
        specs = list(tasks)
        ref_to_id: dict[str, str] = {}
        for spec in specs:
            if not spec.title:
                raise ValidationError(f"Task {spec.ref!r} has an empty title")
            if spec.ref in ref_to_id:
                raise ValidationError(f"Duplicate task id in request: {spec.ref!r}")
            ref_to_id[spec.ref] = new_id()

        plan = Plan(id=new_id(), workspace_id=workspace_id, goal=goal.strip(), enriched_goal=enriched_goal)
        now = self.db.clock.now()
        built: list[Task] = []
        for i, spec in enumerate(specs):
            task_id = ref_to_id[spec.ref]
            deps: set[str] = set()
            for ref in spec.depends_on:
                if ref == spec.ref:
                    raise ValidationError(f"Task {spec.ref!r} cannot depend on itself")
                if ref not in ref_to_id:
                    raise ValidationError(f"Task {spec.ref!r} depends on unknown task {ref!r}")
                deps.add(ref_to_id[ref])
            parent_id = ref_to_id.get(spec.parent) if spec.parent else None
            if spec.parent and parent_id is None:
                raise ValidationError(f"Task {spec.ref!r} has unknown parent {spec.parent!r}")
            built.append(
                Task(
                    id=task_id,
                    plan_id=plan.id,
                    title=spec.title,
                    description=spec.description,
                    acceptance_criteria=list(spec.acceptance_criteria),
                    complexity=spec.complexity,
                    priority=spec.priority,
                    dependencies=deps,
                    parent_id=parent_id,
                    # Request order is the creation order
                    created_at=now + i * 1e-6,
                )
            )

        id_to_ref = {v: k for k, v in ref_to_id.items()}
        try:
            topological_order({t.id: t.dependencies for t in built})
        except CycleError as e:
            raise CycleError([id_to_ref.get(n, n) for n in e.path]) from None

        with self.db.transaction():
            self.db.plans.insert_plan(plan)
            for task in built:
                self.db.plans.insert_task(task)
            if activate:
                self._activate(plan)
        log.info(f"Created plan {plan.id} with {len(built)} tasks (activate={activate})")
        return plan, built

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.db.plans.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("Plan", plan_id, hint="List plans with `taskwing plan list`.")
        return plan

    def get_active_plan(self, workspace_id: str) -> Plan | None:
        return self.db.plans.get_active_plan(workspace_id)

    def list_plans(self, workspace_id: str) -> list[Plan]:
        return self.db.plans.list_plans(workspace_id)

    def set_plan_status(self, plan_id: str, status: PlanStatus) -> Plan:
        with self.db.transaction():
            plan = self.get_plan(plan_id)
            if plan.status == status:
                return plan
            if status not in PLAN_TRANSITIONS[plan.status]:
                raise InvalidTransitionError("plan", plan.status.value, status.value)
            if status == PlanStatus.ACTIVE:
                self._activate(plan)
            else:
                self.db.plans.set_plan_status(plan.id, status)
                plan.status = status
        log.info(f"Plan {plan_id} -> {status.value}")
        return plan

    def activate_plan(self, plan_id: str) -> Plan:
        """Make ``plan_id`` the active plan, archiving the previously active one."""
        return self.set_plan_status(plan_id, PlanStatus.ACTIVE)

    def _activate(self, plan: Plan) -> None:
        current = self.db.plans.get_active_plan(plan.workspace_id)
        if current is not None and current.id != plan.id:
            self.db.plans.set_plan_status(current.id, PlanStatus.ARCHIVED)
            log.info(f"Archived previously active plan {current.id}")
        self.db.plans.set_plan_status(plan.id, PlanStatus.ACTIVE)
        plan.status = PlanStatus.ACTIVE

    def delete_plan(self, plan_id: str) -> None:
        self.db.plans.delete_plan(plan_id)

    def progress(self, plan_id: str) -> PlanProgress:
        progress = PlanProgress()
        for task in self.db.plans.list_tasks(plan_id):
            progress.total += 1
            name = task.status.value
            setattr(progress, name, getattr(progress, name) + 1)
        return progress

    # =========================================================================
    # Tasks
    # =========================================================================

    def get_task(self, task_id: str) -> Task:
        task = self.db.plans.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def list_tasks(self, plan_id: str) -> list[Task]:
        return self.db.plans.list_tasks(plan_id)

    def add_task(self, plan_id: str, spec: TaskSpec) -> Task:
        """Append a task; ``spec.depends_on`` must name existing tasks of the plan."""
        if not spec.title:
            raise ValidationError("Task title must not be empty")
        with self.db.transaction():
            self.get_plan(plan_id)
            existing = {t.id for t in self.db.plans.list_tasks(plan_id)}
            unknown = [d for d in spec.depends_on if d not in existing]
            if unknown:
                raise ValidationError(f"Unknown dependencies for new task: {', '.join(unknown)}")
            task = Task(
                id=new_id(),
                plan_id=plan_id,
                title=spec.title,
                description=spec.description,
                acceptance_criteria=list(spec.acceptance_criteria),
                complexity=spec.complexity,
                priority=spec.priority,
                dependencies=set(spec.depends_on),
                parent_id=spec.parent if spec.parent in existing else None,
            )
            return self.db.plans.insert_task(task)

    def add_dependency(self, task_id: str, depends_on_id: str) -> Task:
        """Make ``task_id`` depend on ``depends_on_id``.

        Raises:
            ValidationError: Self-dependency, tasks from different plans, or an
                unfinished dependency on a task already started or completed
            CycleError: If the edge would close a cycle; path starts and ends at ``task_id``
        """
        if task_id == depends_on_id:
            raise ValidationError("A task cannot depend on itself")
        with self.db.transaction():
            task = self.get_task(task_id)
            dep = self.get_task(depends_on_id)
            if task.plan_id != dep.plan_id:
                raise ValidationError("Dependencies must stay within one plan")
            if depends_on_id in task.dependencies:
                return task
            if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED) and dep.status != TaskStatus.COMPLETED:
                raise ValidationError(
                    f"Task {task_id} is {task.status.value}; it can only gain completed dependencies",
                    hint="Finish the dependency first or move the task back to pending.",
                )
            graph = {t.id: t.dependencies for t in self.db.plans.list_tasks(task.plan_id)}
            path = bfs_path(depends_on_id, task_id, lambda n: graph.get(n, ()), max_depth=len(graph) + 1)
            if path is not None:
                raise CycleError([task_id] + path)
            task.dependencies.add(depends_on_id)
            return self.db.plans.update_task(task)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Task:
        with self.db.transaction():
            task = self.get_task(task_id)
            if depends_on_id not in task.dependencies:
                return task
            task.dependencies.discard(depends_on_id)
            return self.db.plans.update_task(task)

    def set_task_status(self, task_id: str, status: TaskStatus) -> Task:
        """Apply a task transition.

        Raises:
            InvalidTransitionError: If the state machine forbids the change
            ValidationError: Starting a task whose dependencies are not all completed
        """
        with self.db.transaction():
            task = self.get_task(task_id)
            if task.status == status:
                return task
            if status not in TASK_TRANSITIONS[task.status]:
                raise InvalidTransitionError("task", task.status.value, status.value)
            if status == TaskStatus.IN_PROGRESS:
                unmet = self.unmet_dependencies(task)
                if unmet:
                    raise ValidationError(
                        f"Task {task.id} has unmet dependencies: {', '.join(unmet)}",
                        hint="Complete the dependencies first or remove them.",
                    )
            task.status = status
            if status == TaskStatus.COMPLETED:
                task.completed_at = self.db.clock.now()
            updated = self.db.plans.update_task(task)
        log.info(f"Task {task_id} -> {status.value}")
        return updated

    def unmet_dependencies(self, task: Task) -> list[str]:
        """Ids of dependencies that are not completed (missing ones included)."""
        unmet = []
        for dep_id in sorted(task.dependencies):
            dep = self.db.plans.get_task(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                unmet.append(dep_id)
        return unmet

    # =========================================================================
    # Scheduling
    # =========================================================================

    def ready_tasks(self, plan_id: str) -> list[Task]:
        """Pending tasks whose dependencies are all completed, in scheduling order."""
        tasks = self.db.plans.list_tasks(plan_id)
        status = {t.id: t.status for t in tasks}
        ready = [
            t
            for t in tasks
            if t.status == TaskStatus.PENDING
            and all(status.get(d) == TaskStatus.COMPLETED for d in t.dependencies)
        ]
        return sorted(ready, key=ready_sort_key)

    def next_task(self, plan_id: str) -> Task | None:
        ready = self.ready_tasks(plan_id)
        return ready[0] if ready else None

    def validate_dag(self, plan_id: str) -> list[str]:
        """Topological order of the plan's tasks.

        Raises:
            CycleError: If stored dependencies contain a cycle
        """
        return topological_order({t.id: set(t.dependencies) for t in self.db.plans.list_tasks(plan_id)})
