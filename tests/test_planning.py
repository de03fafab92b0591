"""Plan and task engine tests for TaskWing.

Tests plan lifecycles and the task DAG:
- Plan creation with file-local task refs
- Cycle rejection on create and on added dependencies
- Task state machine and dependency gating
- Ready-set ordering and progress
- Task context rendering for executors
"""

import pytest

from taskwing.errors import CycleError, InvalidTransitionError, NotFoundError, ValidationError
from taskwing.models import Complexity, PlanStatus, TaskStatus
from taskwing.planning import TaskContextBuilder, TaskSpec, topological_order
from taskwing.planning.presentation import truncate

WS = "ws-plan"


def specs(*rows) -> list[TaskSpec]:
    """rows of (ref, depends_on[, priority])."""
    out = []
    for row in rows:
        ref, deps = row[0], row[1]
        priority = row[2] if len(row) > 2 else 0
        out.append(TaskSpec(ref=ref, title=f"Task {ref}", depends_on=list(deps), priority=priority))
    return out


@pytest.fixture
def abc_plan(engine):
    """A <- B <- C: B depends on A, C depends on B."""
    plan, tasks = engine.create_plan(WS, "Ship auth", specs(("A", []), ("B", ["A"]), ("C", ["B"])), activate=True)
    return plan, {t.title[-1]: t for t in tasks}


class TestCreatePlan:
    def test_refs_become_ids(self, abc_plan):
        _, tasks = abc_plan
        assert tasks["B"].dependencies == {tasks["A"].id}
        assert tasks["C"].dependencies == {tasks["B"].id}

    def test_request_order_is_kept(self, engine, abc_plan):
        plan, tasks = abc_plan
        assert [t.id for t in engine.list_tasks(plan.id)] == [tasks["A"].id, tasks["B"].id, tasks["C"].id]

    def test_activate_flag(self, engine, abc_plan):
        plan, _ = abc_plan
        assert engine.get_active_plan(WS).id == plan.id

    def test_cycle_in_request_rejected(self, engine):
        with pytest.raises(CycleError) as exc_info:
            engine.create_plan(WS, "Loop", specs(("A", ["B"]), ("B", ["A"])))
        assert exc_info.value.path[0] == exc_info.value.path[-1]
        assert set(exc_info.value.path) == {"A", "B"}
        assert engine.list_plans(WS) == []

    def test_self_dependency_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_plan(WS, "Self", specs(("A", ["A"])))

    def test_unknown_ref_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_plan(WS, "Unknown", specs(("A", ["Z"])))

    def test_empty_goal_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_plan(WS, "  ", specs(("A", [])))

    def test_duplicate_deps_collapse(self, engine):
        _, tasks = engine.create_plan(WS, "Dup", specs(("A", []), ("B", ["A", "A"])))
        assert len(tasks[1].dependencies) == 1

    def test_spec_from_dict(self):
        spec = TaskSpec.from_dict(
            {"id": "t1", "title": " Add login ", "complexity": "HIGH", "dependencies": ["t0"], "priority": 3}
        )
        assert spec.ref == "t1"
        assert spec.title == "Add login"
        assert spec.complexity == Complexity.HIGH
        assert spec.depends_on == ["t0"]
        assert spec.priority == 3

    def test_spec_from_dict_bad_complexity(self):
        with pytest.raises(ValidationError):
            TaskSpec.from_dict({"title": "x", "complexity": "huge"})


class TestDependencies:
    def test_cycle_rejection_reports_path(self, engine, abc_plan):
        _, t = abc_plan
        with pytest.raises(CycleError) as exc_info:
            engine.add_dependency(t["A"].id, t["C"].id)
        assert exc_info.value.path == [t["A"].id, t["C"].id, t["B"].id, t["A"].id]
        assert engine.get_task(t["A"].id).dependencies == set()

    def test_add_and_remove(self, engine, abc_plan):
        _, t = abc_plan
        engine.add_dependency(t["C"].id, t["A"].id)
        assert engine.get_task(t["C"].id).dependencies == {t["A"].id, t["B"].id}
        engine.remove_dependency(t["C"].id, t["A"].id)
        assert engine.get_task(t["C"].id).dependencies == {t["B"].id}

    def test_started_task_only_gains_completed_dependencies(self, engine, abc_plan):
        plan, t = abc_plan
        extra = engine.add_task(plan.id, TaskSpec(ref="D", title="Task D"))
        engine.set_task_status(t["A"].id, TaskStatus.IN_PROGRESS)

        with pytest.raises(ValidationError):
            engine.add_dependency(t["A"].id, extra.id)
        assert engine.get_task(t["A"].id).dependencies == set()

        engine.set_task_status(extra.id, TaskStatus.IN_PROGRESS)
        engine.set_task_status(extra.id, TaskStatus.COMPLETED)
        engine.add_dependency(t["A"].id, extra.id)
        assert engine.get_task(t["A"].id).dependencies == {extra.id}

    def test_self_dependency(self, engine, abc_plan):
        _, t = abc_plan
        with pytest.raises(ValidationError):
            engine.add_dependency(t["A"].id, t["A"].id)

    def test_cross_plan_dependency(self, engine, abc_plan):
        _, t = abc_plan
        _, other = engine.create_plan(WS, "Other", specs(("X", [])))
        with pytest.raises(ValidationError):
            engine.add_dependency(t["A"].id, other[0].id)

    def test_validate_dag_order(self, engine, abc_plan):
        plan, t = abc_plan
        assert engine.validate_dag(plan.id) == [t["A"].id, t["B"].id, t["C"].id]

    def test_topological_order_ties_by_id(self):
        assert topological_order({"b": set(), "a": set(), "c": {"a"}}) == ["a", "b", "c"]


class TestTaskStatus:
    def test_start_requires_completed_dependencies(self, engine, abc_plan):
        _, t = abc_plan
        with pytest.raises(ValidationError) as exc_info:
            engine.set_task_status(t["B"].id, TaskStatus.IN_PROGRESS)
        assert t["A"].id in exc_info.value.message

    def test_happy_path(self, engine, abc_plan, clock):
        _, t = abc_plan
        engine.set_task_status(t["A"].id, TaskStatus.IN_PROGRESS)
        clock.advance(60)
        done = engine.set_task_status(t["A"].id, TaskStatus.COMPLETED)
        assert done.completed_at == clock.now()
        assert engine.set_task_status(t["B"].id, TaskStatus.IN_PROGRESS).status == TaskStatus.IN_PROGRESS

    def test_pending_cannot_complete(self, engine, abc_plan):
        _, t = abc_plan
        with pytest.raises(InvalidTransitionError):
            engine.set_task_status(t["A"].id, TaskStatus.COMPLETED)

    def test_same_status_is_noop(self, engine, abc_plan):
        _, t = abc_plan
        assert engine.set_task_status(t["A"].id, TaskStatus.PENDING).status == TaskStatus.PENDING

    def test_blocked_returns_to_pending(self, engine, abc_plan):
        _, t = abc_plan
        engine.set_task_status(t["A"].id, TaskStatus.IN_PROGRESS)
        engine.set_task_status(t["A"].id, TaskStatus.BLOCKED)
        assert engine.set_task_status(t["A"].id, TaskStatus.PENDING).status == TaskStatus.PENDING

    def test_cancelled_is_terminal(self, engine, abc_plan):
        _, t = abc_plan
        engine.set_task_status(t["A"].id, TaskStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            engine.set_task_status(t["A"].id, TaskStatus.PENDING)

    def test_missing_task(self, engine):
        with pytest.raises(NotFoundError):
            engine.set_task_status("nope", TaskStatus.IN_PROGRESS)


class TestScheduling:
    def test_next_task_follows_dependencies(self, engine, abc_plan):
        plan, t = abc_plan
        assert engine.next_task(plan.id).id == t["A"].id
        engine.set_task_status(t["A"].id, TaskStatus.IN_PROGRESS)
        assert engine.next_task(plan.id) is None
        engine.set_task_status(t["A"].id, TaskStatus.COMPLETED)
        assert engine.next_task(plan.id).id == t["B"].id

    def test_priority_then_fewer_dependencies(self, engine):
        plan, tasks = engine.create_plan(
            WS, "Order", specs(("A", []), ("B", [], 5), ("C", []), ("D", ["A"], 9))
        )
        ready = [t.title for t in engine.ready_tasks(plan.id)]
        assert ready == ["Task B", "Task A", "Task C"]

    def test_progress(self, engine, abc_plan):
        plan, t = abc_plan
        engine.set_task_status(t["A"].id, TaskStatus.IN_PROGRESS)
        engine.set_task_status(t["A"].id, TaskStatus.COMPLETED)
        engine.set_task_status(t["C"].id, TaskStatus.CANCELLED)
        progress = engine.progress(plan.id)
        assert (progress.total, progress.completed, progress.pending, progress.cancelled) == (3, 1, 1, 1)
        assert progress.percent == 50.0
        assert not progress.done


class TestPlanStatus:
    def test_activating_archives_previous(self, engine, abc_plan):
        first, _ = abc_plan
        second, _ = engine.create_plan(WS, "Next goal", specs(("X", [])))
        engine.activate_plan(second.id)
        assert engine.get_active_plan(WS).id == second.id
        assert engine.get_plan(first.id).status == PlanStatus.ARCHIVED

    def test_completed_plan_is_terminal(self, engine, abc_plan):
        plan, _ = abc_plan
        engine.set_plan_status(plan.id, PlanStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            engine.set_plan_status(plan.id, PlanStatus.ACTIVE)

    def test_draft_cannot_archive(self, engine):
        plan, _ = engine.create_plan(WS, "Draft", specs(("X", [])))
        with pytest.raises(InvalidTransitionError):
            engine.set_plan_status(plan.id, PlanStatus.ARCHIVED)


class TestTaskContext:
    def test_context_sections(self, engine, abc_plan):
        plan, t = abc_plan
        task = engine.get_task(t["B"].id)
        task.acceptance_criteria = ["Login works"]
        context = TaskContextBuilder(engine).build(task, plan)

        assert context.startswith("## Current Task: Task B")
        assert f"Task ID: {task.id}" in context
        assert "Plan: Ship auth" in context
        assert "Progress: 0/3 tasks completed" in context
        assert "- [ ] Login works" in context
        assert "- [ ] Task A (pending)" in context
        assert f"taskwing task status {task.id} completed" in context

    def test_context_recalls_memory(self, engine, service, abc_plan):
        plan, t = abc_plan
        service.create_feature(WS, "Task A storage", "Where Task A keeps its data")
        context = TaskContextBuilder(engine, service).build(engine.get_task(t["A"].id), plan)
        assert "### Relevant Architecture Context" in context
        assert "**Task A storage** (feature)" in context

    def test_truncate(self):
        assert truncate("a  b\nc") == "a b c"
        assert truncate("x" * 400, 10) == "xxxxxxx..."


class TestAddTask:
    def test_add_task_with_existing_dependency(self, engine, abc_plan):
        plan, t = abc_plan
        task = engine.add_task(plan.id, TaskSpec(ref="D", title="Task D", depends_on=[t["C"].id]))
        assert task.dependencies == {t["C"].id}
        assert engine.progress(plan.id).total == 4

    def test_add_task_unknown_dependency(self, engine, abc_plan):
        plan, _ = abc_plan
        with pytest.raises(ValidationError):
            engine.add_task(plan.id, TaskSpec(ref="D", title="Task D", depends_on=["missing"]))
