"""Hook session controller tests for TaskWing.

Tests the continue/stop loop driven by an executor's stop hook:
- Circuit breakers on completed tasks and elapsed minutes
- Approving when there is no plan, nothing ready, or the plan is done
- Blocking with the next task's context and counting completions
- Session file lifecycle
"""

import json

import pytest

from taskwing.hooks import APPROVE, BLOCK, HookDecision, HookSession, HookSessionController, session_end_banner
from taskwing.models import TaskStatus
from taskwing.planning import TaskSpec

WS = "ws-hooks"


@pytest.fixture
def session_path(tmp_path):
    return tmp_path / "memory" / "hook_session.json"


@pytest.fixture
def controller(engine, session_path, clock):
    return HookSessionController(engine, WS, session_path, max_tasks=5, max_minutes=30, clock=clock)


@pytest.fixture
def two_tasks(engine):
    plan, tasks = engine.create_plan(
        WS,
        "Ship auth",
        [TaskSpec(ref="a", title="Add login"), TaskSpec(ref="b", title="Add logout", depends_on=["a"])],
        activate=True,
    )
    return plan, tasks


def complete(engine, task_id):
    engine.set_task_status(task_id, TaskStatus.IN_PROGRESS)
    engine.set_task_status(task_id, TaskStatus.COMPLETED)


class TestCircuitBreaker:
    def test_completed_task_limit_approves_without_writing(self, controller, session_path, clock, two_tasks):
        session = HookSession(session_id="s-1", started_at=clock.now(), tasks_started=5, tasks_completed=5)
        session_path.parent.mkdir(parents=True, exist_ok=True)
        session_path.write_text(json.dumps(session.to_dict()))
        before = session_path.read_bytes()

        decision = controller.continue_check()

        assert decision.decision == APPROVE
        assert decision.reason == (
            "Circuit breaker: Completed 5/5 tasks this session. Take a break for human review."
        )
        assert session_path.read_bytes() == before

    def test_elapsed_minutes_limit(self, controller, clock, two_tasks):
        controller.init_session()
        clock.advance(31 * 60)
        decision = controller.continue_check()
        assert decision.decision == APPROVE
        assert decision.reason.startswith("Circuit breaker: Session has run 31/30 minutes")


class TestDecisions:
    def test_no_active_plan_approves(self, controller):
        decision = controller.continue_check()
        assert decision.decision == APPROVE
        assert decision.reason.startswith("No active plan")

    def test_blocks_with_next_task_context(self, controller, two_tasks):
        _, tasks = two_tasks
        decision = controller.continue_check()

        assert decision.decision == BLOCK
        assert decision.task_id == tasks[0].id
        assert decision.reason == "Continue to task 1/2: Add login"
        assert decision.context.startswith("## Current Task: Add login")
        session = controller.load()
        assert session.current_task_id == tasks[0].id
        assert session.tasks_started == 1

    def test_completed_task_is_counted(self, controller, engine, two_tasks):
        _, tasks = two_tasks
        controller.continue_check()
        complete(engine, tasks[0].id)

        decision = controller.continue_check()
        assert decision.task_id == tasks[1].id
        session = controller.load()
        assert session.tasks_completed == 1
        assert session.tasks_started == 2

    def test_in_progress_task_with_nothing_ready_approves(self, controller, engine, two_tasks):
        plan, tasks = two_tasks
        controller.continue_check()
        engine.set_task_status(tasks[0].id, TaskStatus.IN_PROGRESS)
        assert engine.next_task(plan.id) is None

        decisions = [controller.continue_check().decision for _ in range(3)]
        assert decisions == [APPROVE, APPROVE, APPROVE]
        session = controller.load()
        assert session.tasks_started == 1
        assert session.tasks_completed == 0

    def test_block_reason_counts_completed_tasks(self, controller, engine, two_tasks):
        _, tasks = two_tasks
        controller.continue_check()
        complete(engine, tasks[0].id)
        decision = controller.continue_check()
        assert decision.reason == "Continue to task 2/2: Add logout"
        assert "Add logout" in decision.context

    def test_nothing_ready_approves(self, controller, engine, two_tasks):
        _, tasks = two_tasks
        engine.set_task_status(tasks[0].id, TaskStatus.IN_PROGRESS)
        engine.set_task_status(tasks[0].id, TaskStatus.BLOCKED)

        decision = controller.continue_check()
        assert decision.decision == APPROVE
        assert decision.reason.startswith("No ready tasks")
        assert "1 blocked, 1 pending" in decision.reason

    def test_plan_complete_approves(self, controller, engine, two_tasks):
        _, tasks = two_tasks
        for task in tasks:
            complete(engine, task.id)
        decision = controller.continue_check()
        assert decision.decision == APPROVE
        assert decision.reason == "Plan complete: all 2 tasks are done."

    def test_decision_json_is_one_line(self):
        line = HookDecision(BLOCK, "Continue to task 1/1: x", task_id="t", context="## Current Task: x\n\nmore").to_json()
        assert "\n" not in line
        assert json.loads(line) == {
            "decision": "block",
            "reason": "Continue to task 1/1: x",
            "context": "## Current Task: x\n\nmore",
        }

    def test_approve_json_has_no_context(self):
        assert json.loads(HookDecision(APPROVE, "No active plan.").to_json()) == {
            "decision": "approve",
            "reason": "No active plan.",
        }


class TestSessionFile:
    def test_init_binds_active_plan(self, controller, two_tasks):
        plan, _ = two_tasks
        session = controller.init_session()
        assert session.plan_id == plan.id
        assert controller.load() == session

    def test_corrupt_file_is_discarded(self, controller, session_path):
        session_path.parent.mkdir(parents=True, exist_ok=True)
        session_path.write_text("{not json")
        assert controller.load() is None

    def test_end_removes_file(self, controller, session_path):
        controller.init_session()
        ended = controller.end_session()
        assert ended is not None
        assert not session_path.exists()
        assert "Completed: 0 of 0" in session_end_banner(ended)

    def test_end_without_session(self, controller):
        assert controller.end_session() is None
        assert session_end_banner(None) == "No TaskWing session was active."

    def test_status(self, controller, clock, two_tasks):
        plan, _ = two_tasks
        controller.init_session()
        clock.advance(90)
        status = controller.status()
        assert status["active"]
        assert status["plan_id"] == plan.id
        assert status["elapsed_minutes"] == 1.5
        assert status["progress"]["total"] == 2
