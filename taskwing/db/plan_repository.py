"""Plan and Task persistence.

Row mapping only; state machines, DAG validation and scheduling live in
taskwing.planning.engine. The partial unique index on plan(workspace_id)
WHERE status='active' backs the one-active-plan rule at the storage level.
"""

import json
import sqlite3

from taskwing.db.store_protocol import SQLStore
from taskwing.errors import NotFoundError
from taskwing.log_config import get_logger
from taskwing.models import Complexity, Plan, PlanStatus, Task, TaskStatus
from taskwing.protocols import Clock

log = get_logger("db.plans")


def _plan_from_row(row: sqlite3.Row) -> Plan:
    return Plan(
        id=row["id"],
        workspace_id=row["workspace_id"],
        goal=row["goal"],
        enriched_goal=row["enriched_goal"],
        status=PlanStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _task_from_row(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        plan_id=row["plan_id"],
        title=row["title"],
        description=row["description"],
        acceptance_criteria=json.loads(row["acceptance_criteria"]),
        complexity=Complexity(row["complexity"]),
        priority=row["priority"],
        status=TaskStatus(row["status"]),
        dependencies=set(json.loads(row["dependencies"])),
        parent_id=row["parent_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


class PlanRepository:
    def __init__(self, store: SQLStore, clock: Clock):
        self.store = store
        self.clock = clock

    # =========================================================================
    # Plans
    # =========================================================================

    def insert_plan(self, plan: Plan) -> Plan:
        now = self.clock.now()
        plan.created_at = plan.created_at or now
        plan.updated_at = now
        self.store.execute(
            """
            INSERT INTO plan (id, workspace_id, goal, enriched_goal, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (plan.id, plan.workspace_id, plan.goal, plan.enriched_goal, plan.status.value,
             plan.created_at, plan.updated_at),
        )
        return plan

    def set_plan_status(self, plan_id: str, status: PlanStatus) -> None:
        cur = self.store.execute(
            "UPDATE plan SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, self.clock.now(), plan_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Plan", plan_id)

    def get_plan(self, plan_id: str) -> Plan | None:
        row = self.store.query_one("SELECT * FROM plan WHERE id = ?", (plan_id,))
        return _plan_from_row(row) if row else None

    def get_active_plan(self, workspace_id: str) -> Plan | None:
        row = self.store.query_one(
            "SELECT * FROM plan WHERE workspace_id = ? AND status = 'active'", (workspace_id,)
        )
        return _plan_from_row(row) if row else None

    def list_plans(self, workspace_id: str) -> list[Plan]:
        rows = self.store.query(
            "SELECT * FROM plan WHERE workspace_id = ? ORDER BY created_at, id", (workspace_id,)
        )
        return [_plan_from_row(r) for r in rows]

    def delete_plan(self, plan_id: str) -> None:
        with self.store.transaction():
            self.store.execute("DELETE FROM task WHERE plan_id = ?", (plan_id,))
            cur = self.store.execute("DELETE FROM plan WHERE id = ?", (plan_id,))
            if cur.rowcount == 0:
                raise NotFoundError("Plan", plan_id)

    # =========================================================================
    # Tasks
    # =========================================================================

    def insert_task(self, task: Task) -> Task:
        now = self.clock.now()
        task.created_at = task.created_at or now
        task.updated_at = now
        self.store.execute(
            """
            INSERT INTO task (id, plan_id, title, description, acceptance_criteria, complexity,
                priority, status, dependencies, parent_id, created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.plan_id,
                task.title,
                task.description,
                json.dumps(task.acceptance_criteria),
                task.complexity.value,
                task.priority,
                task.status.value,
                json.dumps(sorted(task.dependencies)),
                task.parent_id,
                task.created_at,
                task.updated_at,
                task.completed_at,
            ),
        )
        return task

    def update_task(self, task: Task) -> Task:
        task.updated_at = self.clock.now()
        cur = self.store.execute(
            """
            UPDATE task SET title = ?, description = ?, acceptance_criteria = ?, complexity = ?,
                priority = ?, status = ?, dependencies = ?, parent_id = ?, updated_at = ?,
                completed_at = ?
            WHERE id = ?
            """,
            (
                task.title,
                task.description,
                json.dumps(task.acceptance_criteria),
                task.complexity.value,
                task.priority,
                task.status.value,
                json.dumps(sorted(task.dependencies)),
                task.parent_id,
                task.updated_at,
                task.completed_at,
                task.id,
            ),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Task", task.id)
        return task

    def get_task(self, task_id: str) -> Task | None:
        row = self.store.query_one("SELECT * FROM task WHERE id = ?", (task_id,))
        return _task_from_row(row) if row else None

    def list_tasks(self, plan_id: str) -> list[Task]:
        rows = self.store.query(
            "SELECT * FROM task WHERE plan_id = ? ORDER BY created_at, id", (plan_id,)
        )
        return [_task_from_row(r) for r in rows]
