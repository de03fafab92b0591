"""Hook session controller.

An executor calls ``continue-check`` every time it wants to stop. The
controller either approves the stop or blocks it and hands back the next
task's context. Session state lives in one JSON file under the memory
directory, written atomically (temp file then rename).

Decision order:
1. No session file: start one
2. Circuit breaker (tasks completed or minutes elapsed): approve
3. No active plan: approve
4. No ready task: approve (plan complete, or blocked/unmet dependencies)
5. Otherwise: block with the next task's context
"""

import json
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from taskwing.errors import NotFoundError
from taskwing.log_config import get_logger
from taskwing.models import TaskStatus
from taskwing.planning import PlanEngine, TaskContextBuilder
from taskwing.protocols import Clock, FileSystem, LocalFileSystem, SystemClock

log = get_logger("hooks")

APPROVE = "approve"
BLOCK = "block"


@dataclass
class HookSession:
    session_id: str
    started_at: float
    plan_id: str | None = None
    current_task_id: str | None = None
    tasks_started: int = 0
    tasks_completed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HookSession":
        return cls(
            session_id=str(data["session_id"]),
            started_at=float(data["started_at"]),
            plan_id=data.get("plan_id"),
            current_task_id=data.get("current_task_id"),
            tasks_started=int(data.get("tasks_started", 0)),
            tasks_completed=int(data.get("tasks_completed", 0)),
        )


@dataclass
class HookDecision:
    decision: str
    reason: str
    task_id: str | None = None
    context: str | None = None

    def to_json(self) -> str:
        """The single line printed on stdout for the executor; ``context`` only when set."""
        payload = {"decision": self.decision, "reason": self.reason}
        if self.context is not None:
            payload["context"] = self.context
        return json.dumps(payload)


class HookSessionController:
    """Continue/stop decisions for one workspace.

    Args:
        engine: Plan engine for the active plan and ready set
        workspace_id: Workspace whose active plan drives the session
        session_path: hook_session.json location
        max_tasks: Completed tasks after which the breaker approves stopping
        max_minutes: Session age after which the breaker approves stopping
        context_builder: Renders the block context (plain task summary if None)
    """

    def __init__(
        self,
        engine: PlanEngine,
        workspace_id: str,
        session_path: Path,
        max_tasks: int = 5,
        max_minutes: int = 30,
        context_builder: TaskContextBuilder | None = None,
        fs: FileSystem | None = None,
        clock: Clock | None = None,
    ):
        self.engine = engine
        self.workspace_id = workspace_id
        self.session_path = Path(session_path)
        self.max_tasks = max_tasks
        self.max_minutes = max_minutes
        self.context_builder = context_builder or TaskContextBuilder(engine)
        self.fs = fs or LocalFileSystem()
        self.clock = clock or SystemClock()

    # =========================================================================
    # Session file
    # =========================================================================

    def load(self) -> HookSession | None:
        if not self.fs.exists(self.session_path):
            return None
        try:
            data = json.loads(self.fs.read_bytes(self.session_path).decode("utf-8"))
            return HookSession.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            log.warning(f"Discarding unreadable hook session {self.session_path}: {e}")
            return None

    def save(self, session: HookSession) -> None:
        self.fs.write_atomic(self.session_path, json.dumps(session.to_dict(), indent=2).encode("utf-8"))

    def init_session(self) -> HookSession:
        """Start a fresh session bound to the current active plan."""
        plan = self.engine.get_active_plan(self.workspace_id)
        session = HookSession(
            session_id=str(uuid.uuid4()),
            started_at=self.clock.now(),
            plan_id=plan.id if plan else None,
        )
        self.save(session)
        log.info(f"Hook session {session.session_id} started (plan={session.plan_id})")
        return session

    def end_session(self) -> HookSession | None:
        session = self.load()
        self.fs.remove(self.session_path)
        if session is not None:
            log.info(
                f"Hook session {session.session_id} ended: "
                f"{session.tasks_completed}/{session.tasks_started} tasks completed"
            )
        return session

    # =========================================================================
    # Decisions
    # =========================================================================

    def elapsed_minutes(self, session: HookSession) -> float:
        return max(0.0, self.clock.now() - session.started_at) / 60.0

    def continue_check(self) -> HookDecision:
        session = self.load()
        if session is None:
            session = self.init_session()

        if session.tasks_completed >= self.max_tasks:
            return HookDecision(
                APPROVE,
                f"Circuit breaker: Completed {session.tasks_completed}/{self.max_tasks} tasks this session. "
                "Take a break for human review.",
            )
        elapsed = self.elapsed_minutes(session)
        if elapsed >= self.max_minutes:
            return HookDecision(
                APPROVE,
                f"Circuit breaker: Session has run {int(elapsed)}/{self.max_minutes} minutes. "
                "Take a break for human review.",
            )

        plan = self.engine.get_active_plan(self.workspace_id)
        if plan is None:
            return HookDecision(APPROVE, "No active plan. Create or start a plan to continue automatically.")

        current = self._tracked_task(session)
        next_task = self.engine.next_task(plan.id)
        if next_task is None:
            progress = self.engine.progress(plan.id)
            if progress.done:
                return HookDecision(APPROVE, f"Plan complete: all {progress.total} tasks are done.")
            return HookDecision(
                APPROVE,
                "No ready tasks; check blocked tasks or unmet dependencies "
                f"({progress.blocked} blocked, {progress.pending} pending).",
            )

        if current is not None and current.status == TaskStatus.COMPLETED:
            session.tasks_completed += 1
        if session.current_task_id != next_task.id:
            session.tasks_started += 1
            session.current_task_id = next_task.id
        session.plan_id = plan.id
        self.save(session)
        log.info(
            f"Blocking stop: next task {next_task.id} "
            f"(started={session.tasks_started}, completed={session.tasks_completed})"
        )
        total = self.engine.progress(plan.id).total
        return HookDecision(
            BLOCK,
            f"Continue to task {session.tasks_completed + 1}/{total}: {next_task.title}",
            task_id=next_task.id,
            context=self.context_builder.build(next_task, plan),
        )

    def _tracked_task(self, session: HookSession):
        if not session.current_task_id:
            return None
        try:
            return self.engine.get_task(session.current_task_id)
        except NotFoundError:
            log.warning(f"Tracked task {session.current_task_id} no longer exists")
            return None

    def status(self) -> dict[str, Any]:
        session = self.load()
        plan = self.engine.get_active_plan(self.workspace_id)
        data: dict[str, Any] = {
            "active": session is not None,
            "max_tasks": self.max_tasks,
            "max_minutes": self.max_minutes,
            "plan_id": plan.id if plan else None,
            "plan_goal": plan.goal if plan else None,
        }
        if session is not None:
            data.update(session.to_dict())
            data["elapsed_minutes"] = round(self.elapsed_minutes(session), 1)
        if plan is not None:
            data["progress"] = self.engine.progress(plan.id).to_dict()
        return data


# =============================================================================
# Banners
# =============================================================================


def session_start_banner(session: HookSession, plan_goal: str | None, max_tasks: int, max_minutes: int) -> str:
    lines = [
        "TaskWing session started",
        f"  Session: {session.session_id}",
        f"  Plan:    {plan_goal or '(no active plan)'}",
        f"  Limits:  {max_tasks} tasks or {max_minutes} minutes before review",
    ]
    return "\n".join(lines)


def session_end_banner(session: HookSession | None) -> str:
    if session is None:
        return "No TaskWing session was active."
    return "\n".join(
        [
            "TaskWing session ended",
            f"  Session:   {session.session_id}",
            f"  Completed: {session.tasks_completed} of {session.tasks_started} started tasks",
        ]
    )
