"""TaskWing CLI.

Usage:
    taskwing bootstrap [PATH] [--preview]   # Analyze the workspace into memory
    taskwing search "query"                 # Hybrid search over project memory
    taskwing ask "question"                 # Search plus a cited answer
    taskwing features                       # List features
    taskwing check [--repair]               # Integrity check of memory.db
    taskwing plan create plan.json          # Create a plan from a JSON file
    taskwing plan start PLAN_ID             # Activate a plan
    taskwing plan next                      # Show the next ready task
    taskwing task status TASK_ID STATUS     # Move a task through its states
    taskwing hook continue-check            # Executor stop hook (one JSON line)

Every command accepts --json for a machine-readable result; errors then come
back as {"ok": false, "kind": ..., "message": ..., "hint": ...}.
"""

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from taskwing.agents.streaming import EventType
from taskwing.bootstrap import Bootstrapper
from taskwing.cancellation import CancellationToken
from taskwing.config import Config
from taskwing.errors import TaskWingError, ValidationError
from taskwing.hooks import APPROVE, HookDecision, HookSessionController, session_end_banner, session_start_banner
from taskwing.knowledge import KnowledgeService, SearchOptions
from taskwing.log_config import get_logger, set_log_level
from taskwing.models import NodeType, TaskStatus
from taskwing.planning import PlanEngine, TaskContextBuilder, TaskSpec
from taskwing.workspace import workspace_id_for

log = get_logger("cli")

app = typer.Typer(
    name="taskwing",
    help="TaskWing - project memory and task planning for AI coding agents",
    rich_markup_mode="rich",
    no_args_is_help=True,
)
plan_app = typer.Typer(help="Create and drive plans", no_args_is_help=True)
task_app = typer.Typer(help="Task status changes", no_args_is_help=True)
hook_app = typer.Typer(help="Executor hook protocol", no_args_is_help=True)
app.add_typer(plan_app, name="plan")
app.add_typer(task_app, name="task")
app.add_typer(hook_app, name="hook")

console = Console()
err_console = Console(stderr=True)

JSON_OPTION = typer.Option(False, "--json", help="Print machine-readable JSON")
PROGRESS_EVENTS = (EventType.SERVICE_STARTED, EventType.AGENT_FINISHED, EventType.ERROR, EventType.DROPPED)


@app.callback()
def _global_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
):
    if verbose:
        set_log_level("DEBUG")


def print_banner() -> None:
    banner = Text()
    banner.append("TaskWing", style="bold cyan")
    banner.append(" memory", style="cyan")
    console.print(Panel(banner, border_style="cyan", box=box.ROUNDED))


def _workspace_id() -> str:
    return workspace_id_for(Path.cwd().resolve())


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run(json_output: bool, fn: Callable[[], Any]) -> Any:
    """Run a command body, rendering TaskWingError as envelope or message + hint."""
    try:
        return fn()
    except TaskWingError as e:
        log.debug(f"Command failed: {e.kind}: {e.message}")
        if json_output:
            _emit_json(e.to_envelope())
        else:
            err_console.print(f"[red]Error:[/red] {e.message}")
            if e.hint:
                err_console.print(f"[dim]Hint: {e.hint}[/dim]")
        raise typer.Exit(1)


# =============================================================================
# Memory
# =============================================================================


@app.command()
def bootstrap(
    path: Path = typer.Argument(Path("."), help="Workspace root"),
    preview: bool = typer.Option(False, "--preview", help="Analyze only; do not write memory"),
    json_output: bool = JSON_OPTION,
):
    """Analyze the workspace with all analyzers and ingest the findings."""
    config = Config()

    def body():
        cancel = CancellationToken()
        with KnowledgeService.from_config(config) as service:
            observers = [] if json_output else [_progress_observer()]
            try:
                return Bootstrapper(service, config).run(path, preview=preview, cancel=cancel, observers=observers)
            except KeyboardInterrupt:
                cancel.cancel("Interrupted")
                raise

    report = _run(json_output, body)
    if json_output:
        _emit_json({"ok": report.ok, **report.to_dict()})
    else:
        _render_bootstrap(report, config)
    if not report.ok:
        raise typer.Exit(1)


def _progress_observer():
    def observe(event) -> None:
        if event.type in PROGRESS_EVENTS:
            err_console.print(f"[dim]{event.agent}[/dim] {event.content}")

    return observe


def _render_bootstrap(report, config: Config) -> None:
    print_banner()
    table = Table(title="Analyzers", box=box.ROUNDED)
    table.add_column("Agent", style="cyan")
    table.add_column("Service")
    table.add_column("Findings", justify="right")
    table.add_column("Coverage", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Error", style="red")
    for agent in report.agents:
        table.add_row(
            agent.agent,
            agent.service,
            str(sum(agent.findings.values())),
            f"{agent.coverage['percent']:.0f}%",
            f"{agent.duration_ms:.0f}ms",
            (agent.error or {}).get("message", "")[:40],
        )
    console.print(table)
    status_style = "green" if report.ok else "red"
    console.print(f"\n[bold]Status:[/bold] [{status_style}]{report.status}[/{status_style}]")
    if report.ingest:
        created = sum(report.ingest.get("created", {}).values())
        updated = sum(report.ingest.get("updated", {}).values())
        console.print(f"[bold]Nodes:[/bold] {created} created, {updated} updated")
    for error in report.errors:
        console.print(f"[red]- {error}[/red]")
    console.print(f"[dim]Report: {config.report_path}[/dim]")


def _parse_types(types: Optional[list[str]]) -> list[NodeType] | None:
    if not types:
        return None
    try:
        return [NodeType(t.lower()) for t in types]
    except ValueError as e:
        raise ValidationError(f"Unknown node type in {types}", hint="Use feature, decision, symbol, pattern, constraint or overview.") from e


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, "--limit", "-n"),
    node_type: Optional[list[str]] = typer.Option(None, "--type", "-t", help="Filter by node type"),
    service: Optional[str] = typer.Option(None, "--service", help="Filter by service"),
    include_symbols: bool = typer.Option(False, "--symbols", help="Include code symbols"),
    include_unverified: bool = typer.Option(False, "--include-unverified"),
    no_vector: bool = typer.Option(False, "--no-vector", help="Keyword search only"),
    json_output: bool = JSON_OPTION,
):
    """Hybrid keyword + semantic search over project memory."""
    config = Config()

    def body():
        options = SearchOptions(
            limit=limit,
            workspace_id=_workspace_id(),
            service=service,
            types=_parse_types(node_type),
            include_symbols=include_symbols,
            include_unverified=include_unverified,
            disable_vector=no_vector,
        )
        with KnowledgeService.from_config(config) as svc:
            return svc.search(query, options)

    response = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, **response.to_dict()})
        return
    if not response.results:
        console.print("[yellow]No results.[/yellow] Run [bold]taskwing bootstrap[/bold] first if memory is empty.")
        return
    table = Table(title=f"Results for '{query}'", box=box.ROUNDED)
    table.add_column("#", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Summary")
    table.add_column("Score", justify="right")
    for i, r in enumerate(response.results, 1):
        table.add_row(str(i), r.type.value, r.title, r.summary[:80], f"{r.score:.3f}")
    console.print(table)
    if response.degraded:
        console.print(f"[dim]Degraded: {', '.join(response.degraded)}[/dim]")


@app.command()
def ask(
    query: str = typer.Argument(..., help="Question about the project"),
    limit: int = typer.Option(8, "--limit", "-n"),
    json_output: bool = JSON_OPTION,
):
    """Answer a question from project memory, citing node ids."""
    config = Config()

    def body():
        options = SearchOptions(limit=limit, workspace_id=_workspace_id(), generate_answer=True)
        with KnowledgeService.from_config(config) as svc:
            return svc.ask(query, options, writer=None if json_output else sys.stdout)

    response = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, **response.to_dict()})
        return
    sys.stdout.write("\n")
    if response.answer_unavailable:
        console.print("[yellow]Answer unavailable; showing search results only.[/yellow]")
        for r in response.results:
            console.print(f"- [bold]{r.title}[/bold] ({r.type.value}) [dim]{r.node_id}[/dim]")
    elif response.answer is not None and response.answer.citations:
        console.print(f"[dim]Sources: {', '.join(response.answer.citations)}[/dim]")


@app.command()
def features(json_output: bool = JSON_OPTION):
    """List features with their decision counts."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            return svc.list_features(_workspace_id())

    items = _run(json_output, body)
    if json_output:
        _emit_json(
            {
                "ok": True,
                "features": [
                    {
                        "id": f.id,
                        "name": f.name,
                        "one_liner": f.one_liner,
                        "status": f.status.value,
                        "decision_count": f.decision_count,
                        "service": f.service,
                    }
                    for f in items
                ],
            }
        )
        return
    table = Table(title="Features", box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Decisions", justify="right")
    table.add_column("Summary")
    for f in items:
        table.add_row(f.name, f.status.value, str(f.decision_count), f.one_liner[:80])
    console.print(table)


@app.command()
def check(
    repair: bool = typer.Option(False, "--repair", help="Fix what the check finds"),
    json_output: bool = JSON_OPTION,
):
    """Check memory.db integrity (orphan edges, missing vectors and FTS rows)."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            ws = _workspace_id()
            result = svc.check(ws)
            fixed = svc.repair(ws) if repair and not result.healthy else {}
            return result, fixed

    result, fixed = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, **result.to_dict(), "repaired": fixed})
        return
    style = "green" if result.healthy else "yellow"
    console.print(f"[{style}]{json.dumps(result.to_dict())}[/{style}]")
    if fixed:
        console.print(f"[green]Repaired:[/green] {fixed}")


# =============================================================================
# Plans and tasks
# =============================================================================


def _load_plan_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValidationError(f"Cannot read plan file {path}: {e}") from e
    except ValueError as e:
        raise ValidationError(f"Plan file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("tasks", []), list):
        raise ValidationError("Plan file must be an object with 'goal' and a 'tasks' list")
    return data


@plan_app.command("create")
def plan_create(
    file: Path = typer.Argument(..., help="JSON file with goal and tasks"),
    activate: bool = typer.Option(False, "--activate", help="Make it the active plan"),
    json_output: bool = JSON_OPTION,
):
    """Create a plan; tasks reference each other by their file-local ids."""
    config = Config()

    def body():
        data = _load_plan_file(file)
        specs = [TaskSpec.from_dict(t, i) for i, t in enumerate(data.get("tasks", []))]
        with KnowledgeService.from_config(config) as svc:
            return PlanEngine(svc.db).create_plan(
                _workspace_id(),
                str(data.get("goal", "")),
                specs,
                enriched_goal=str(data.get("enriched_goal", "")),
                activate=activate,
            )

    plan, tasks = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, "plan_id": plan.id, "status": plan.status.value, "task_ids": [t.id for t in tasks]})
        return
    console.print(f"[green]Created plan[/green] {plan.id} ({len(tasks)} tasks, {plan.status.value})")


@plan_app.command("start")
def plan_start(plan_id: str = typer.Argument(...), json_output: bool = JSON_OPTION):
    """Activate a plan (the previously active plan is archived)."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            return PlanEngine(svc.db).activate_plan(plan_id)

    plan = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, "plan_id": plan.id, "status": plan.status.value})
        return
    console.print(f"[green]Active plan:[/green] {plan.goal}")


@plan_app.command("list")
def plan_list(json_output: bool = JSON_OPTION):
    """List plans of this workspace."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            engine = PlanEngine(svc.db)
            return [(p, engine.progress(p.id)) for p in engine.list_plans(_workspace_id())]

    plans = _run(json_output, body)
    if json_output:
        _emit_json(
            {
                "ok": True,
                "plans": [
                    {"id": p.id, "goal": p.goal, "status": p.status.value, "progress": prog.to_dict()}
                    for p, prog in plans
                ],
            }
        )
        return
    table = Table(title="Plans", box=box.ROUNDED)
    table.add_column("ID", style="dim")
    table.add_column("Goal", style="bold")
    table.add_column("Status", style="cyan")
    table.add_column("Progress", justify="right")
    for p, prog in plans:
        table.add_row(p.id, p.goal[:60], p.status.value, f"{prog.completed}/{prog.total}")
    console.print(table)


@plan_app.command("next")
def plan_next(json_output: bool = JSON_OPTION):
    """Show the next ready task of the active plan with its context."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            engine = PlanEngine(svc.db)
            plan = engine.get_active_plan(_workspace_id())
            if plan is None:
                raise ValidationError("No active plan", hint="Start one with `taskwing plan start PLAN_ID`.")
            task = engine.next_task(plan.id)
            context = TaskContextBuilder(engine, svc).build(task, plan) if task else None
            return task, context

    task, context = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, "task_id": task.id if task else None, "context": context})
        return
    if task is None:
        console.print("[yellow]No ready task.[/yellow]")
        return
    console.print(Panel(context, title=task.title, border_style="cyan", box=box.ROUNDED))


@task_app.command("status")
def task_status(
    task_id: str = typer.Argument(...),
    status: str = typer.Argument(..., help="pending, in_progress, blocked, completed or cancelled"),
    json_output: bool = JSON_OPTION,
):
    """Change a task's status."""
    config = Config()

    def body():
        try:
            target = TaskStatus(status.lower())
        except ValueError as e:
            raise ValidationError(f"Unknown task status '{status}'") from e
        with KnowledgeService.from_config(config) as svc:
            return PlanEngine(svc.db).set_task_status(task_id, target)

    task = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, "task_id": task.id, "status": task.status.value})
        return
    console.print(f"[green]{task.title}[/green] -> {task.status.value}")


# =============================================================================
# Hooks
# =============================================================================


def _hook_controller(config: Config, svc: KnowledgeService) -> HookSessionController:
    engine = PlanEngine(svc.db)
    return HookSessionController(
        engine,
        _workspace_id(),
        config.hook_session_path,
        max_tasks=config.hook_max_tasks,
        max_minutes=config.hook_max_minutes,
        context_builder=TaskContextBuilder(engine, svc),
    )


@hook_app.command("continue-check")
def hook_continue_check():
    """Decide whether the executor may stop; prints exactly one JSON line."""
    config = Config()
    try:
        with KnowledgeService.from_config(config) as svc:
            decision = _hook_controller(config, svc).continue_check()
    except TaskWingError as e:
        # Never trap the executor on an internal failure
        log.error(f"continue-check failed: {e}")
        decision = HookDecision(APPROVE, f"TaskWing error: {e.message}")
    sys.stdout.write(decision.to_json() + "\n")
    raise typer.Exit(0)


@hook_app.command("session-init")
def hook_session_init(json_output: bool = JSON_OPTION):
    """Start a new hook session."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            controller = _hook_controller(config, svc)
            session = controller.init_session()
            plan = controller.engine.get_active_plan(controller.workspace_id)
            return session, plan.goal if plan else None

    session, goal = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, **session.to_dict()})
        return
    sys.stdout.write(session_start_banner(session, goal, config.hook_max_tasks, config.hook_max_minutes) + "\n")


@hook_app.command("session-end")
def hook_session_end(json_output: bool = JSON_OPTION):
    """End the hook session and print its summary."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            return _hook_controller(config, svc).end_session()

    session = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, "session": session.to_dict() if session else None})
        return
    sys.stdout.write(session_end_banner(session) + "\n")


@hook_app.command("status")
def hook_status(json_output: bool = JSON_OPTION):
    """Show the hook session and active plan progress."""
    config = Config()

    def body():
        with KnowledgeService.from_config(config) as svc:
            return _hook_controller(config, svc).status()

    data = _run(json_output, body)
    if json_output:
        _emit_json({"ok": True, **data})
        return
    table = Table(title="Hook Session", box=box.ROUNDED)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, json.dumps(value) if isinstance(value, dict) else str(value))
    console.print(table)


def main():
    app()


if __name__ == "__main__":
    main()
