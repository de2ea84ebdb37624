from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .errors import WorkflowError
from .workflow.actors import SYSTEM, Actor, AgentActor, SystemActor, UserActor
from .workflow.engine import MIGRATION_NAMES, WorkflowEngine
from .workflow.model import TaskPriority, TaskStatus


def _configure_logging(level: str = "WARNING") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> "
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _engine(args: argparse.Namespace) -> WorkflowEngine:
    return WorkflowEngine.for_project(_resolve_project_dir(args.project_dir))


def _parse_actor(value: Optional[str]) -> Actor:
    """``system``, ``user``, ``user:<id>`` or ``agent:<id>``."""
    if not value or value == "system":
        return SYSTEM
    kind, _, ident = value.partition(":")
    if kind == "agent" and ident:
        return AgentActor(ident)
    if kind == "user":
        return UserActor(ident or None)
    if kind == "system":
        return SystemActor(ident or "system")
    raise argparse.ArgumentTypeError(f"invalid actor {value!r}; use system, user[:id] or agent:<id>")


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _task_create(args: argparse.Namespace) -> int:
    task = _engine(args).create_task(
        args.business,
        args.title,
        description=args.description,
        priority=args.priority,
        assignee_ids=args.assignee or None,
        epic_id=args.epic,
        created_by=args.actor,
        tags=args.tag or None,
    )
    _emit({"task": task.to_dict()})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    tasks = _engine(args).list_tasks(
        business_id=args.business,
        status=args.status,
        assignee_id=args.assignee,
        epic_id=args.epic,
        tag=args.tag,
        search=args.search,
    )
    if args.json:
        _emit({"tasks": [t.to_dict() for t in tasks], "total": len(tasks)})
        return 0
    table = Table(title=f"Tasks ({len(tasks)})", show_header=True)
    table.add_column("Ticket", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Assignees")
    table.add_column("Blocked by", style="dim")
    for task in tasks:
        table.add_row(
            task.ticket_number or "-",
            task.id,
            task.title,
            task.status.value,
            task.priority.value,
            ", ".join(task.assignee_ids) or "-",
            ", ".join(task.blocked_by) or "-",
        )
    Console().print(table)
    return 0


def _task_status(args: argparse.Namespace) -> int:
    task = _engine(args).update_status(args.task_id, args.status, args.actor)
    _emit({"task": task.to_dict()})
    return 0


def _dep_add(args: argparse.Namespace) -> int:
    task = _engine(args).add_dependency(args.task_id, args.blocker_id, args.actor)
    _emit({"task_id": task.id, "status": task.status.value, "blocked_by": list(task.blocked_by)})
    return 0


def _dep_remove(args: argparse.Namespace) -> int:
    task = _engine(args).remove_dependency(args.task_id, args.blocker_id, args.actor)
    _emit({"task_id": task.id, "status": task.status.value, "blocked_by": list(task.blocked_by)})
    return 0


def _dep_path(args: argparse.Namespace) -> int:
    engine = _engine(args)
    _emit(
        {
            "task_id": args.task_id,
            "critical_path": engine.get_critical_path(args.task_id),
            "dependencies": engine.get_transitive_dependencies(args.task_id),
            "dependents": engine.get_transitive_dependents(args.task_id),
        }
    )
    return 0


def _assign_smart(args: argparse.Namespace) -> int:
    result = _engine(args).smart_assign(args.task_id, args.actor)
    _emit(result.to_dict())
    return 0 if result.success else 1


def _assign_backlog(args: argparse.Namespace) -> int:
    report = _engine(args).auto_assign_backlog(args.limit, args.actor)
    if args.json:
        _emit(report.to_dict())
        return 0
    table = Table(title=f"Backlog auto-assign: {report.assigned}/{report.processed}", show_header=True)
    table.add_column("Task", style="dim")
    table.add_column("Title")
    table.add_column("Result")
    for row in report.results:
        outcome = (
            f"[green]{row['assigned_to']}[/green]" if row.get("success") else f"[red]{row.get('error')}[/red]"
        )
        table.add_row(row["task_id"], row["task_title"], outcome)
    Console().print(table)
    return 0


def _agent_register(args: argparse.Namespace) -> int:
    agent = _engine(args).register_agent(args.name, args.role, args.level)
    _emit({"agent": agent.to_dict()})
    return 0


def _agent_list(args: argparse.Namespace) -> int:
    agents = _engine(args).list_agents()
    table = Table(title=f"Agents ({len(agents)})", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Role")
    table.add_column("Level")
    table.add_column("Status")
    for agent in agents:
        table.add_row(agent.id, agent.name, agent.role or "-", agent.level.value, agent.status.value)
    Console().print(table)
    return 0


def _migrate(args: argparse.Namespace) -> int:
    engine = _engine(args)
    total = 0
    while True:
        result = engine.run_migration(args.name, args.batch_size, epic_id=args.epic)
        total += result.processed
        logger.info("{}: processed {} (remaining {})", args.name, result.processed, result.remaining)
        if not args.all or result.remaining == 0 or result.processed == 0:
            break
    payload = result.to_dict()
    payload["total_processed"] = total
    _emit(payload)
    return 0 if result.failed == 0 else 1


def _sweep_notifications(args: argparse.Namespace) -> int:
    _emit(_engine(args).sweep_expired_notifications().to_dict())
    return 0


def _sweep_agents(args: argparse.Namespace) -> int:
    _emit(_engine(args).sweep_stale_agents().to_dict())
    return 0


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'mission-control[server]'\n")
        return 1

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mission-control", description="Mission Control workflow engine")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument(
        "--actor",
        type=_parse_actor,
        default=SYSTEM,
        help="Acting identity: system, user[:id] or agent:<id> (default: system)",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level for stderr output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the web server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.set_defaults(func=_server)

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)
    tcreate = task_sub.add_parser("create", help="Create a task")
    tcreate.add_argument("title")
    tcreate.add_argument("--business", required=True, help="Business (tenant) id")
    tcreate.add_argument("--description", default="")
    tcreate.add_argument("--priority", default="P2", choices=[p.value for p in TaskPriority])
    tcreate.add_argument("--epic", default=None)
    tcreate.add_argument("--assignee", action="append", default=[])
    tcreate.add_argument("--tag", action="append", default=[])
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--business", default=None)
    tlist.add_argument("--status", default=None, choices=[s.value for s in TaskStatus])
    tlist.add_argument("--assignee", default=None)
    tlist.add_argument("--epic", default=None)
    tlist.add_argument("--tag", default=None)
    tlist.add_argument("--search", default=None)
    tlist.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    tlist.set_defaults(func=_task_list)
    tstatus = task_sub.add_parser("status", help="Move a task to a new status")
    tstatus.add_argument("task_id")
    tstatus.add_argument("status", choices=[s.value for s in TaskStatus])
    tstatus.set_defaults(func=_task_status)

    dep = subparsers.add_parser("dep", help="Manage task dependencies")
    dep_sub = dep.add_subparsers(dest="dep_cmd", required=True)
    dadd = dep_sub.add_parser("add", help="Make TASK_ID blocked by BLOCKER_ID")
    dadd.add_argument("task_id")
    dadd.add_argument("blocker_id")
    dadd.set_defaults(func=_dep_add)
    dremove = dep_sub.add_parser("remove", help="Remove a blocker from a task")
    dremove.add_argument("task_id")
    dremove.add_argument("blocker_id")
    dremove.set_defaults(func=_dep_remove)
    dpath = dep_sub.add_parser("path", help="Show the critical path and transitive dependencies")
    dpath.add_argument("task_id")
    dpath.set_defaults(func=_dep_path)

    assign = subparsers.add_parser("assign", help="Automatic assignment")
    assign_sub = assign.add_subparsers(dest="assign_cmd", required=True)
    asmart = assign_sub.add_parser("smart", help="Assign the best-matching agent to one task")
    asmart.add_argument("task_id")
    asmart.set_defaults(func=_assign_smart)
    abacklog = assign_sub.add_parser("backlog", help="Assign unassigned backlog tasks")
    abacklog.add_argument("--limit", default=10, type=int)
    abacklog.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    abacklog.set_defaults(func=_assign_backlog)

    agent = subparsers.add_parser("agent", help="Manage the agent roster")
    agent_sub = agent.add_subparsers(dest="agent_cmd", required=True)
    aregister = agent_sub.add_parser("register", help="Register an agent")
    aregister.add_argument("name")
    aregister.add_argument("--role", default="")
    aregister.add_argument("--level", default="specialist", choices=["intern", "specialist", "lead"])
    aregister.set_defaults(func=_agent_register)
    alist = agent_sub.add_parser("list", help="List agents")
    alist.set_defaults(func=_agent_list)

    migrate = subparsers.add_parser("migrate", help="Run a batched data migration")
    migrate.add_argument("name", choices=list(MIGRATION_NAMES))
    migrate.add_argument("--batch-size", default=None, type=int)
    migrate.add_argument("--epic", default=None, help="Target epic for migrate_tasks_to_epic")
    migrate.add_argument("--all", action="store_true", help="Repeat batches until nothing remains")
    migrate.set_defaults(func=_migrate)

    sweep = subparsers.add_parser("sweep", help="Run a maintenance sweep")
    sweep_sub = sweep.add_subparsers(dest="sweep_cmd", required=True)
    snotif = sweep_sub.add_parser("notifications", help="Delete expired notifications")
    snotif.set_defaults(func=_sweep_notifications)
    sagents = sweep_sub.add_parser("agents", help="Mark agents without recent heartbeats offline")
    sagents.set_defaults(func=_sweep_agents)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except WorkflowError as exc:
        sys.stderr.write(f"{exc.message}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
