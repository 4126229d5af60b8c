"""Main CLI entry point for archon mission control."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, db, lifecycle
from .config import settings
from .errors import LifecycleError
from .logging_setup import configure_logging
from .models import AgentStatus, AgentType, DeploymentStatus, ProjectMode, TaskStatus

console = Console()

T = TypeVar("T")

STATUS_COLORS = {
    DeploymentStatus.INITIALIZING.value: "yellow",
    DeploymentStatus.ACTIVE.value: "green",
    DeploymentStatus.COMPLETED.value: "cyan",
    DeploymentStatus.FAILED.value: "red",
    AgentStatus.BUSY.value: "magenta",
    AgentStatus.ERROR.value: "red",
    AgentStatus.OFFLINE.value: "dim",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status)
    return f"[{color}]{status}[/{color}]" if color else status


def _run(fn: Callable[[], Awaitable[T]]) -> T:
    """Run one async command body, turning lifecycle errors into CLI errors."""
    try:
        return asyncio.run(fn())
    except LifecycleError as exc:
        raise click.ClickException(exc.message) from exc


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--database-url",
    default=None,
    help="Async SQLAlchemy URL; overrides ARCHON_DATABASE_URL",
)
def main(database_url: str | None) -> None:
    """Archon mission control CLI.

    Manage projects, agent teams, deployments and tasks.
    """
    configure_logging(settings.log_level)
    if database_url:
        db.configure_engine(database_url, echo=settings.db_echo)


# =============================================================================
# Database
# =============================================================================


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development; use alembic in production)."""
    _run(db.init_db)
    console.print("[green]Database schema created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> set[str]:
        from sqlalchemy import inspect

        from .models import Base

        async with db.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return set(Base.metadata.tables) - tables

    missing = _run(check)
    if missing:
        console.print(f"[red]Missing required tables: {sorted(missing)}[/red]")
        console.print("Run: `alembic upgrade head` or `archon init-db`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


@main.command()
@click.option("--host", default=None, help="Bind address (default: ARCHON_API_HOST)")
@click.option("--port", default=None, type=int, help="Bind port (default: ARCHON_API_PORT)")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .api import app

    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_config=None,
    )


# =============================================================================
# Projects
# =============================================================================


@main.command(name="create-project")
@click.argument("name")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ProjectMode]),
    default=ProjectMode.NEW.value,
    help="Start from scratch or attach to an existing codebase",
)
@click.option("--description", "-d", default=None, help="Project description")
@click.option(
    "--agent",
    "-a",
    "agents",
    multiple=True,
    type=click.Choice([t.value for t in AgentType]),
    help="Agent type to put on the team (repeatable)",
)
@click.option("--tech", "-t", "tech_stack", multiple=True, help="Technology (repeatable)")
def create_project(
    name: str,
    mode: str,
    description: str | None,
    agents: tuple[str, ...],
    tech_stack: tuple[str, ...],
) -> None:
    """Create a project with an initial agent team.

    NAME: Human-readable project name
    """

    async def create() -> Any:
        async with db.get_session() as session:
            return await lifecycle.create_project(
                session,
                name=name,
                mode=mode,
                description=description,
                tech_stack=list(tech_stack) or None,
                agents={agent_type: True for agent_type in agents},
            )

    project = _run(create)
    console.print(f"[green]Created project[/green] {project.id}")
    console.print(f"Agents: {', '.join(a.type for a in project.agents) or '-'}")


@main.command(name="list-projects")
@click.option("--status-filter", "status_filter", default=None, help="Filter by status")
def list_projects(status_filter: str | None) -> None:
    """List projects, newest first."""

    async def list_all() -> None:
        async with db.get_session() as session:
            projects = await db.list_projects(session, status=status_filter)

            if not projects:
                console.print("[yellow]No projects found[/yellow]")
                return

            table = Table(title="Projects")
            table.add_column("ID", style="cyan")
            table.add_column("Name")
            table.add_column("Mode")
            table.add_column("Status")
            table.add_column("Agents")
            table.add_column("Deployments")

            for p in projects:
                table.add_row(
                    p.id,
                    p.name,
                    p.mode,
                    p.status,
                    str(len(p.agents)),
                    str(len(p.deployments)),
                )
            console.print(table)

    _run(list_all)


@main.command()
@click.argument("project_id")
def status(project_id: str) -> None:
    """Show a project with its agents and deployments.

    PROJECT_ID: The project UUID
    """

    async def show_status() -> None:
        async with db.get_session() as session:
            project = await db.get_project(session, project_id, with_children=True)
            if project is None:
                raise click.ClickException(f"Project not found: {project_id}")

            console.print(
                Panel(
                    f"[bold]{project.name}[/bold]\n\n"
                    f"Status: [cyan]{project.status}[/cyan]\n"
                    f"Mode: {project.mode}\n"
                    f"Tech stack: {', '.join(project.tech_stack or []) or '-'}\n"
                    f"Created: {project.created_at.strftime('%Y-%m-%d %H:%M')}",
                    title=f"Project: {project.id}",
                )
            )

            if project.agents:
                table = Table(title="Agents")
                table.add_column("Type", style="cyan")
                table.add_column("Name")
                table.add_column("Status")
                table.add_column("Active")
                table.add_column("Completed")
                for a in project.agents:
                    table.add_row(
                        a.type,
                        a.name,
                        _colored(a.status),
                        str(a.tasks_active),
                        str(a.tasks_completed),
                    )
                console.print(table)

            if project.deployments:
                table = Table(title="Deployments")
                table.add_column("ID", style="cyan")
                table.add_column("Status")
                table.add_column("Environment")
                table.add_column("Branch")
                table.add_column("Duration")
                for d in sorted(project.deployments, key=lambda d: d.started_at, reverse=True):
                    table.add_row(
                        d.id,
                        _colored(d.status),
                        d.environment,
                        d.branch or "-",
                        f"{d.duration}s" if d.duration is not None else "-",
                    )
                console.print(table)

    _run(show_status)


@main.command(name="delete-project")
@click.argument("project_id")
@click.confirmation_option(prompt="Delete the project and everything under it?")
def delete_project(project_id: str) -> None:
    """Delete a project with its agents, integrations, deployments, tasks and logs."""

    async def delete() -> None:
        async with db.get_session() as session:
            await lifecycle.delete_project(session, project_id)

    _run(delete)
    console.print(f"[green]Deleted project[/green] {project_id}")


# =============================================================================
# Deployments
# =============================================================================


@main.command()
@click.argument("project_id")
@click.option("--branch", "-b", default=None, help="Git branch being deployed")
@click.option("--commit", "commit_sha", default=None, help="Commit SHA being deployed")
@click.option("--env", "environment", default="production", help="Target environment")
def deploy(project_id: str, branch: str | None, commit_sha: str | None, environment: str) -> None:
    """Start a deployment for a project.

    PROJECT_ID: The project UUID
    """

    async def create() -> Any:
        async with db.get_session() as session:
            return await lifecycle.create_deployment(
                session, project_id, branch=branch, commit_sha=commit_sha, environment=environment
            )

    deployment = _run(create)
    console.print(f"[green]Started deployment[/green] {deployment.id}")
    console.print(f"Status: {_colored(deployment.status)}")


@main.command()
@click.argument("deployment_id")
@click.argument("new_status", type=click.Choice([s.value for s in DeploymentStatus]))
def transition(deployment_id: str, new_status: str) -> None:
    """Move a deployment to a new status.

    DEPLOYMENT_ID: The deployment UUID
    """

    async def apply() -> Any:
        async with db.get_session() as session:
            return await lifecycle.transition_deployment(session, deployment_id, new_status)

    deployment = _run(apply)
    line = f"Deployment {deployment.id} is {_colored(deployment.status)}"
    if deployment.duration is not None:
        line += f" after {deployment.duration}s"
    console.print(line)


@main.command(name="delete-deployment")
@click.argument("deployment_id")
def delete_deployment(deployment_id: str) -> None:
    """Delete a deployment with its tasks and logs."""

    async def delete() -> None:
        async with db.get_session() as session:
            await lifecycle.delete_deployment(session, deployment_id)

    _run(delete)
    console.print(f"[green]Deleted deployment[/green] {deployment_id}")


@main.command()
@click.argument("deployment_id")
def metrics(deployment_id: str) -> None:
    """Show metrics for a deployment."""

    async def compute() -> lifecycle.Metrics:
        async with db.get_session() as session:
            return await lifecycle.compute_metrics(session, deployment_id)

    result = _run(compute)
    table = Table(title=f"Metrics: {deployment_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in result.to_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


# =============================================================================
# Tasks
# =============================================================================


@main.command(name="add-task")
@click.argument("deployment_id")
@click.argument("title")
@click.option("--agent-id", default=None, help="Agent to assign the task to")
@click.option("--priority", "-p", default=3, type=click.IntRange(1, 4), help="1 (urgent) to 4 (low)")
@click.option("--description", "-d", default=None, help="Task description")
def add_task(
    deployment_id: str,
    title: str,
    agent_id: str | None,
    priority: int,
    description: str | None,
) -> None:
    """Create a task under a deployment."""

    async def create() -> Any:
        async with db.get_session() as session:
            return await lifecycle.create_task(
                session,
                deployment_id,
                title=title,
                description=description,
                agent_id=agent_id,
                priority=priority,
            )

    task = _run(create)
    console.print(f"[green]Created task[/green] {task.id}")


@main.command(name="task-status")
@click.argument("task_id")
@click.argument("new_status", type=click.Choice([s.value for s in TaskStatus]))
def task_status(task_id: str, new_status: str) -> None:
    """Move a task to a new status."""

    async def apply() -> Any:
        async with db.get_session() as session:
            return await lifecycle.record_task_transition(session, task_id, new_status)

    task = _run(apply)
    console.print(f"Task {task.id} is {task.status}")


@main.command(name="db-info")
def db_info() -> None:
    """Show database connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}\n"
            f"URL override: {'yes' if settings.database_url else 'no'}",
            title="Database Configuration",
        )
    )


if __name__ == "__main__":
    main()
