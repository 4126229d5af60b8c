"""
Basic Deployment Example

Walks one project through its lifecycle: create the project with a small
agent team, start a deployment, run a task, finish the deployment and print
the resulting metrics.

Usage:
    ARCHON_DATABASE_URL=sqlite+aiosqlite:///demo.db python examples/basic_deployment.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from archon import db, lifecycle
from archon.models import Deployment, Project

console = Console()


async def create_demo_project() -> Project:
    """Create a project with a frontend and a backend agent."""
    console.print("\n[bold blue]Creating project...[/bold blue]")

    async with db.get_session() as session:
        project = await lifecycle.create_project(
            session,
            name="demo",
            mode="new",
            description="Lifecycle walkthrough",
            tech_stack=["Python", "FastAPI"],
            agents={"frontend": True, "backend": True},
        )

    console.print(f"[green]✓ Created project: {project.id}[/green]")
    return project


async def run_deployment(project: Project) -> Deployment:
    """Start a deployment, complete one task on it and mark it completed."""
    async with db.get_session() as session:
        deployment = await lifecycle.create_deployment(session, project.id, branch="main")
        await lifecycle.transition_deployment(session, deployment.id, "active")

    backend = next(a for a in project.agents if a.type == "backend")
    async with db.get_session() as session:
        task = await lifecycle.create_task(
            session, deployment.id, title="Build the API", agent_id=backend.id, priority=2
        )

    for status in ("in_progress", "completed"):
        async with db.get_session() as session:
            await lifecycle.record_task_transition(session, task.id, status)

    async with db.get_session() as session:
        metrics = await lifecycle.compute_metrics(session, deployment.id)
        deployment = await lifecycle.transition_deployment(session, deployment.id, "completed")

    table = Table(title="Deployment Metrics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in metrics.to_dict().items():
        table.add_row(key, str(value))
    console.print("\n")
    console.print(table)
    return deployment


async def show_logs(deployment: Deployment) -> None:
    """Print the activity log, oldest first."""
    async with db.get_session() as session:
        logs = await db.get_logs(session, deployment.id)

    lines = [f"[{log.level}] {log.message}" for log in reversed(logs)]
    console.print(Panel("\n".join(lines), title=f"Activity: {deployment.id}"))


async def main():
    """Main execution function."""
    await db.init_db()
    project = await create_demo_project()
    deployment = await run_deployment(project)
    await show_logs(deployment)
    console.print(
        f"\n[bold green]Deployment finished as {deployment.status} "
        f"in {deployment.duration}s[/bold green]"
    )


if __name__ == "__main__":
    asyncio.run(main())
