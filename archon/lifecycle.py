"""
Deployment lifecycle manager.

Owns the status models for projects, deployments, agents, tasks and
integrations, appends activity logs on deployment transitions and computes
read-side metrics. Every function takes the caller's session and never
commits: one ``db.get_session()`` block is one atomic operation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import settings
from .errors import NotFoundError, ValidationError
from .events import EventType, LifecycleEvent, queue_event
from .models import (
    AGENT_DISPLAY_NAMES,
    TERMINAL_DEPLOYMENT_STATUSES,
    TERMINAL_TASK_STATUSES,
    ActivityLog,
    Agent,
    AgentStatus,
    AgentType,
    Deployment,
    DeploymentStatus,
    Integration,
    IntegrationStatus,
    LogLevel,
    Project,
    ProjectMode,
    ProjectStatus,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

PROJECT_MODES = {m.value for m in ProjectMode}
PROJECT_STATUSES = {s.value for s in ProjectStatus}
AGENT_TYPES = {t.value for t in AgentType}
AGENT_STATUSES = {s.value for s in AgentStatus}
DEPLOYMENT_STATUSES = {s.value for s in DeploymentStatus}
TASK_STATUSES = {s.value for s in TaskStatus}
TASK_PRIORITIES = {p.value for p in TaskPriority}

UPDATABLE_PROJECT_FIELDS = {"name", "description", "tech_stack", "status"}


@dataclass(frozen=True)
class Metrics:
    """Read-only aggregates for one deployment."""

    uptime: str
    tasks_completed: int
    active_issues: int
    deployments_today: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _elapsed_seconds(start: datetime, end: datetime) -> int:
    return max(0, int((_as_utc(end) - _as_utc(start)).total_seconds()))


def _require_choice(value: Any, choices: set[str], field: str) -> str:
    value = getattr(value, "value", value)
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(
            f"Invalid {field}. Must be one of: {', '.join(sorted(choices))}", field=field
        )
    return value


def _require_text(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Missing required field: {field}", field=field)
    return str(value).strip()


def _append_log(
    session: AsyncSession,
    deployment: Deployment,
    message: str,
    *,
    level: str = LogLevel.INFO.value,
    type_: str = "deployment",
    metadata: dict[str, Any] | None = None,
) -> ActivityLog:
    log = ActivityLog(
        deployment_id=deployment.id,
        type=type_,
        level=level,
        message=message,
        metadata_=metadata,
        created_at=utcnow(),
    )
    session.add(log)
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.LOG_APPENDED,
            project_id=deployment.project_id,
            deployment_id=deployment.id,
            message=message,
            data={"level": level, "type": type_},
        ),
    )
    return log


# =============================================================================
# Project Operations
# =============================================================================


async def _load_project(session: AsyncSession, project_id: str) -> Project:
    project = await db.get_project(session, project_id, with_children=True)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


async def create_project(
    session: AsyncSession,
    *,
    name: str | None,
    mode: str | None,
    description: str | None = None,
    tech_stack: list[str] | None = None,
    agents: Mapping[str, Any] | None = None,
    integrations: Mapping[str, Mapping[str, Any]] | None = None,
    status: str = ProjectStatus.ACTIVE.value,
    config: dict[str, Any] | None = None,
) -> Project:
    """Create a project with its initial agent team and enabled integrations.

    ``agents`` maps agent type to a selection flag; one idle agent is created
    per truthy entry. ``integrations`` maps integration type to its settings;
    entries whose ``enabled`` flag is true become connected integrations and
    the remaining keys are stored as the integration config.
    """
    name = _require_text(name, "name")
    if mode is None or not str(mode).strip():
        raise ValidationError("Missing required field: mode", field="mode")
    mode = _require_choice(mode, PROJECT_MODES, "mode")
    status = _require_choice(status, PROJECT_STATUSES, "status")

    agent_selection = dict(agents or {})
    unknown = sorted(set(agent_selection) - AGENT_TYPES)
    if unknown:
        raise ValidationError(f"Unknown agent type(s): {', '.join(unknown)}", field="agents")

    integration_selection = dict(integrations or {})
    for key, entry in integration_selection.items():
        if not isinstance(entry, Mapping):
            raise ValidationError(f"Integration '{key}' must be an object", field="integrations")

    new_agents = [
        Agent(
            type=agent_type,
            name=AGENT_DISPLAY_NAMES[agent_type],
            status=AgentStatus.IDLE.value,
            tasks_active=0,
            tasks_completed=0,
        )
        for agent_type, selected in agent_selection.items()
        if selected
    ]
    new_integrations = [
        Integration(
            type=integration_type,
            enabled=True,
            config={k: v for k, v in entry.items() if k != "enabled"},
            status=IntegrationStatus.CONNECTED.value,
        )
        for integration_type, entry in integration_selection.items()
        if entry.get("enabled")
    ]
    # Pass both collections in: an empty one must not lazy-load after the flush.
    project = Project(
        id=str(uuid4()),
        name=name,
        description=description,
        mode=mode,
        tech_stack=list(tech_stack) if tech_stack is not None else None,
        config=config,
        status=status,
        agents=new_agents,
        integrations=new_integrations,
    )

    session.add(project)
    await session.flush()

    logger.info(
        "Created project %s (%s, mode=%s) with %d agent(s) and %d integration(s)",
        project.id,
        name,
        mode,
        len(new_agents),
        len(new_integrations),
    )
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.PROJECT_CREATED,
            project_id=project.id,
            message=f"Project {name} created",
            data={"mode": mode, "agents": [a.type for a in new_agents]},
        ),
    )
    return await _load_project(session, project.id)


async def update_project(session: AsyncSession, project_id: str, **changes: Any) -> Project:
    """Apply a partial update (name, description, tech_stack, status)."""
    unknown = sorted(set(changes) - UPDATABLE_PROJECT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", field=unknown[0])
    if "name" in changes:
        changes["name"] = _require_text(changes["name"], "name")
    if "status" in changes:
        changes["status"] = _require_choice(changes["status"], PROJECT_STATUSES, "status")

    project = await db.get_project(session, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    for key, value in changes.items():
        setattr(project, key, value)
    project.updated_at = utcnow()
    await session.flush()

    logger.info("Updated project %s: %s", project_id, ", ".join(sorted(changes)) or "no changes")
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.PROJECT_UPDATED,
            project_id=project_id,
            message=f"Project {project.name} updated",
            data={"fields": sorted(changes)},
        ),
    )
    return await _load_project(session, project_id)


async def delete_project(session: AsyncSession, project_id: str) -> None:
    """Delete a project; agents, integrations, deployments, tasks and logs go with it."""
    project = await db.get_project(session, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    await session.delete(project)
    await session.flush()

    logger.info("Deleted project %s", project_id)
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.PROJECT_DELETED,
            project_id=project_id,
            message=f"Project {project.name} deleted",
        ),
    )


# =============================================================================
# Agent / Integration Operations
# =============================================================================


async def recompute_agent_counters(session: AsyncSession, agent: Agent) -> Agent:
    """Derive the agent's task counters from its current task rows."""
    await session.flush()
    counts = await db.count_tasks_by_status(session, agent_id=agent.id)
    agent.tasks_active = counts.get(TaskStatus.IN_PROGRESS.value, 0)
    agent.tasks_completed = counts.get(TaskStatus.COMPLETED.value, 0)
    return agent


async def _lock_agent(session: AsyncSession, agent_id: str) -> Agent:
    agent = await db.get_agent(session, agent_id, for_update=True)
    if agent is None:
        raise NotFoundError("Agent", agent_id)
    return agent


def _queue_agent_event(session: AsyncSession, agent: Agent) -> None:
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.AGENT_UPDATED,
            project_id=agent.project_id,
            message=f"Agent {agent.type} is {agent.status}",
            data={
                "agent_id": agent.id,
                "status": agent.status,
                "tasks_active": agent.tasks_active,
                "tasks_completed": agent.tasks_completed,
            },
        ),
    )


async def set_agent_status(session: AsyncSession, agent_id: str, status: str) -> Agent:
    """Set an agent's status; becoming active or busy stamps ``last_active_at``."""
    status = _require_choice(status, AGENT_STATUSES, "status")
    agent = await _lock_agent(session, agent_id)
    agent.status = status
    if status in (AgentStatus.ACTIVE.value, AgentStatus.BUSY.value):
        agent.last_active_at = utcnow()
    await session.flush()
    _queue_agent_event(session, agent)
    return agent


async def set_agent_selection(
    session: AsyncSession, project_id: str, agent_ids: Iterable[str]
) -> list[Agent]:
    """Toggle which of a project's agents are on the team.

    Agents are never re-created: selected agents that were offline come back
    as idle, unselected agents go offline.
    """
    project = await db.get_project(session, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    selected = set(agent_ids)
    agents = await db.get_agents_for_project(session, project_id)
    foreign = selected - {a.id for a in agents}
    if foreign:
        raise ValidationError(
            f"Agent(s) not part of project: {', '.join(sorted(foreign))}", field="agent_ids"
        )

    for agent in agents:
        if agent.id in selected:
            if agent.status == AgentStatus.OFFLINE.value:
                agent.status = AgentStatus.IDLE.value
                _queue_agent_event(session, agent)
        elif agent.status != AgentStatus.OFFLINE.value:
            agent.status = AgentStatus.OFFLINE.value
            _queue_agent_event(session, agent)
    await session.flush()

    logger.info("Project %s team now has %d selected agent(s)", project_id, len(selected))
    return agents


async def set_integration_enabled(
    session: AsyncSession, integration_id: str, enabled: bool
) -> Integration:
    integration = await db.get_integration(session, integration_id)
    if integration is None:
        raise NotFoundError("Integration", integration_id)

    integration.enabled = enabled
    integration.status = (
        IntegrationStatus.CONNECTED.value if enabled else IntegrationStatus.DISCONNECTED.value
    )
    await session.flush()
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.INTEGRATION_UPDATED,
            project_id=integration.project_id,
            message=f"Integration {integration.type} {integration.status}",
            data={"integration_id": integration.id, "enabled": enabled},
        ),
    )
    return integration


# =============================================================================
# Deployment Operations
# =============================================================================


async def create_deployment(
    session: AsyncSession,
    project_id: str,
    *,
    branch: str | None = None,
    commit_sha: str | None = None,
    environment: str | None = "production",
) -> Deployment:
    """Start a deployment for a project in the ``initializing`` state."""
    project = await db.get_project(session, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    environment = environment or "production"
    deployment = Deployment(
        id=str(uuid4()),
        project_id=project_id,
        status=DeploymentStatus.INITIALIZING.value,
        environment=environment,
        branch=branch,
        commit_sha=commit_sha,
        started_at=utcnow(),
    )
    session.add(deployment)
    _append_log(
        session,
        deployment,
        f"Deployment {deployment.id} initialized for {environment}",
        metadata={"branch": branch, "commit_sha": commit_sha},
    )
    await session.flush()

    logger.info("Created deployment %s for project %s (%s)", deployment.id, project_id, environment)
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.DEPLOYMENT_CREATED,
            project_id=project_id,
            deployment_id=deployment.id,
            message=f"Deployment initialized for {environment}",
            data={"status": deployment.status, "environment": environment},
        ),
    )
    return deployment


async def transition_deployment(
    session: AsyncSession,
    deployment_id: str,
    new_status: str,
    *,
    completed_at: datetime | None = None,
) -> Deployment:
    """Move a deployment to ``new_status``.

    Any status may follow any other. Re-applying the current status changes
    nothing and logs nothing. Entering a terminal status stamps
    ``completed_at`` (once) and freezes ``duration``; leaving the terminal
    states clears both so ``completed_at`` is set exactly while terminal.
    """
    new_status = _require_choice(new_status, DEPLOYMENT_STATUSES, "status")

    deployment = await db.get_deployment(session, deployment_id, for_update=True)
    if deployment is None:
        raise NotFoundError("Deployment", deployment_id)

    old_status = deployment.status
    if old_status == new_status:
        return deployment

    deployment.status = new_status
    if new_status in TERMINAL_DEPLOYMENT_STATUSES:
        if deployment.completed_at is None:
            deployment.completed_at = _as_utc(completed_at) if completed_at else utcnow()
            deployment.duration = _elapsed_seconds(deployment.started_at, deployment.completed_at)
    else:
        deployment.completed_at = None
        deployment.duration = None

    level = LogLevel.ERROR.value if new_status == DeploymentStatus.FAILED.value else LogLevel.INFO.value
    _append_log(
        session,
        deployment,
        f"Deployment status changed from {old_status} to {new_status}",
        level=level,
        metadata={"previous_status": old_status, "new_status": new_status},
    )
    await session.flush()

    log = logger.error if level == LogLevel.ERROR.value else logger.info
    log("Deployment %s: %s -> %s", deployment_id, old_status, new_status)
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.DEPLOYMENT_STATUS_CHANGED,
            project_id=deployment.project_id,
            deployment_id=deployment_id,
            message=f"Deployment status changed to {new_status}",
            data={
                "previous_status": old_status,
                "status": new_status,
                "duration": deployment.duration,
            },
        ),
    )
    return deployment


async def delete_deployment(session: AsyncSession, deployment_id: str) -> None:
    """Delete a deployment along with its tasks and logs."""
    deployment = await db.get_deployment(session, deployment_id)
    if deployment is None:
        raise NotFoundError("Deployment", deployment_id)

    agent_ids = {t.agent_id for t in await db.get_tasks_for_deployment(session, deployment_id)}
    agent_ids.discard(None)

    project_id = deployment.project_id
    await session.delete(deployment)
    await session.flush()

    # Tasks leaving the system change the counters of the agents that held them.
    for agent_id in sorted(agent_ids):
        agent = await db.get_agent(session, agent_id, for_update=True)
        if agent is not None:
            await recompute_agent_counters(session, agent)
            _queue_agent_event(session, agent)

    logger.info("Deleted deployment %s", deployment_id)
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.DEPLOYMENT_DELETED,
            project_id=project_id,
            deployment_id=deployment_id,
            message="Deployment deleted",
        ),
    )


# =============================================================================
# Task Operations
# =============================================================================


async def _agent_for_deployment(
    session: AsyncSession, agent_id: str, deployment: Deployment
) -> Agent:
    agent = await _lock_agent(session, agent_id)
    if agent.project_id != deployment.project_id:
        raise ValidationError("Agent does not belong to the deployment's project", field="agent_id")
    return agent


async def _task_deployment(session: AsyncSession, task: Task) -> Deployment:
    deployment = await db.get_deployment(session, task.deployment_id)
    if deployment is None:
        raise NotFoundError("Deployment", task.deployment_id)
    return deployment


async def _lock_task(session: AsyncSession, task_id: str) -> tuple[Task, Agent | None]:
    """Lock the task's agent, then the task, and return both as currently stored.

    The task is re-read under its lock so a transition committed by another
    session since the first read is seen here.
    """
    task = await db.get_task(session, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    agent = await _lock_agent(session, task.agent_id) if task.agent_id else None

    task = await db.get_task(session, task_id, for_update=True)
    if task is None:
        raise NotFoundError("Task", task_id)
    if task.agent_id != (agent.id if agent else None):
        agent = await _lock_agent(session, task.agent_id) if task.agent_id else None
    return task, agent


async def create_task(
    session: AsyncSession,
    deployment_id: str,
    *,
    title: str | None,
    description: str | None = None,
    agent_id: str | None = None,
    priority: int = TaskPriority.NORMAL.value,
    external_url: str | None = None,
) -> Task:
    """Create a pending task under a deployment, optionally assigned to an agent."""
    title = _require_text(title, "title")
    if priority not in TASK_PRIORITIES:
        raise ValidationError("Invalid priority. Must be 1 (urgent) to 4 (low)", field="priority")

    deployment = await db.get_deployment(session, deployment_id)
    if deployment is None:
        raise NotFoundError("Deployment", deployment_id)
    agent = await _agent_for_deployment(session, agent_id, deployment) if agent_id else None

    task = Task(
        id=str(uuid4()),
        deployment_id=deployment_id,
        agent_id=agent.id if agent else None,
        title=title,
        description=description,
        status=TaskStatus.PENDING.value,
        priority=priority,
        external_url=external_url,
    )
    session.add(task)
    _append_log(
        session,
        deployment,
        f"Task '{title}' created",
        type_="task",
        metadata={"task_id": task.id, "agent_id": task.agent_id, "priority": priority},
    )
    if agent is not None:
        await recompute_agent_counters(session, agent)
    await session.flush()

    queue_event(
        session,
        LifecycleEvent(
            type=EventType.TASK_CREATED,
            project_id=deployment.project_id,
            deployment_id=deployment_id,
            message=f"Task '{title}' created",
            data={"task_id": task.id, "agent_id": task.agent_id, "status": task.status},
        ),
    )
    return task


async def record_task_transition(
    session: AsyncSession,
    task_id: str,
    new_status: str,
) -> Task:
    """Move a task to ``new_status`` and re-derive its agent's counters.

    ``started_at`` is stamped once on first entering ``in_progress`` and
    ``completed_at`` once on first entering ``completed`` or ``failed``;
    neither is ever cleared. The agent row is locked before the task row, and
    the status check runs against the locked row, so concurrent transitions
    serialize and an already-applied transition is a no-op.
    """
    new_status = _require_choice(new_status, TASK_STATUSES, "status")

    task, agent = await _lock_task(session, task_id)

    old_status = task.status
    if old_status == new_status:
        return task

    now = utcnow()
    task.status = new_status
    task.updated_at = now
    if new_status == TaskStatus.IN_PROGRESS.value and task.started_at is None:
        task.started_at = now
    if new_status in TERMINAL_TASK_STATUSES and task.completed_at is None:
        task.completed_at = now

    deployment = await _task_deployment(session, task)
    _append_log(
        session,
        deployment,
        f"Task '{task.title}' moved from {old_status} to {new_status}",
        level=LogLevel.ERROR.value if new_status == TaskStatus.FAILED.value else LogLevel.INFO.value,
        type_="task",
        metadata={"task_id": task.id, "previous_status": old_status, "new_status": new_status},
    )

    if agent is not None:
        if new_status in (TaskStatus.IN_PROGRESS.value, *TERMINAL_TASK_STATUSES):
            agent.last_active_at = now
        await recompute_agent_counters(session, agent)
        _queue_agent_event(session, agent)
    await session.flush()

    logger.info("Task %s: %s -> %s", task_id, old_status, new_status)
    queue_event(
        session,
        LifecycleEvent(
            type=EventType.TASK_STATUS_CHANGED,
            project_id=deployment.project_id,
            deployment_id=deployment.id,
            message=f"Task '{task.title}' is {new_status}",
            data={"task_id": task.id, "previous_status": old_status, "status": new_status},
        ),
    )
    return task


async def assign_task(session: AsyncSession, task_id: str, agent_id: str | None) -> Task:
    """Reassign a task; both the old and new agent counters are re-derived."""
    task = await db.get_task(session, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    if task.agent_id == agent_id:
        return task

    deployment = await _task_deployment(session, task)
    # Lock in id order so two reassignments between the same agents cannot deadlock.
    touched: dict[str, Agent] = {}
    for candidate in sorted(i for i in (task.agent_id, agent_id) if i):
        if candidate == agent_id:
            touched[candidate] = await _agent_for_deployment(session, candidate, deployment)
        else:
            touched[candidate] = await _lock_agent(session, candidate)

    task = await db.get_task(session, task_id, for_update=True)
    if task is None:
        raise NotFoundError("Task", task_id)
    if task.agent_id == agent_id:
        return task
    if task.agent_id and task.agent_id not in touched:
        touched[task.agent_id] = await _lock_agent(session, task.agent_id)

    task.agent_id = agent_id
    task.updated_at = utcnow()
    for agent in touched.values():
        await recompute_agent_counters(session, agent)
        _queue_agent_event(session, agent)
    await session.flush()
    return task


# =============================================================================
# Metrics
# =============================================================================


async def compute_metrics(
    session: AsyncSession,
    deployment_id: str,
    *,
    now: datetime | None = None,
) -> Metrics:
    """Aggregate task counts for a deployment. Pure read."""
    deployment = await db.get_deployment(session, deployment_id)
    if deployment is None:
        raise NotFoundError("Deployment", deployment_id)

    counts = await db.count_tasks_by_status(session, deployment_id=deployment_id)
    deployments_today = await db.count_deployments_started_since(
        session, deployment.project_id, db.start_of_utc_day(now)
    )
    return Metrics(
        uptime=settings.uptime_display
        if deployment.status == DeploymentStatus.ACTIVE.value
        else "N/A",
        tasks_completed=counts.get(TaskStatus.COMPLETED.value, 0),
        active_issues=counts.get(TaskStatus.IN_PROGRESS.value, 0),
        deployments_today=deployments_today,
    )
