"""Serialize ORM rows into JSON-ready dicts for API responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import inspect

from .models import ActivityLog, Agent, Deployment, Integration, Project, Task

REDACTED = "***"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def redact_config(config: dict[str, Any] | None) -> dict[str, Any]:
    """Mask every value of an integration config; keys stay visible."""
    return {key: REDACTED for key in (config or {})}


def serialize_agent(agent: Agent) -> dict[str, Any]:
    return {
        "id": agent.id,
        "project_id": agent.project_id,
        "type": agent.type,
        "name": agent.name,
        "status": agent.status,
        "tasks_active": agent.tasks_active,
        "tasks_completed": agent.tasks_completed,
        "last_active_at": _iso(agent.last_active_at),
    }


def serialize_integration(integration: Integration) -> dict[str, Any]:
    return {
        "id": integration.id,
        "project_id": integration.project_id,
        "type": integration.type,
        "enabled": integration.enabled,
        "status": integration.status,
        "config": redact_config(integration.config),
        "config_keys": sorted(integration.config or {}),
    }


def serialize_log(log: ActivityLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "deployment_id": log.deployment_id,
        "type": log.type,
        "level": log.level,
        "message": log.message,
        "metadata": log.metadata_,
        "created_at": _iso(log.created_at),
    }


def serialize_task(task: Task, *, include_agent: bool = False) -> dict[str, Any]:
    data = {
        "id": task.id,
        "deployment_id": task.deployment_id,
        "agent_id": task.agent_id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "external_url": task.external_url,
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
        "created_at": _iso(task.created_at),
    }
    if include_agent:
        agent = task.agent
        data["agent"] = (
            {"id": agent.id, "type": agent.type, "name": agent.name, "status": agent.status}
            if agent
            else None
        )
    return data


def serialize_deployment(deployment: Deployment) -> dict[str, Any]:
    return {
        "id": deployment.id,
        "project_id": deployment.project_id,
        "status": deployment.status,
        "environment": deployment.environment,
        "branch": deployment.branch,
        "commit_sha": deployment.commit_sha,
        "started_at": _iso(deployment.started_at),
        "completed_at": _iso(deployment.completed_at),
        "duration": deployment.duration,
        "created_at": _iso(deployment.created_at),
    }


def serialize_project(
    project: Project,
    *,
    include_children: bool = False,
    deployment_limit: int | None = None,
) -> dict[str, Any]:
    """Serialize a project. Children must already be loaded on the instance."""
    data: dict[str, Any] = {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "mode": project.mode,
        "tech_stack": project.tech_stack or [],
        "status": project.status,
        "created_at": _iso(project.created_at),
        "updated_at": _iso(project.updated_at),
    }
    if not include_children:
        return data

    deployments = sorted(
        project.deployments, key=lambda d: d.created_at.replace(tzinfo=None), reverse=True
    )
    data["agents"] = [serialize_agent(a) for a in project.agents]
    data["deployments"] = [serialize_deployment(d) for d in deployments[:deployment_limit]]
    data["counts"] = {"deployments": len(project.deployments), "agents": len(project.agents)}
    if "integrations" not in inspect(project).unloaded:
        data["integrations"] = [serialize_integration(i) for i in project.integrations]
    return data
